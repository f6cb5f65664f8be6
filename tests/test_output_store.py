from __future__ import annotations

import allure

from issue_autopilot.orchestrator.models import OutputKind, OutputLine
from issue_autopilot.orchestrator.output_store import OutputStore
from issue_autopilot.storage.common import utc_now

pytestmark = [
    allure.epic("Live Output"),
    allure.feature("Output Store"),
]


def _line(content: str) -> OutputLine:
    return OutputLine(utc_now(), OutputKind.TEXT, content)


def test_buffer_keeps_only_the_most_recent_lines() -> None:
    store = OutputStore(max_lines=3)
    for number in range(5):
        store.push("job", _line(f"line {number}"))

    assert [line.content for line in store.buffer("job")] == ["line 2", "line 3", "line 4"]
    assert store.buffer("other") == []


def test_subscribers_receive_lines_in_push_order() -> None:
    store = OutputStore()
    seen: list[str] = []
    unsubscribe = store.subscribe("job", lambda line: seen.append(line.content))

    store.push("job", _line("first"))
    store.push("other", _line("elsewhere"))
    store.push("job", _line("second"))
    unsubscribe()
    store.push("job", _line("third"))

    assert seen == ["first", "second"]


def test_failing_subscriber_does_not_block_others() -> None:
    store = OutputStore()
    seen: list[str] = []

    def _broken(_: OutputLine) -> None:
        raise RuntimeError("subscriber bug")

    store.subscribe("job", _broken)
    store.subscribe("job", lambda line: seen.append(line.content))
    store.push("job", _line("hello"))

    assert seen == ["hello"]


def test_cleanup_and_last_unsubscribe_release_the_job() -> None:
    store = OutputStore()
    unsubscribe = store.subscribe("job", lambda _: None)
    unsubscribe()
    unsubscribe()

    store.push("job", _line("kept"))
    store.cleanup("job")

    assert store.buffer("job") == []
    assert store._jobs == {}
