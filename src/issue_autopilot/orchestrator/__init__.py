"""Job orchestrator for long-lived coding agents working on tracker issues.

Why not Celery / RQ / a managed queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part is not queuing. It is supervising one interactive agent
subprocess per job: a newline-delimited JSON session that can be interrupted
and fed new operator messages, a wall-clock timeout with a kill grace period,
and durable state transitions that stay correct when an operator stops a job
while the agent is still writing. The only cross-process coordination needed
is a single conditional-update claim on a SQLite row, which several worker
processes can share without a broker.
"""
