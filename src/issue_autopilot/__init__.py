"""Issue autopilot: queued issues in, agent-produced pull requests out."""

__version__ = "0.1.0"
