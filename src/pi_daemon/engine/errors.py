"""Engine exception types."""

from __future__ import annotations


class DaemonError(RuntimeError):
    """Base class for daemon errors."""


class WorkflowConfigError(DaemonError):
    """Malformed workflow definition."""


class WorkflowRunError(DaemonError):
    """Workflow run failed after exhausting its in-run attempts."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class HandlerNotFoundError(DaemonError):
    """No workflow or registered handler for a queued task's handler name."""


class ControlTimeoutError(DaemonError):
    """Daemon did not answer a control request in time."""
