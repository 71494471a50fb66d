"""Domain exceptions raised by the orchestrator."""

from __future__ import annotations


class CronExpressionError(ValueError):
    """Raised when a cron expression fails validation."""

    def __init__(self, expr: str) -> None:
        super().__init__(f"Invalid cron expression: {expr!r}")
        self.expr = expr


class WorkflowDefinitionError(ValueError):
    """Raised when a workflow definition is malformed."""


class TaskNotFoundError(RuntimeError):
    """Raised by operator commands addressing an unknown task, run, or schedule."""


class TaskRetryRejectedError(RuntimeError):
    """Raised when a manual retry is not legal for the task's current state."""
