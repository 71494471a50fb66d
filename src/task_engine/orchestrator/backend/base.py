"""Execution collaborator interface for dispatched tasks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from task_engine.orchestrator.models import BackgroundTask


@dataclass(slots=True)
class ExecutionStatus:
    """Completion poll result; ``output`` on success, ``error`` on failure."""

    done: bool
    output: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.done and self.error is None


class AgentExecutor(Protocol):
    """Protocol implemented by agent runners.

    ``execute`` must return promptly with an opaque handle; the dispatcher
    polls the handle on later ticks and never waits on the agent itself.
    """

    def execute(self, task: BackgroundTask) -> str:
        """Start executing a task and return its handle."""

    def poll_completion(self, handle: str) -> ExecutionStatus:
        """Report whether the execution behind ``handle`` has finished."""

    def cancel(self, handle: str) -> None:
        """Best-effort stop of the execution behind ``handle``."""


UNTRACKED_HANDLE_ERROR = "execution handle not tracked by this process"
