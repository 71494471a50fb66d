"""Shared test fixtures."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from task_engine.orchestrator.backend.base import UNTRACKED_HANDLE_ERROR, ExecutionStatus
from task_engine.orchestrator.models import BackgroundTask
from task_engine.orchestrator.schedule_store import ScheduleRepository
from task_engine.orchestrator.task_store import TaskRepository
from task_engine.orchestrator.workflow_store import WorkflowRunRepository


@dataclass(slots=True)
class Stores:
    tasks: TaskRepository
    runs: WorkflowRunRepository
    schedules: ScheduleRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "task-engine.db"


@pytest.fixture()
def stores(db_path: Path):
    tasks = TaskRepository(db_path)
    tasks.init_schema()
    runs = WorkflowRunRepository(db_path)
    schedules = ScheduleRepository(db_path)
    yield Stores(tasks=tasks, runs=runs, schedules=schedules)
    tasks.close()
    runs.close()
    schedules.close()


class ScriptedExecutor:
    """In-memory executor whose outcomes are set per task id by the test."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self.outcomes: dict[str, ExecutionStatus] = {}
        self.handles: dict[str, str] = {}
        self.executed: list[BackgroundTask] = []
        self.cancelled: list[str] = []
        self.raise_on_execute: Exception | None = None
        self.on_execute: Callable[[BackgroundTask], None] | None = None

    def execute(self, task: BackgroundTask) -> str:
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        with self._lock:
            handle = f"scripted-{next(self._counter)}"
            self.handles[handle] = task.task_id
            self.executed.append(task)
        if self.on_execute is not None:
            self.on_execute(task)
        return handle

    def poll_completion(self, handle: str) -> ExecutionStatus:
        task_id = self.handles.get(handle)
        if task_id is None:
            return ExecutionStatus(done=True, error=UNTRACKED_HANDLE_ERROR)
        return self.outcomes.get(task_id, ExecutionStatus(done=False))

    def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)

    def succeed(self, task_id: str, output: str) -> None:
        self.outcomes[task_id] = ExecutionStatus(done=True, output=output)

    def fail(self, task_id: str, error: str) -> None:
        self.outcomes[task_id] = ExecutionStatus(done=True, error=error)


@pytest.fixture()
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture()
def scripted_executor_factory() -> Callable[[], ScriptedExecutor]:
    return ScriptedExecutor
