"""Use-case services: trigger entry points and the tick cycle."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from task_engine.config import ExecutorKind, Settings
from task_engine.orchestrator.backend import AgentExecutor, CliAgentExecutor, EchoExecutor
from task_engine.orchestrator.dispatcher import CompletionSummary, DispatchSummary, Dispatcher
from task_engine.orchestrator.executor import TriggerWorkflowResult, WorkflowExecutor
from task_engine.orchestrator.models import BackgroundTask, CreateTaskRequest
from task_engine.orchestrator.schedule_store import ScheduleRepository
from task_engine.orchestrator.scheduler import Scheduler, TickSummary
from task_engine.orchestrator.task_store import TaskRepository
from task_engine.orchestrator.workflow_store import WorkflowRunRepository
from task_engine.orchestrator.workflows import WorkflowLoader
from task_engine.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)


class TaskService:
    """Direct task inserts from manual, webhook, or polling triggers."""

    def __init__(self, *, task_repository: TaskRepository) -> None:
        self.task_repository = task_repository

    def create_task(self, request: CreateTaskRequest) -> BackgroundTask:
        task = self.task_repository.save(request.build())
        logger.info(
            "Created task %s agent=%s source=%s deps=%d",
            task.task_id,
            task.agent_id,
            task.trigger_source.value,
            len(task.depends_on_task_ids),
        )
        return task


class WorkflowService:
    """Resolves workflow ids through the loader and triggers runs."""

    def __init__(self, *, loader: WorkflowLoader, executor: WorkflowExecutor) -> None:
        self.loader = loader
        self.executor = executor

    def run_workflow(
        self,
        workflow_id: str,
        *,
        workspace_id: str,
        trigger_payload: str | None = None,
        trigger_source: str = "manual",
    ) -> TriggerWorkflowResult:
        definition = self.loader.load(workflow_id)
        return self.executor.trigger(
            workflow_id,
            definition,
            workspace_id,
            trigger_payload=trigger_payload,
            trigger_source=trigger_source,
        )


@dataclass(slots=True)
class TickResult:
    now: datetime
    schedules: TickSummary
    dispatch: DispatchSummary
    completions: CompletionSummary


class TickCycle:
    """One scheduler tick, then dispatch, then completion polling, in that order."""

    def __init__(self, *, scheduler: Scheduler, dispatcher: Dispatcher) -> None:
        self.scheduler = scheduler
        self.dispatcher = dispatcher

    def run(self, now: datetime | None = None) -> TickResult:
        reference = to_utc_aware_datetime(now) if now is not None else utc_now()
        schedules = self.scheduler.tick(reference)
        dispatch = self.dispatcher.dispatch_pending()
        completions = self.dispatcher.check_completions()
        logger.info(
            "Tick %s: fired=%d dispatched=%d completed=%d failed=%d",
            reference.isoformat(),
            len(schedules.fired),
            len(dispatch.dispatched),
            len(completions.completed),
            len(dispatch.failed) + len(completions.failed),
        )
        return TickResult(
            now=reference,
            schedules=schedules,
            dispatch=dispatch,
            completions=completions,
        )


def build_executor(settings: Settings) -> AgentExecutor:
    if settings.orchestrator.executor == ExecutorKind.CLI:
        return CliAgentExecutor(
            command_template=settings.orchestrator.agent_command_template,
            workdir_root=settings.orchestrator.workdir_root,
        )
    return EchoExecutor()


@dataclass(slots=True)
class TaskEngine:
    """Wired components sharing one database."""

    settings: Settings
    task_repository: TaskRepository
    run_repository: WorkflowRunRepository
    schedule_repository: ScheduleRepository
    executor: AgentExecutor
    tasks: TaskService
    scheduler: Scheduler
    dispatcher: Dispatcher
    workflows: WorkflowService
    tick_cycle: TickCycle

    def close(self) -> None:
        self.task_repository.close()
        self.run_repository.close()
        self.schedule_repository.close()


def build_engine(settings: Settings, *, executor: AgentExecutor | None = None) -> TaskEngine:
    """Wire repositories and services; runs schema migrations first."""

    busy_timeout_ms = settings.orchestrator.sqlite_busy_timeout_ms
    task_repository = TaskRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)
    task_repository.init_schema()
    run_repository = WorkflowRunRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)
    schedule_repository = ScheduleRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)

    agent_executor = executor or build_executor(settings)
    scheduler = Scheduler(
        schedule_repository=schedule_repository,
        task_repository=task_repository,
    )
    dispatcher = Dispatcher(
        task_repository=task_repository,
        run_repository=run_repository,
        executor=agent_executor,
        auto_retry=settings.orchestrator.auto_retry,
    )
    workflow_executor = WorkflowExecutor(
        task_repository=task_repository,
        run_repository=run_repository,
    )
    return TaskEngine(
        settings=settings,
        task_repository=task_repository,
        run_repository=run_repository,
        schedule_repository=schedule_repository,
        executor=agent_executor,
        tasks=TaskService(task_repository=task_repository),
        scheduler=scheduler,
        dispatcher=dispatcher,
        workflows=WorkflowService(
            loader=WorkflowLoader(settings.workflows.flows_dir),
            executor=workflow_executor,
        ),
        tick_cycle=TickCycle(scheduler=scheduler, dispatcher=dispatcher),
    )


@contextmanager
def open_engine(
    settings: Settings,
    *,
    executor: AgentExecutor | None = None,
) -> Iterator[TaskEngine]:
    engine = build_engine(settings, executor=executor)
    try:
        yield engine
    finally:
        engine.close()
