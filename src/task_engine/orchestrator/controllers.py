"""Controllers for task-engine CLI commands."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from task_engine.config import Settings
from task_engine.orchestrator.cron import describe_cron_expr
from task_engine.orchestrator.errors import TaskNotFoundError
from task_engine.orchestrator.models import (
    BackgroundTask,
    CreateTaskRequest,
    Schedule,
    ScheduleCreate,
    ScheduleUpdate,
    TaskPriority,
    TaskStatus,
    TriggerSource,
)
from task_engine.orchestrator.scheduler import start_scheduler
from task_engine.orchestrator.services import TaskEngine, open_engine
from task_engine.storage.common import from_iso, to_iso


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for a direct task insert."""

    db_path: Path | None
    prompt: str
    agent_id: str
    workspace_id: str
    depends_on: tuple[str, ...] = ()
    priority: str = TaskPriority.NORMAL.value
    max_attempts: int = 1
    title: str | None = None
    trigger_source: str = TriggerSource.MANUAL.value
    triggered_by: str = "user"


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    workspace_id: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for inspect/retry/cancel/delete."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ScheduleCreateCommand:
    db_path: Path | None
    name: str
    cron_expr: str
    prompt: str
    agent_id: str
    workspace_id: str
    prompt_template: str | None = None
    enabled: bool = True


@dataclass(slots=True)
class ScheduleUpdateCommand:
    db_path: Path | None
    schedule_id: str
    name: str | None = None
    cron_expr: str | None = None
    prompt: str | None = None
    prompt_template: str | None = None
    agent_id: str | None = None
    enabled: bool | None = None


@dataclass(slots=True)
class ScheduleIdCommand:
    db_path: Path | None
    schedule_id: str


@dataclass(slots=True)
class ScheduleListCommand:
    db_path: Path | None
    workspace_id: str | None


@dataclass(slots=True)
class WorkflowRunCommand:
    """CLI input for triggering a workflow from the flows directory."""

    db_path: Path | None
    workflow_id: str
    workspace_id: str
    payload: str | None
    flows_dir: Path | None


@dataclass(slots=True)
class WorkflowRunsCommand:
    db_path: Path | None
    workflow_id: str | None
    limit: int


@dataclass(slots=True)
class TickCommand:
    db_path: Path | None
    now: str | None


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the in-process tick loop."""

    db_path: Path | None
    interval_seconds: float | None
    duration_seconds: float | None


class TaskEngineCliController:
    """Coordinates task, schedule, workflow, and tick CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.tasks.create_task(
                CreateTaskRequest(
                    prompt=command.prompt,
                    agent_id=command.agent_id,
                    workspace_id=command.workspace_id,
                    title=command.title,
                    depends_on_task_ids=command.depends_on,
                    priority=TaskPriority(command.priority.upper()),
                    max_attempts=command.max_attempts,
                    trigger_source=TriggerSource(command.trigger_source.lower()),
                    triggered_by=command.triggered_by,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} status={task.status.value} "
            f"priority={task.priority.value} deps={len(task.depends_on_task_ids)}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status.upper()) if command.status else None
        with _engine(settings) as engine:
            tasks = engine.task_repository.list_tasks(
                status=status_filter,
                workspace_id=command.workspace_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.task_repository.get(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        return [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Agent: {task.agent_id}",
            f"Workspace: {task.workspace_id}",
            f"Attempts: {task.attempts}/{task.max_attempts}",
            f"Trigger: {task.trigger_source.value} ({task.triggered_by})",
            f"Depends on: {', '.join(task.depends_on_task_ids) or '-'}",
            f"Workflow run: {task.workflow_run_id or '-'} step={task.workflow_step_name or '-'}",
            f"Created: {to_iso(task.created_at)}",
            f"Completed: {to_iso(task.completed_at) or '-'}",
            f"Error: {task.error_message or '-'}",
            f"Output: {task.task_output or '-'}",
            f"Prompt: {task.prompt}",
        ]

    def retry_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.dispatcher.retry_task(command.task_id)
        return [f"Task re-queued: {task.task_id} attempts={task.attempts}/{task.max_attempts}"]

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            cancelled = engine.dispatcher.cancel_task(command.task_id)
        if not cancelled:
            return [f"Task not cancellable (already terminal): {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]

    def delete_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            deleted = engine.task_repository.delete(command.task_id)
        if not deleted:
            raise TaskNotFoundError(f"Task not found: {command.task_id}")
        return [f"Task deleted: {command.task_id}"]

    def create_schedule(self, command: ScheduleCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            schedule = engine.scheduler.create_schedule(
                ScheduleCreate(
                    name=command.name,
                    cron_expr=command.cron_expr,
                    task_prompt=command.prompt,
                    prompt_template=command.prompt_template,
                    agent_id=command.agent_id,
                    workspace_id=command.workspace_id,
                    enabled=command.enabled,
                ),
            )
        return [f"Schedule created: {_schedule_line(schedule)}"]

    def update_schedule(self, command: ScheduleUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            schedule = engine.scheduler.update_schedule(
                command.schedule_id,
                ScheduleUpdate(
                    name=command.name,
                    cron_expr=command.cron_expr,
                    task_prompt=command.prompt,
                    prompt_template=command.prompt_template,
                    agent_id=command.agent_id,
                    enabled=command.enabled,
                ),
            )
        return [f"Schedule updated: {_schedule_line(schedule)}"]

    def list_schedules(self, command: ScheduleListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            schedules = engine.scheduler.list_schedules(workspace_id=command.workspace_id)
        lines = [f"Schedules: {len(schedules)}"]
        lines.extend(f"  {_schedule_line(schedule)}" for schedule in schedules)
        return lines

    def delete_schedule(self, command: ScheduleIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            deleted = engine.scheduler.delete_schedule(command.schedule_id)
        if not deleted:
            raise TaskNotFoundError(f"Schedule not found: {command.schedule_id}")
        return [f"Schedule deleted: {command.schedule_id}"]

    def run_schedule(self, command: ScheduleIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.scheduler.run_now(command.schedule_id)
        return [f"Schedule fired: schedule_id={command.schedule_id} task_id={task.task_id}"]

    def run_workflow(self, command: WorkflowRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.flows_dir is not None:
            settings.workflows.flows_dir = command.flows_dir
        with _engine(settings) as engine:
            result = engine.workflows.run_workflow(
                command.workflow_id,
                workspace_id=command.workspace_id,
                trigger_payload=command.payload,
            )
        lines = [
            f"Workflow triggered: workflow_id={command.workflow_id} "
            f"run_id={result.workflow_run_id} tasks={len(result.task_ids)}",
        ]
        lines.extend(f"  {task_id}" for task_id in result.task_ids)
        return lines

    def list_workflow_runs(self, command: WorkflowRunsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            runs = engine.run_repository.list_runs(
                workflow_id=command.workflow_id,
                limit=command.limit,
            )
        lines = [f"Workflow runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  {run.run_id} workflow={run.workflow_id} status={run.status.value} "
                f"steps={run.completed_steps}/{run.total_steps} "
                f"current={run.current_step_name or '-'} error={run.error_message or '-'}",
            )
        return lines

    def tick(self, command: TickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        now = _parse_now(command.now)
        with _engine(settings) as engine:
            result = engine.tick_cycle.run(now)
        return [
            f"Tick at {to_iso(result.now)}",
            f"Schedules fired: {len(result.schedules.fired)} "
            f"skipped={len(result.schedules.skipped)} errors={len(result.schedules.errors)}",
            f"Dispatch: claimed={len(result.dispatch.claimed)} "
            f"dispatched={len(result.dispatch.dispatched)} "
            f"skipped={len(result.dispatch.skipped)} failed={len(result.dispatch.failed)}",
            f"Completions: polled={result.completions.polled} "
            f"completed={len(result.completions.completed)} "
            f"failed={len(result.completions.failed)} "
            f"retried={len(result.completions.retried)} "
            f"runs_completed={len(result.completions.completed_runs)} "
            f"runs_failed={len(result.completions.failed_runs)}",
        ]

    def serve(self, command: ServeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        interval = command.interval_seconds or settings.orchestrator.tick_interval_seconds
        with _engine(settings) as engine:
            handle = start_scheduler(engine.tick_cycle, interval)
            try:
                if command.duration_seconds is not None:
                    time.sleep(command.duration_seconds)
                else:
                    while handle.running:
                        time.sleep(1.0)
            except KeyboardInterrupt:
                pass
            finally:
                handle.stop()
        return [f"Scheduler stopped after {handle.ticks} ticks"]


def _task_line(task: BackgroundTask) -> str:
    return (
        f"{task.task_id} status={task.status.value} priority={task.priority.value} "
        f"attempts={task.attempts}/{task.max_attempts} agent={task.agent_id} "
        f"title={task.title!r}"
    )


def _schedule_line(schedule: Schedule) -> str:
    return (
        f"{schedule.schedule_id} name={schedule.name!r} cron={schedule.cron_expr!r} "
        f"({describe_cron_expr(schedule.cron_expr)}) enabled={schedule.enabled} "
        f"next_run_at={to_iso(schedule.next_run_at) or '-'} "
        f"last_task_id={schedule.last_task_id or '-'}"
    )


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return from_iso(value)
    except ValueError as error:
        raise ValueError(f"Invalid --now timestamp: {value!r}") from error


@contextmanager
def _engine(settings: Settings) -> Iterator[TaskEngine]:
    settings.validate()
    with open_engine(settings) as engine:
        yield engine
