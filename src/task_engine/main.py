"""CLI entrypoint for task-engine."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from task_engine import __version__
from task_engine.orchestrator.controllers import (
    ScheduleCreateCommand,
    ScheduleIdCommand,
    ScheduleListCommand,
    ScheduleUpdateCommand,
    ServeCommand,
    TaskCreateCommand,
    TaskEngineCliController,
    TaskIdCommand,
    TaskListCommand,
    TickCommand,
    WorkflowRunCommand,
    WorkflowRunsCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskEngineCliController()
CommandT = TypeVar("CommandT")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def task_engine(log_level: str) -> None:
    """Background task and workflow orchestration engine."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_engine.group()
def tasks() -> None:
    """Background task queue commands."""


@tasks.command("create")
@_DB_PATH_OPTION
@click.option("--prompt", required=True, help="Instruction text for the agent.")
@click.option("--agent", "agent_id", required=True, help="Agent id to route the task to.")
@click.option("--workspace", "workspace_id", default="default", show_default=True)
@click.option("--title", default=None, help="Optional title; defaults to the prompt head.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
@click.option(
    "--priority",
    type=click.Choice(["HIGH", "NORMAL", "LOW"], case_sensitive=False),
    default="NORMAL",
    show_default=True,
)
@click.option("--max-attempts", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--trigger-source",
    type=click.Choice(["manual", "webhook"], case_sensitive=False),
    default="manual",
    show_default=True,
)
@click.option("--triggered-by", default="user", show_default=True)
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    prompt: str,
    agent_id: str,
    workspace_id: str,
    title: str | None,
    depends_on: tuple[str, ...],
    priority: str,
    max_attempts: int,
    trigger_source: str,
    triggered_by: str,
) -> None:
    """Insert one task into the queue."""

    _run(
        CONTROLLER.create_task,
        TaskCreateCommand(
            db_path=db_path,
            prompt=prompt,
            agent_id=agent_id,
            workspace_id=workspace_id,
            title=title,
            depends_on=depends_on,
            priority=priority,
            max_attempts=max_attempts,
            trigger_source=trigger_source,
            triggered_by=triggered_by,
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(
        ["PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option("--workspace", "workspace_id", default=None, help="Optional workspace filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    workspace_id: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _run(
        CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            status=status,
            workspace_id=workspace_id,
            limit=limit,
        ),
    )


@tasks.command("inspect")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task."""

    _run(CONTROLLER.inspect_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@tasks.command("retry")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Re-queue a failed task that still has attempts left."""

    _run(CONTROLLER.retry_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@tasks.command("cancel")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending or running task."""

    _run(CONTROLLER.cancel_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@tasks.command("delete")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task."""

    _run(CONTROLLER.delete_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@task_engine.group()
def schedules() -> None:
    """Cron schedule commands."""


@schedules.command("create")
@_DB_PATH_OPTION
@click.option("--name", required=True)
@click.option("--cron", "cron_expr", required=True, help="Five-field cron expression (UTC).")
@click.option("--prompt", required=True, help="Task prompt for every fire.")
@click.option(
    "--prompt-template",
    default=None,
    help="Overrides --prompt; supports {timestamp}, {cronExpr}, {scheduleName}.",
)
@click.option("--agent", "agent_id", required=True)
@click.option("--workspace", "workspace_id", default="default", show_default=True)
@click.option("--disabled", is_flag=True, default=False, help="Create without enabling.")
def schedules_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    cron_expr: str,
    prompt: str,
    prompt_template: str | None,
    agent_id: str,
    workspace_id: str,
    disabled: bool,
) -> None:
    """Create a cron schedule."""

    _run(
        CONTROLLER.create_schedule,
        ScheduleCreateCommand(
            db_path=db_path,
            name=name,
            cron_expr=cron_expr,
            prompt=prompt,
            prompt_template=prompt_template,
            agent_id=agent_id,
            workspace_id=workspace_id,
            enabled=not disabled,
        ),
    )


@schedules.command("update")
@_DB_PATH_OPTION
@click.option("--schedule-id", required=True)
@click.option("--name", default=None)
@click.option("--cron", "cron_expr", default=None)
@click.option("--prompt", default=None)
@click.option("--prompt-template", default=None)
@click.option("--agent", "agent_id", default=None)
@click.option("--enable/--disable", "enabled", default=None)
def schedules_update(  # noqa: PLR0913
    db_path: Path | None,
    schedule_id: str,
    name: str | None,
    cron_expr: str | None,
    prompt: str | None,
    prompt_template: str | None,
    agent_id: str | None,
    enabled: bool | None,
) -> None:
    """Edit a schedule; the next run is recomputed on cron change or re-enable."""

    _run(
        CONTROLLER.update_schedule,
        ScheduleUpdateCommand(
            db_path=db_path,
            schedule_id=schedule_id,
            name=name,
            cron_expr=cron_expr,
            prompt=prompt,
            prompt_template=prompt_template,
            agent_id=agent_id,
            enabled=enabled,
        ),
    )


@schedules.command("list")
@_DB_PATH_OPTION
@click.option("--workspace", "workspace_id", default=None)
def schedules_list(db_path: Path | None, workspace_id: str | None) -> None:
    """List schedules."""

    _run(CONTROLLER.list_schedules, ScheduleListCommand(db_path=db_path, workspace_id=workspace_id))


@schedules.command("delete")
@_DB_PATH_OPTION
@click.option("--schedule-id", required=True)
def schedules_delete(db_path: Path | None, schedule_id: str) -> None:
    """Delete a schedule."""

    _run(CONTROLLER.delete_schedule, ScheduleIdCommand(db_path=db_path, schedule_id=schedule_id))


@schedules.command("run")
@_DB_PATH_OPTION
@click.option("--schedule-id", required=True)
def schedules_run(db_path: Path | None, schedule_id: str) -> None:
    """Fire a schedule now, bypassing its cron timing."""

    _run(CONTROLLER.run_schedule, ScheduleIdCommand(db_path=db_path, schedule_id=schedule_id))


@task_engine.group()
def workflows() -> None:
    """Workflow commands."""


@workflows.command("run")
@_DB_PATH_OPTION
@click.option("--workflow-id", required=True, help="Workflow file stem or path to a YAML file.")
@click.option("--workspace", "workspace_id", default="default", show_default=True)
@click.option("--payload", default=None, help="Value for ${trigger.payload}.")
@click.option(
    "--flows-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding workflow YAML files.",
)
def workflows_run(
    db_path: Path | None,
    workflow_id: str,
    workspace_id: str,
    payload: str | None,
    flows_dir: Path | None,
) -> None:
    """Decompose a workflow into queued tasks."""

    _run(
        CONTROLLER.run_workflow,
        WorkflowRunCommand(
            db_path=db_path,
            workflow_id=workflow_id,
            workspace_id=workspace_id,
            payload=payload,
            flows_dir=flows_dir,
        ),
    )


@workflows.command("runs")
@_DB_PATH_OPTION
@click.option("--workflow-id", default=None)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=20, show_default=True)
def workflows_runs(db_path: Path | None, workflow_id: str | None, limit: int) -> None:
    """List workflow runs, newest first."""

    _run(
        CONTROLLER.list_workflow_runs,
        WorkflowRunsCommand(db_path=db_path, workflow_id=workflow_id, limit=limit),
    )


@task_engine.command("tick")
@_DB_PATH_OPTION
@click.option("--now", default=None, help="ISO-8601 timestamp to tick at (default: now).")
def tick(db_path: Path | None, now: str | None) -> None:
    """Run one scheduler tick, dispatch pass, and completion pass."""

    _run(CONTROLLER.tick, TickCommand(db_path=db_path, now=now))


@task_engine.command("serve")
@_DB_PATH_OPTION
@click.option("--interval", "interval_seconds", type=click.FloatRange(min=0.01), default=None)
@click.option(
    "--duration",
    "duration_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds (default: until interrupted).",
)
def serve(
    db_path: Path | None,
    interval_seconds: float | None,
    duration_seconds: float | None,
) -> None:
    """Run the tick cycle on a background thread."""

    _run(
        CONTROLLER.serve,
        ServeCommand(
            db_path=db_path,
            interval_seconds=interval_seconds,
            duration_seconds=duration_seconds,
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_engine()
