"""Persistent background task queue backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from sqlalchemy import Update, case, exists, literal_column, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from task_engine.orchestrator.errors import TaskNotFoundError, TaskRetryRejectedError
from task_engine.orchestrator.models import (
    LEGAL_PREDECESSORS,
    BackgroundTask,
    TaskPriority,
    TaskStatus,
    TaskStatusPatch,
    TriggerSource,
)
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    optional_db,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import BackgroundTaskRow, TaskDependencyRow

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5_000

_PRIORITY_ORDER = case(
    {priority.value: priority.rank for priority in TaskPriority},
    value=BackgroundTaskRow.priority,
    else_=TaskPriority.NORMAL.rank,
)
_CREATION_ORDER = (
    col(BackgroundTaskRow.created_at).asc(),
    literal_column("background_tasks.rowid").asc(),
)


class TaskRepository:
    """Task persistence facade: upserts, readiness query, and status CAS."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def save(self, task: BackgroundTask) -> BackgroundTask:
        """Insert or replace a task by id, including its dependency set."""

        with Session(self.engine) as session:
            row = write_task(session, task)
            session.commit()
            session.refresh(row)
            return _to_task(row, task.depends_on_task_ids)

    def save_many(self, tasks: Sequence[BackgroundTask]) -> list[BackgroundTask]:
        return [self.save(task) for task in tasks]

    def get(self, task_id: str) -> BackgroundTask | None:
        with Session(self.engine) as session:
            row = session.get(BackgroundTaskRow, task_id)
            if row is None:
                return None
            dependencies = _load_dependencies(session, [task_id])
            return _to_task(row, dependencies.get(task_id, ()))

    def update_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        patch: TaskStatusPatch | None = None,
    ) -> bool:
        """Move a task to ``new_status`` if its current status is a legal predecessor.

        Returns ``False`` for unknown ids and for callers that lost a race;
        exactly one concurrent caller observes ``True``.
        """

        with Session(self.engine) as session:
            result = session.exec(status_transition(task_id, new_status, patch))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Task %s -> %s", task_id, new_status.value)
        return True

    def set_execution_handle(self, task_id: str, handle: str) -> bool:
        """Attach the executor handle to a RUNNING task."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundTaskRow)
                .where(
                    col(BackgroundTaskRow.task_id) == task_id,
                    col(BackgroundTaskRow.status) == TaskStatus.RUNNING.value,
                )
                .values(execution_handle=handle, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_prompt(self, task_id: str, prompt: str) -> bool:
        """Rewrite the prompt of a task that has not been dispatched yet."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundTaskRow)
                .where(
                    col(BackgroundTaskRow.task_id) == task_id,
                    col(BackgroundTaskRow.status) == TaskStatus.PENDING.value,
                )
                .values(prompt=prompt, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def retry_task(self, task_id: str) -> BackgroundTask:
        """Manual operator retry: FAILED -> PENDING while attempts remain."""

        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        if task.status != TaskStatus.FAILED:
            raise TaskRetryRejectedError(
                f"Only failed tasks can be retried, got status={task.status.value}.",
            )
        if not task.attempts_remaining:
            raise TaskRetryRejectedError(
                f"Task {task_id} has no attempts remaining "
                f"({task.attempts}/{task.max_attempts}).",
            )

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundTaskRow)
                .where(
                    col(BackgroundTaskRow.task_id) == task_id,
                    col(BackgroundTaskRow.status) == TaskStatus.FAILED.value,
                    col(BackgroundTaskRow.attempts) < col(BackgroundTaskRow.max_attempts),
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    error_message=None,
                    completed_at=None,
                    execution_handle=None,
                    task_output=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskRetryRejectedError(
                    "Task state changed concurrently while retrying; "
                    f"please retry command (task_id={task_id}).",
                )
            session.commit()

        logger.info("Task %s reset to PENDING for retry", task_id)
        retried = self.get(task_id)
        if retried is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return retried

    def delete(self, task_id: str) -> bool:
        with Session(self.engine) as session:
            session.exec(
                sa_delete(TaskDependencyRow).where(col(TaskDependencyRow.task_id) == task_id),
            )
            result = session.exec(
                sa_delete(BackgroundTaskRow).where(col(BackgroundTaskRow.task_id) == task_id),
            )
            session.commit()
            return result.rowcount == 1

    def list_ready_to_run(self, *, limit: int | None = None) -> list[BackgroundTask]:
        """PENDING tasks whose dependencies are all COMPLETED.

        A dependency id with no matching task counts as unsatisfied.
        Ordered HIGH, NORMAL, LOW, then by creation.
        """

        upstream = aliased(BackgroundTaskRow)
        unsatisfied = exists(
            sa_select(TaskDependencyRow.id)
            .select_from(TaskDependencyRow)
            .outerjoin(upstream, upstream.task_id == TaskDependencyRow.depends_on_task_id)
            .where(
                TaskDependencyRow.task_id == BackgroundTaskRow.task_id,
                or_(
                    upstream.task_id.is_(None),
                    upstream.status != TaskStatus.COMPLETED.value,
                ),
            ),
        )
        statement = (
            select(BackgroundTaskRow)
            .where(
                BackgroundTaskRow.status == TaskStatus.PENDING.value,
                ~unsatisfied,
            )
            .order_by(_PRIORITY_ORDER, *_CREATION_ORDER)
        )
        if limit is not None:
            statement = statement.limit(limit)
        return self._fetch(statement)

    def list_by_status(self, status: TaskStatus) -> list[BackgroundTask]:
        return self._fetch(
            select(BackgroundTaskRow)
            .where(BackgroundTaskRow.status == status.value)
            .order_by(*_CREATION_ORDER),
        )

    def list_by_workspace(self, workspace_id: str) -> list[BackgroundTask]:
        return self._fetch(
            select(BackgroundTaskRow)
            .where(BackgroundTaskRow.workspace_id == workspace_id)
            .order_by(*_CREATION_ORDER),
        )

    def list_by_workflow_run_id(self, workflow_run_id: str) -> list[BackgroundTask]:
        return self._fetch(
            select(BackgroundTaskRow)
            .where(BackgroundTaskRow.workflow_run_id == workflow_run_id)
            .order_by(*_CREATION_ORDER),
        )

    def list_running(self) -> list[BackgroundTask]:
        """RUNNING tasks that carry an execution handle to poll."""

        return self._fetch(
            select(BackgroundTaskRow)
            .where(
                BackgroundTaskRow.status == TaskStatus.RUNNING.value,
                col(BackgroundTaskRow.execution_handle).is_not(None),
            )
            .order_by(*_CREATION_ORDER),
        )

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        workspace_id: str | None = None,
        limit: int = 50,
    ) -> list[BackgroundTask]:
        """Most recent tasks first, optionally filtered."""

        statement = select(BackgroundTaskRow)
        if status is not None:
            statement = statement.where(BackgroundTaskRow.status == status.value)
        if workspace_id is not None:
            statement = statement.where(BackgroundTaskRow.workspace_id == workspace_id)
        statement = statement.order_by(
            col(BackgroundTaskRow.created_at).desc(),
            literal_column("background_tasks.rowid").desc(),
        ).limit(limit)
        return self._fetch(statement)

    def _fetch(self, statement: SelectOfScalar[BackgroundTaskRow]) -> list[BackgroundTask]:
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            dependencies = _load_dependencies(session, [row.task_id for row in rows])
        return [_to_task(row, dependencies.get(row.task_id, ())) for row in rows]


def write_task(session: Session, task: BackgroundTask) -> BackgroundTaskRow:
    """Stage an upsert of ``task`` and its dependency rows; the caller commits."""

    row = session.get(BackgroundTaskRow, task.task_id)
    if row is None:
        row = BackgroundTaskRow(
            task_id=task.task_id,
            title=task.title,
            prompt=task.prompt,
            agent_id=task.agent_id,
            workspace_id=task.workspace_id,
            status=task.status.value,
            created_at=to_db_datetime(task.created_at),
            updated_at=to_db_datetime(task.updated_at),
        )
    row.title = task.title
    row.prompt = task.prompt
    row.agent_id = task.agent_id
    row.workspace_id = task.workspace_id
    row.status = task.status.value
    row.priority = task.priority.value
    row.attempts = task.attempts
    row.max_attempts = task.max_attempts
    row.trigger_source = task.trigger_source.value
    row.triggered_by = task.triggered_by
    row.workflow_run_id = task.workflow_run_id
    row.workflow_step_name = task.workflow_step_name
    row.task_output = task.task_output
    row.error_message = task.error_message
    row.execution_handle = task.execution_handle
    row.created_at = to_db_datetime(task.created_at)
    row.updated_at = to_db_datetime(task.updated_at)
    row.started_at = optional_db(task.started_at)
    row.completed_at = optional_db(task.completed_at)
    session.add(row)
    session.flush()

    session.exec(
        sa_delete(TaskDependencyRow).where(
            col(TaskDependencyRow.task_id) == task.task_id,
        ),
    )
    for position, dependency_id in enumerate(dict.fromkeys(task.depends_on_task_ids)):
        session.add(
            TaskDependencyRow(
                task_id=task.task_id,
                depends_on_task_id=dependency_id,
                position=position,
            ),
        )
    session.flush()
    return row


def status_transition(
    task_id: str,
    new_status: TaskStatus,
    patch: TaskStatusPatch | None = None,
) -> Update:
    """Status CAS statement; it matches one row only from a legal predecessor."""

    patch = patch or TaskStatusPatch()
    now = utc_now()
    values: dict[str, object] = {
        "status": new_status.value,
        "updated_at": to_db_datetime(now),
    }
    if new_status == TaskStatus.RUNNING:
        values["attempts"] = col(BackgroundTaskRow.attempts) + 1
        values["started_at"] = to_db_datetime(patch.started_at or now)
        values["completed_at"] = None
    elif new_status == TaskStatus.PENDING:
        values["error_message"] = None
        values["completed_at"] = None
        values["execution_handle"] = None
        values["task_output"] = None
    else:
        values["completed_at"] = to_db_datetime(patch.completed_at or now)
    if patch.task_output is not None:
        values["task_output"] = patch.task_output
    if patch.error_message is not None:
        values["error_message"] = patch.error_message
    if patch.execution_handle is not None:
        values["execution_handle"] = patch.execution_handle

    predecessors = [status.value for status in LEGAL_PREDECESSORS[new_status]]
    return (
        sa_update(BackgroundTaskRow)
        .where(
            col(BackgroundTaskRow.task_id) == task_id,
            col(BackgroundTaskRow.status).in_(predecessors),
        )
        .values(**values)
    )


def _load_dependencies(session: Session, task_ids: list[str]) -> dict[str, tuple[str, ...]]:
    if not task_ids:
        return {}
    rows = session.exec(
        select(TaskDependencyRow)
        .where(col(TaskDependencyRow.task_id).in_(task_ids))
        .order_by(col(TaskDependencyRow.task_id), col(TaskDependencyRow.position)),
    ).all()
    grouped: dict[str, list[str]] = {}
    for row in rows:
        grouped.setdefault(row.task_id, []).append(row.depends_on_task_id)
    return {task_id: tuple(ids) for task_id, ids in grouped.items()}


def _to_task(row: BackgroundTaskRow, depends_on: Sequence[str]) -> BackgroundTask:
    return BackgroundTask(
        task_id=row.task_id,
        title=row.title,
        prompt=row.prompt,
        agent_id=row.agent_id,
        workspace_id=row.workspace_id,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        depends_on_task_ids=tuple(depends_on),
        trigger_source=TriggerSource(row.trigger_source),
        triggered_by=row.triggered_by,
        workflow_run_id=row.workflow_run_id,
        workflow_step_name=row.workflow_step_name,
        task_output=row.task_output,
        error_message=row.error_message,
        execution_handle=row.execution_handle,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )
