"""Persistence for workflow runs and their per-step outputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from task_engine.orchestrator.models import (
    TaskStatus,
    TaskStatusPatch,
    WorkflowRun,
    WorkflowRunCreate,
    WorkflowRunStatus,
)
from task_engine.orchestrator.task_store import status_transition
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import WorkflowRunRow, WorkflowStepOutputRow

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (WorkflowRunStatus.PENDING.value, WorkflowRunStatus.RUNNING.value)


@dataclass(slots=True)
class StepCompletion:
    task_completed: bool
    step_recorded: bool


class WorkflowRunRepository:
    """Workflow run bookkeeping; counters move via SQL expressions, not read-modify-write."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create_run(self, payload: WorkflowRunCreate, *, run_id: str | None = None) -> WorkflowRun:
        """Create a PENDING run."""

        now = utc_now()
        with Session(self.engine) as session:
            row = WorkflowRunRow(
                run_id=run_id or str(uuid4()),
                workflow_id=payload.workflow_id,
                workflow_name=payload.workflow_name,
                workflow_version=payload.workflow_version,
                workspace_id=payload.workspace_id,
                status=WorkflowRunStatus.PENDING.value,
                total_steps=payload.total_steps,
                completed_steps=0,
                trigger_payload=payload.trigger_payload,
                trigger_source=payload.trigger_source,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run(row, {})

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with Session(self.engine) as session:
            row = session.get(WorkflowRunRow, run_id)
            if row is None:
                return None
            return _to_run(row, _load_outputs(session, run_id))

    def list_runs(
        self,
        *,
        workflow_id: str | None = None,
        workspace_id: str | None = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        """Most recent runs first."""

        with Session(self.engine) as session:
            statement = select(WorkflowRunRow)
            if workflow_id is not None:
                statement = statement.where(WorkflowRunRow.workflow_id == workflow_id)
            if workspace_id is not None:
                statement = statement.where(WorkflowRunRow.workspace_id == workspace_id)
            rows = session.exec(
                statement.order_by(col(WorkflowRunRow.created_at).desc()).limit(limit),
            ).all()
            return [_to_run(row, _load_outputs(session, row.run_id)) for row in rows]

    def mark_running(self, run_id: str, *, current_step_name: str | None) -> bool:
        """PENDING -> RUNNING once the run's tasks exist."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkflowRunRow)
                .where(
                    col(WorkflowRunRow.run_id) == run_id,
                    col(WorkflowRunRow.status) == WorkflowRunStatus.PENDING.value,
                )
                .values(
                    status=WorkflowRunStatus.RUNNING.value,
                    started_at=now,
                    current_step_name=current_step_name,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_step_output(self, run_id: str, step_name: str, output: str) -> bool:
        """Store one step's output and bump ``completed_steps``.

        Returns ``False`` when the step already reported or the run is closed.
        """

        with Session(self.engine) as session:
            try:
                recorded = _insert_step_output(session, run_id, step_name, output)
            except IntegrityError:
                recorded = False
            if not recorded:
                session.rollback()
                logger.warning("Step output not recorded: run=%s step=%s", run_id, step_name)
                return False
            session.commit()
            return True

    def complete_step(
        self,
        task_id: str,
        *,
        run_id: str,
        step_name: str,
        output: str,
    ) -> StepCompletion:
        """RUNNING -> COMPLETED for a step task, recording its output in the same transaction.

        A dispatcher that observes the task COMPLETED therefore also sees the
        output its dependents substitute.
        """

        with Session(self.engine) as session:
            result = session.exec(
                status_transition(
                    task_id,
                    TaskStatus.COMPLETED,
                    TaskStatusPatch(task_output=output),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return StepCompletion(task_completed=False, step_recorded=False)
            recorded = _insert_step_output(session, run_id, step_name, output)
            session.commit()
        logger.info("Task %s -> %s", task_id, TaskStatus.COMPLETED.value)
        if not recorded:
            logger.warning("Step output not recorded: run=%s step=%s", run_id, step_name)
        return StepCompletion(task_completed=True, step_recorded=recorded)

    def complete_if_finished(self, run_id: str) -> bool:
        """Close an open run as COMPLETED once every step has reported.

        A PENDING run qualifies too: its first cohort is ready as soon as it is
        saved, so every step can finish before the trigger marks it RUNNING.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkflowRunRow)
                .where(
                    col(WorkflowRunRow.run_id) == run_id,
                    col(WorkflowRunRow.status).in_(_OPEN_STATUSES),
                    col(WorkflowRunRow.completed_steps) >= col(WorkflowRunRow.total_steps),
                )
                .values(
                    status=WorkflowRunStatus.COMPLETED.value,
                    started_at=func.coalesce(col(WorkflowRunRow.started_at), now),
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Workflow run %s completed", run_id)
        return True

    def fail_run(self, run_id: str, error_message: str) -> bool:
        """Close an open run as FAILED."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkflowRunRow)
                .where(
                    col(WorkflowRunRow.run_id) == run_id,
                    col(WorkflowRunRow.status).in_(_OPEN_STATUSES),
                )
                .values(
                    status=WorkflowRunStatus.FAILED.value,
                    error_message=error_message,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.warning("Workflow run %s failed: %s", run_id, error_message)
        return True


def _load_outputs(session: Session, run_id: str) -> dict[str, str]:
    rows = session.exec(
        select(WorkflowStepOutputRow)
        .where(WorkflowStepOutputRow.run_id == run_id)
        .order_by(col(WorkflowStepOutputRow.id).asc()),
    ).all()
    return {row.step_name: row.output for row in rows}


def _to_run(row: WorkflowRunRow, step_outputs: dict[str, str]) -> WorkflowRun:
    return WorkflowRun(
        run_id=row.run_id,
        workflow_id=row.workflow_id,
        workflow_name=row.workflow_name,
        workflow_version=row.workflow_version,
        workspace_id=row.workspace_id,
        status=WorkflowRunStatus(row.status),
        total_steps=row.total_steps,
        completed_steps=row.completed_steps,
        current_step_name=row.current_step_name,
        step_outputs=step_outputs,
        trigger_payload=row.trigger_payload,
        trigger_source=row.trigger_source,
        error_message=row.error_message,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _insert_step_output(session: Session, run_id: str, step_name: str, output: str) -> bool:
    existing = session.exec(
        select(WorkflowStepOutputRow.id).where(
            WorkflowStepOutputRow.run_id == run_id,
            WorkflowStepOutputRow.step_name == step_name,
        ),
    ).first()
    if existing is not None:
        return False

    now = to_db_datetime(utc_now())
    result = session.exec(
        sa_update(WorkflowRunRow)
        .where(
            col(WorkflowRunRow.run_id) == run_id,
            col(WorkflowRunRow.status).in_(_OPEN_STATUSES),
            col(WorkflowRunRow.completed_steps) < col(WorkflowRunRow.total_steps),
        )
        .values(
            completed_steps=col(WorkflowRunRow.completed_steps) + 1,
            current_step_name=step_name,
            updated_at=now,
        ),
    )
    if result.rowcount != 1:
        return False
    session.add(
        WorkflowStepOutputRow(
            run_id=run_id,
            step_name=step_name,
            output=output,
            created_at=now,
        ),
    )
    session.flush()
    return True
