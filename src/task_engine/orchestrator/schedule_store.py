"""Persistence for cron schedules, including the atomic claim of a due fire."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from task_engine.orchestrator.models import BackgroundTask, Schedule
from task_engine.orchestrator.task_store import write_task
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    optional_db,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import ScheduleRow

logger = logging.getLogger(__name__)


class ScheduleRepository:
    """Schedule CRUD and due-fire claims."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def save(self, schedule: Schedule) -> Schedule:
        """Insert or replace a schedule by id."""

        with Session(self.engine) as session:
            row = session.get(ScheduleRow, schedule.schedule_id)
            if row is None:
                row = ScheduleRow(
                    schedule_id=schedule.schedule_id,
                    name=schedule.name,
                    cron_expr=schedule.cron_expr,
                    task_prompt=schedule.task_prompt,
                    agent_id=schedule.agent_id,
                    workspace_id=schedule.workspace_id,
                    created_at=to_db_datetime(schedule.created_at),
                    updated_at=to_db_datetime(schedule.updated_at),
                )
            row.name = schedule.name
            row.cron_expr = schedule.cron_expr
            row.task_prompt = schedule.task_prompt
            row.prompt_template = schedule.prompt_template
            row.agent_id = schedule.agent_id
            row.workspace_id = schedule.workspace_id
            row.enabled = schedule.enabled
            row.last_run_at = optional_db(schedule.last_run_at)
            row.next_run_at = optional_db(schedule.next_run_at)
            row.last_task_id = schedule.last_task_id
            row.created_at = to_db_datetime(schedule.created_at)
            row.updated_at = to_db_datetime(schedule.updated_at)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule(row)

    def get(self, schedule_id: str) -> Schedule | None:
        with Session(self.engine) as session:
            row = session.get(ScheduleRow, schedule_id)
            return _to_schedule(row) if row is not None else None

    def list_schedules(self, *, workspace_id: str | None = None) -> list[Schedule]:
        with Session(self.engine) as session:
            statement = select(ScheduleRow)
            if workspace_id is not None:
                statement = statement.where(ScheduleRow.workspace_id == workspace_id)
            rows = session.exec(statement.order_by(col(ScheduleRow.created_at).asc())).all()
        return [_to_schedule(row) for row in rows]

    def list_due(self, now: datetime) -> list[Schedule]:
        """Enabled schedules whose ``next_run_at`` has been reached."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ScheduleRow)
                .where(
                    col(ScheduleRow.enabled).is_(True),
                    col(ScheduleRow.next_run_at).is_not(None),
                    col(ScheduleRow.next_run_at) <= to_db_datetime(now),
                )
                .order_by(col(ScheduleRow.next_run_at).asc()),
            ).all()
        return [_to_schedule(row) for row in rows]

    def claim_fire(
        self,
        schedule_id: str,
        task: BackgroundTask,
        *,
        now: datetime,
        next_run_at: datetime | None,
        require_due: bool = True,
    ) -> bool:
        """Advance bookkeeping for one fire and insert its task; only one caller wins.

        With ``require_due`` the row must still be due at ``now``, so a
        second tick observing the same fire gets ``False``. The claim and the
        task commit together: if the task cannot be written the schedule
        stays due for the next tick.
        """

        db_now = to_db_datetime(now)
        conditions = [
            col(ScheduleRow.schedule_id) == schedule_id,
            col(ScheduleRow.enabled).is_(True),
        ]
        if require_due:
            conditions.append(col(ScheduleRow.next_run_at) <= db_now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduleRow)
                .where(*conditions)
                .values(
                    last_run_at=db_now,
                    next_run_at=optional_db(next_run_at),
                    last_task_id=task.task_id,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            write_task(session, task)
            session.commit()
            return True

    def apply_update(
        self,
        schedule_id: str,
        *,
        updated_at: datetime,
        **changes: object,
    ) -> Schedule | None:
        """Write only the given columns, leaving fire bookkeeping to ``claim_fire``."""

        values = {
            name: to_db_datetime(value) if isinstance(value, datetime) else value
            for name, value in changes.items()
        }
        values["updated_at"] = to_db_datetime(updated_at)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduleRow)
                .where(col(ScheduleRow.schedule_id) == schedule_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(ScheduleRow, schedule_id)
            return _to_schedule(row) if row is not None else None

    def delete(self, schedule_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ScheduleRow).where(col(ScheduleRow.schedule_id) == schedule_id),
            )
            session.commit()
            return result.rowcount == 1


def _to_schedule(row: ScheduleRow) -> Schedule:
    return Schedule(
        schedule_id=row.schedule_id,
        name=row.name,
        cron_expr=row.cron_expr,
        task_prompt=row.task_prompt,
        prompt_template=row.prompt_template,
        agent_id=row.agent_id,
        workspace_id=row.workspace_id,
        enabled=row.enabled,
        last_run_at=optional_utc(row.last_run_at),
        next_run_at=optional_utc(row.next_run_at),
        last_task_id=row.last_task_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
