"""Cron schedule management, due-schedule ticks, and the in-process tick thread."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from task_engine.orchestrator.cron import is_valid_cron_expr, next_run_time
from task_engine.orchestrator.errors import CronExpressionError, TaskNotFoundError
from task_engine.orchestrator.models import (
    BackgroundTask,
    CreateTaskRequest,
    Schedule,
    ScheduleCreate,
    ScheduleUpdate,
    TriggerSource,
)
from task_engine.orchestrator.schedule_store import ScheduleRepository
from task_engine.orchestrator.task_store import TaskRepository
from task_engine.storage.common import to_iso, to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)


def resolve_schedule_prompt(schedule: Schedule, now: datetime) -> str:
    """Expand ``{timestamp}``, ``{cronExpr}`` and ``{scheduleName}`` in the prompt."""

    template = (schedule.prompt_template or "").strip() or schedule.task_prompt
    return (
        template.replace("{timestamp}", to_iso(now) or "")
        .replace("{cronExpr}", schedule.cron_expr)
        .replace("{scheduleName}", schedule.name)
    )


@dataclass(slots=True)
class TickSummary:
    fired: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class Scheduler:
    """Turns due cron schedules into background tasks."""

    def __init__(
        self,
        *,
        schedule_repository: ScheduleRepository,
        task_repository: TaskRepository,
    ) -> None:
        self.schedule_repository = schedule_repository
        self.task_repository = task_repository

    def create_schedule(self, payload: ScheduleCreate, *, now: datetime | None = None) -> Schedule:
        if not is_valid_cron_expr(payload.cron_expr):
            raise CronExpressionError(payload.cron_expr)
        for label, value in (
            ("name", payload.name),
            ("task_prompt", payload.task_prompt),
            ("agent_id", payload.agent_id),
            ("workspace_id", payload.workspace_id),
        ):
            if not value.strip():
                raise ValueError(f"Schedule {label} must not be empty.")

        reference = _reference_time(now)
        schedule = Schedule(
            schedule_id=payload.schedule_id or str(uuid4()),
            name=payload.name,
            cron_expr=payload.cron_expr,
            task_prompt=payload.task_prompt,
            prompt_template=payload.prompt_template,
            agent_id=payload.agent_id,
            workspace_id=payload.workspace_id,
            enabled=payload.enabled,
            next_run_at=next_run_time(payload.cron_expr, reference),
            created_at=reference,
            updated_at=reference,
        )
        saved = self.schedule_repository.save(schedule)
        logger.info(
            "Created schedule %s (%s) next_run_at=%s",
            saved.schedule_id,
            saved.cron_expr,
            to_iso(saved.next_run_at),
        )
        return saved

    def update_schedule(
        self,
        schedule_id: str,
        changes: ScheduleUpdate,
        *,
        now: datetime | None = None,
    ) -> Schedule:
        """Apply an edit; ``next_run_at`` is recomputed on cron change or re-enable.

        Only the edited columns are written, so a fire claimed concurrently
        keeps its ``last_run_at``, ``next_run_at`` and ``last_task_id``.
        """

        schedule = self._require(schedule_id)
        if changes.cron_expr is not None and not is_valid_cron_expr(changes.cron_expr):
            raise CronExpressionError(changes.cron_expr)

        reference = _reference_time(now)
        cron_expr = changes.cron_expr or schedule.cron_expr
        cron_changed = cron_expr != schedule.cron_expr
        re_enabled = changes.enabled is True and not schedule.enabled

        columns: dict[str, object] = {}
        if changes.name is not None:
            columns["name"] = changes.name
        if changes.cron_expr is not None:
            columns["cron_expr"] = changes.cron_expr
        if changes.task_prompt is not None:
            columns["task_prompt"] = changes.task_prompt
        if changes.prompt_template is not None:
            columns["prompt_template"] = changes.prompt_template or None
        if changes.agent_id is not None:
            columns["agent_id"] = changes.agent_id
        if changes.enabled is not None:
            columns["enabled"] = changes.enabled
        if cron_changed or re_enabled:
            columns["next_run_at"] = next_run_time(cron_expr, reference)

        updated = self.schedule_repository.apply_update(
            schedule_id,
            updated_at=reference,
            **columns,
        )
        if updated is None:
            raise TaskNotFoundError(f"Schedule not found: {schedule_id}")
        return updated

    def delete_schedule(self, schedule_id: str) -> bool:
        deleted = self.schedule_repository.delete(schedule_id)
        if deleted:
            logger.info("Deleted schedule %s", schedule_id)
        return deleted

    def list_schedules(self, *, workspace_id: str | None = None) -> list[Schedule]:
        return self.schedule_repository.list_schedules(workspace_id=workspace_id)

    def tick(self, now: datetime | None = None) -> TickSummary:
        """Fire every enabled schedule whose ``next_run_at`` has been reached.

        A second tick at the same ``now`` fires nothing; each schedule is
        processed in isolation.
        """

        reference = _reference_time(now)
        summary = TickSummary()
        for schedule in self.schedule_repository.list_due(reference):
            try:
                task = self._fire(schedule, reference, require_due=True)
            except Exception:  # noqa: BLE001
                logger.exception("Schedule %s failed to fire", schedule.schedule_id)
                summary.errors.append(schedule.schedule_id)
                continue
            if task is None:
                summary.skipped.append(schedule.schedule_id)
                continue
            summary.fired[schedule.schedule_id] = task.task_id
        return summary

    def run_now(self, schedule_id: str, now: datetime | None = None) -> BackgroundTask:
        """Fire a schedule immediately, bypassing the due check."""

        schedule = self._require(schedule_id)
        if not schedule.enabled:
            raise ValueError(f"Schedule {schedule_id} is disabled.")
        task = self._fire(
            schedule,
            _reference_time(now),
            require_due=False,
            title_prefix="[Manual]",
            triggered_by="user-manual",
        )
        if task is None:
            raise ValueError(f"Schedule {schedule_id} was disabled concurrently.")
        return task

    def _fire(
        self,
        schedule: Schedule,
        now: datetime,
        *,
        require_due: bool,
        title_prefix: str = "[Scheduled]",
        triggered_by: str | None = None,
    ) -> BackgroundTask | None:
        task = CreateTaskRequest(
            prompt=resolve_schedule_prompt(schedule, now),
            title=f"{title_prefix} {schedule.name}",
            agent_id=schedule.agent_id,
            workspace_id=schedule.workspace_id,
            max_attempts=1,
            trigger_source=TriggerSource.SCHEDULE,
            triggered_by=triggered_by or f"schedule:{schedule.schedule_id}",
        ).build()
        claimed = self.schedule_repository.claim_fire(
            schedule.schedule_id,
            task,
            now=now,
            next_run_at=next_run_time(schedule.cron_expr, now),
            require_due=require_due,
        )
        if not claimed:
            logger.info("Schedule %s fire already claimed", schedule.schedule_id)
            return None
        logger.info("Schedule %s fired task %s", schedule.schedule_id, task.task_id)
        return task

    def _require(self, schedule_id: str) -> Schedule:
        schedule = self.schedule_repository.get(schedule_id)
        if schedule is None:
            raise TaskNotFoundError(f"Schedule not found: {schedule_id}")
        return schedule


def _reference_time(now: datetime | None) -> datetime:
    return to_utc_aware_datetime(now) if now is not None else utc_now()


class TickRunner(Protocol):
    def run(self, now: datetime) -> object:
        """Run one scheduler + dispatch + completion pass."""


class SchedulerHandle:
    """Owns one daemon thread running a tick cycle every ``interval_seconds``."""

    def __init__(self, cycle: TickRunner, *, interval_seconds: float) -> None:
        self._cycle = cycle
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            name="task-engine-scheduler",
            daemon=True,
        )
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()
        logger.info("Scheduler thread started (interval=%ss)", self._interval_seconds)

    def stop(self, timeout: float = 15.0) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Scheduler thread stopped after %d ticks", self.ticks)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._cycle.run(utc_now())
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick error")
            self.ticks += 1
            self._stop.wait(timeout=self._interval_seconds)


def start_scheduler(cycle: TickRunner, interval_seconds: float) -> SchedulerHandle:
    """Start a tick thread; the caller owns the returned handle and must ``stop()`` it."""

    if interval_seconds <= 0:
        raise ValueError(f"interval_seconds must be positive, got {interval_seconds}.")
    handle = SchedulerHandle(cycle, interval_seconds=interval_seconds)
    handle.start()
    return handle
