from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from task_engine.orchestrator import schedule_store
from task_engine.orchestrator.errors import CronExpressionError, TaskNotFoundError
from task_engine.orchestrator.models import (
    ScheduleCreate,
    ScheduleUpdate,
    TaskStatus,
    TriggerSource,
)
from task_engine.orchestrator.scheduler import (
    Scheduler,
    resolve_schedule_prompt,
    start_scheduler,
)

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Cron Schedules"),
]

NOON = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _scheduler(stores) -> Scheduler:
    return Scheduler(schedule_repository=stores.schedules, task_repository=stores.tasks)


def _payload(name: str = "nightly", cron_expr: str = "0 0 * * *", **overrides) -> ScheduleCreate:
    values = {
        "name": name,
        "cron_expr": cron_expr,
        "task_prompt": "Summarize the day",
        "agent_id": "writer",
        "workspace_id": "ws-1",
    }
    values.update(overrides)
    return ScheduleCreate(**values)


def test_create_schedule_computes_next_run(stores) -> None:
    schedule = _scheduler(stores).create_schedule(_payload(), now=NOON)

    assert schedule.enabled
    assert schedule.next_run_at == datetime(2024, 1, 2, 0, 0, tzinfo=UTC)
    assert schedule.last_run_at is None
    assert stores.schedules.get(schedule.schedule_id) is not None


def test_create_schedule_rejects_invalid_cron(stores) -> None:
    with pytest.raises(CronExpressionError, match="not cron"):
        _scheduler(stores).create_schedule(_payload(cron_expr="not cron"), now=NOON)

    assert stores.schedules.list_schedules() == []


def test_create_schedule_rejects_empty_prompt(stores) -> None:
    with pytest.raises(ValueError, match="task_prompt"):
        _scheduler(stores).create_schedule(_payload(task_prompt="  "), now=NOON)


def test_tick_fires_due_schedule_once(stores) -> None:
    scheduler = _scheduler(stores)
    schedule = scheduler.create_schedule(_payload(), now=NOON)
    fire_time = datetime(2024, 1, 2, 0, 0, 30, tzinfo=UTC)

    assert scheduler.tick(NOON).fired == {}

    first = scheduler.tick(fire_time)
    second = scheduler.tick(fire_time)

    assert list(first.fired) == [schedule.schedule_id]
    assert second.fired == {}
    task = stores.tasks.get(first.fired[schedule.schedule_id])
    assert task is not None
    assert task.title == "[Scheduled] nightly"
    assert task.prompt == "Summarize the day"
    assert task.trigger_source == TriggerSource.SCHEDULE
    assert task.triggered_by == f"schedule:{schedule.schedule_id}"
    assert task.max_attempts == 1
    assert task.status == TaskStatus.PENDING

    refreshed = stores.schedules.get(schedule.schedule_id)
    assert refreshed is not None
    assert refreshed.last_run_at == fire_time
    assert refreshed.next_run_at == datetime(2024, 1, 3, 0, 0, tzinfo=UTC)
    assert refreshed.last_task_id == task.task_id


def test_tick_skips_disabled_schedules(stores) -> None:
    scheduler = _scheduler(stores)
    scheduler.create_schedule(_payload(enabled=False), now=NOON)

    summary = scheduler.tick(NOON + timedelta(days=2))

    assert summary.fired == {}
    assert stores.tasks.list_tasks() == []


def test_tick_isolates_failing_schedule(stores, monkeypatch) -> None:
    scheduler = _scheduler(stores)
    broken = scheduler.create_schedule(_payload(name="broken"), now=NOON)
    healthy = scheduler.create_schedule(_payload(name="healthy"), now=NOON)
    original_write = schedule_store.write_task

    def _write(session, task):
        if task.title == "[Scheduled] broken":
            raise RuntimeError("disk full")
        return original_write(session, task)

    monkeypatch.setattr(schedule_store, "write_task", _write)

    summary = scheduler.tick(NOON + timedelta(days=1))

    assert summary.errors == [broken.schedule_id]
    assert list(summary.fired) == [healthy.schedule_id]
    still_due = stores.schedules.get(broken.schedule_id)
    assert still_due is not None
    assert still_due.next_run_at == broken.next_run_at
    assert still_due.last_run_at is None
    assert still_due.last_task_id is None
    assert [task.title for task in stores.tasks.list_tasks()] == ["[Scheduled] healthy"]

    monkeypatch.setattr(schedule_store, "write_task", original_write)
    assert list(scheduler.tick(NOON + timedelta(days=1)).fired) == [broken.schedule_id]


def test_concurrent_ticks_fire_each_schedule_once(stores) -> None:
    scheduler = _scheduler(stores)
    schedule = scheduler.create_schedule(_payload(), now=NOON)
    fire_time = NOON + timedelta(days=1)
    workers = 4
    barrier = threading.Barrier(workers)
    fired: list[str] = []
    lock = threading.Lock()

    def _tick() -> None:
        barrier.wait(timeout=5)
        summary = scheduler.tick(fire_time)
        with lock:
            fired.extend(summary.fired)

    threads = [threading.Thread(target=_tick) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert fired == [schedule.schedule_id]
    assert len(stores.tasks.list_tasks()) == 1


def test_run_now_bypasses_cron_timing(stores) -> None:
    scheduler = _scheduler(stores)
    schedule = scheduler.create_schedule(_payload(), now=NOON)

    task = scheduler.run_now(schedule.schedule_id, NOON + timedelta(minutes=5))

    assert task.title == "[Manual] nightly"
    assert task.triggered_by == "user-manual"
    assert task.trigger_source == TriggerSource.SCHEDULE
    refreshed = stores.schedules.get(schedule.schedule_id)
    assert refreshed is not None
    assert refreshed.last_task_id == task.task_id
    assert refreshed.next_run_at == datetime(2024, 1, 2, 0, 0, tzinfo=UTC)


def test_run_now_rejects_unknown_and_disabled(stores) -> None:
    scheduler = _scheduler(stores)
    disabled = scheduler.create_schedule(_payload(enabled=False), now=NOON)

    with pytest.raises(TaskNotFoundError):
        scheduler.run_now("missing", NOON)
    with pytest.raises(ValueError, match="disabled"):
        scheduler.run_now(disabled.schedule_id, NOON)


def test_update_recomputes_next_run_on_cron_change_and_reenable(stores) -> None:
    scheduler = _scheduler(stores)
    schedule = scheduler.create_schedule(_payload(), now=NOON)

    renamed = scheduler.update_schedule(
        schedule.schedule_id,
        ScheduleUpdate(name="renamed"),
        now=NOON,
    )
    assert renamed.name == "renamed"
    assert renamed.next_run_at == schedule.next_run_at

    hourly = scheduler.update_schedule(
        schedule.schedule_id,
        ScheduleUpdate(cron_expr="30 * * * *"),
        now=NOON,
    )
    assert hourly.next_run_at == datetime(2024, 1, 1, 12, 30, tzinfo=UTC)

    scheduler.update_schedule(schedule.schedule_id, ScheduleUpdate(enabled=False), now=NOON)
    later = NOON + timedelta(hours=3)
    reenabled = scheduler.update_schedule(
        schedule.schedule_id,
        ScheduleUpdate(enabled=True),
        now=later,
    )
    assert reenabled.enabled
    assert reenabled.next_run_at == datetime(2024, 1, 1, 15, 30, tzinfo=UTC)

    with pytest.raises(CronExpressionError):
        scheduler.update_schedule(schedule.schedule_id, ScheduleUpdate(cron_expr="* *"), now=NOON)
    with pytest.raises(TaskNotFoundError):
        scheduler.update_schedule("missing", ScheduleUpdate(name="x"), now=NOON)


def test_update_keeps_fire_claimed_during_edit(stores, monkeypatch) -> None:
    scheduler = _scheduler(stores)
    schedule = scheduler.create_schedule(_payload(), now=NOON)
    fire_time = datetime(2024, 1, 2, 0, 0, 30, tzinfo=UTC)
    apply_update = stores.schedules.apply_update
    fired: dict[str, str] = {}

    def _tick_first(schedule_id: str, **columns):
        fired.update(scheduler.tick(fire_time).fired)
        return apply_update(schedule_id, **columns)

    monkeypatch.setattr(stores.schedules, "apply_update", _tick_first)
    renamed = scheduler.update_schedule(
        schedule.schedule_id,
        ScheduleUpdate(name="renamed"),
        now=fire_time,
    )

    assert renamed.name == "renamed"
    assert renamed.next_run_at == datetime(2024, 1, 3, 0, 0, tzinfo=UTC)
    assert renamed.last_run_at == fire_time
    assert renamed.last_task_id == fired[schedule.schedule_id]
    assert scheduler.tick(fire_time).fired == {}


def test_delete_and_list_schedules(stores) -> None:
    scheduler = _scheduler(stores)
    first = scheduler.create_schedule(_payload(name="first"), now=NOON)
    scheduler.create_schedule(_payload(name="other", workspace_id="ws-2"), now=NOON)

    assert [item.name for item in scheduler.list_schedules(workspace_id="ws-1")] == ["first"]
    assert scheduler.delete_schedule(first.schedule_id)
    assert not scheduler.delete_schedule(first.schedule_id)
    assert [item.name for item in scheduler.list_schedules()] == ["other"]


def test_prompt_template_placeholders(stores) -> None:
    schedule = _scheduler(stores).create_schedule(
        _payload(prompt_template="Run {scheduleName} ({cronExpr}) at {timestamp}"),
        now=NOON,
    )

    assert resolve_schedule_prompt(schedule, NOON) == (
        "Run nightly (0 0 * * *) at 2024-01-01T12:00:00+00:00"
    )
    schedule.prompt_template = "   "
    assert resolve_schedule_prompt(schedule, NOON) == "Summarize the day"


class _CountingCycle:
    def __init__(self, *, target_calls: int = 2) -> None:
        self.calls = 0
        self.target_calls = target_calls
        self.reached = threading.Event()

    def run(self, now: datetime) -> object:
        self.calls += 1
        if self.calls >= self.target_calls:
            self.reached.set()
        if self.calls == 1:
            raise RuntimeError("first tick explodes")
        return None


def test_scheduler_handle_survives_errors_and_stops() -> None:
    cycle = _CountingCycle()

    handle = start_scheduler(cycle, interval_seconds=0.01)
    try:
        assert cycle.reached.wait(timeout=5)
    finally:
        handle.stop(timeout=5)

    assert not handle.running
    assert handle.ticks >= 2


def test_start_scheduler_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        start_scheduler(_CountingCycle(), interval_seconds=0)
