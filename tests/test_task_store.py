from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from task_engine.orchestrator.errors import TaskNotFoundError, TaskRetryRejectedError
from task_engine.orchestrator.models import (
    BackgroundTask,
    CreateTaskRequest,
    TaskPriority,
    TaskStatus,
    TaskStatusPatch,
)
from task_engine.orchestrator.task_store import TaskRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence & Readiness"),
]


def _create(
    repository: TaskRepository,
    prompt: str = "summarize inbox",
    *,
    depends_on: tuple[str, ...] = (),
    priority: TaskPriority = TaskPriority.NORMAL,
    max_attempts: int = 1,
) -> BackgroundTask:
    return repository.save(
        CreateTaskRequest(
            prompt=prompt,
            agent_id="writer",
            workspace_id="ws-1",
            depends_on_task_ids=depends_on,
            priority=priority,
            max_attempts=max_attempts,
        ).build(),
    )


def _complete(repository: TaskRepository, task_id: str) -> None:
    assert repository.update_status(task_id, TaskStatus.RUNNING)
    assert repository.update_status(
        task_id,
        TaskStatus.COMPLETED,
        TaskStatusPatch(task_output="ok"),
    )


def _ready_ids(repository: TaskRepository) -> list[str]:
    return [task.task_id for task in repository.list_ready_to_run()]


def test_save_and_get_round_trip_defaults(stores) -> None:
    task = _create(stores.tasks, "Line one\nline two of a prompt")

    loaded = stores.tasks.get(task.task_id)

    assert loaded is not None
    assert loaded.status == TaskStatus.PENDING
    assert loaded.attempts == 0
    assert loaded.title == "Line one line two of a prompt"
    assert loaded.created_at.tzinfo is not None
    assert stores.tasks.get("missing") is None


def test_create_request_validates_required_fields() -> None:
    with pytest.raises(ValueError, match="prompt"):
        CreateTaskRequest(prompt="  ", agent_id="a", workspace_id="w").build()
    with pytest.raises(ValueError, match="agent_id"):
        CreateTaskRequest(prompt="p", agent_id="", workspace_id="w").build()
    with pytest.raises(ValueError, match="max_attempts"):
        CreateTaskRequest(prompt="p", agent_id="a", workspace_id="w", max_attempts=0).build()


def test_create_request_dedups_dependencies_keeping_order() -> None:
    task = CreateTaskRequest(
        prompt="p",
        agent_id="a",
        workspace_id="w",
        depends_on_task_ids=("b", "a", "b"),
    ).build()

    assert task.depends_on_task_ids == ("b", "a")


def test_ready_requires_all_dependencies_completed(stores) -> None:
    upstream_a = _create(stores.tasks, "a")
    upstream_b = _create(stores.tasks, "b")
    downstream = _create(stores.tasks, "c", depends_on=(upstream_a.task_id, upstream_b.task_id))

    assert downstream.task_id not in _ready_ids(stores.tasks)

    _complete(stores.tasks, upstream_a.task_id)
    assert downstream.task_id not in _ready_ids(stores.tasks)

    _complete(stores.tasks, upstream_b.task_id)
    assert _ready_ids(stores.tasks) == [downstream.task_id]


def test_missing_dependency_is_never_satisfied(stores) -> None:
    orphan = _create(stores.tasks, "orphan", depends_on=("does-not-exist",))

    assert orphan.task_id not in _ready_ids(stores.tasks)


def test_failed_dependency_blocks_downstream(stores) -> None:
    upstream = _create(stores.tasks, "up")
    downstream = _create(stores.tasks, "down", depends_on=(upstream.task_id,))

    assert stores.tasks.update_status(upstream.task_id, TaskStatus.RUNNING)
    assert stores.tasks.update_status(
        upstream.task_id,
        TaskStatus.FAILED,
        TaskStatusPatch(error_message="boom"),
    )

    assert downstream.task_id not in _ready_ids(stores.tasks)


def test_ready_order_is_priority_then_creation(stores) -> None:
    low = _create(stores.tasks, "low", priority=TaskPriority.LOW)
    normal_first = _create(stores.tasks, "normal-1")
    high = _create(stores.tasks, "high", priority=TaskPriority.HIGH)
    normal_second = _create(stores.tasks, "normal-2")

    assert _ready_ids(stores.tasks) == [
        high.task_id,
        normal_first.task_id,
        normal_second.task_id,
        low.task_id,
    ]
    assert len(stores.tasks.list_ready_to_run(limit=2)) == 2


def test_running_transition_increments_attempts_and_stamps_start(stores) -> None:
    task = _create(stores.tasks, max_attempts=3)

    assert stores.tasks.update_status(task.task_id, TaskStatus.RUNNING)

    loaded = stores.tasks.get(task.task_id)
    assert loaded is not None
    assert loaded.status == TaskStatus.RUNNING
    assert loaded.attempts == 1
    assert loaded.started_at is not None
    assert loaded.completed_at is None


def test_illegal_transitions_are_rejected(stores) -> None:
    task = _create(stores.tasks)

    assert not stores.tasks.update_status(task.task_id, TaskStatus.COMPLETED)
    assert not stores.tasks.update_status(task.task_id, TaskStatus.FAILED)
    assert not stores.tasks.update_status(task.task_id, TaskStatus.PENDING)
    assert not stores.tasks.update_status("missing", TaskStatus.RUNNING)

    _complete(stores.tasks, task.task_id)
    for target in (TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED, TaskStatus.PENDING):
        assert not stores.tasks.update_status(task.task_id, target)

    loaded = stores.tasks.get(task.task_id)
    assert loaded is not None
    assert loaded.status == TaskStatus.COMPLETED
    assert loaded.task_output == "ok"
    assert loaded.completed_at is not None


def test_cancel_from_pending_and_running(stores) -> None:
    pending = _create(stores.tasks, "pending")
    running = _create(stores.tasks, "running")
    assert stores.tasks.update_status(running.task_id, TaskStatus.RUNNING)

    assert stores.tasks.update_status(pending.task_id, TaskStatus.CANCELLED)
    assert stores.tasks.update_status(running.task_id, TaskStatus.CANCELLED)
    assert not stores.tasks.update_status(pending.task_id, TaskStatus.CANCELLED)
    assert _ready_ids(stores.tasks) == []


def test_concurrent_claims_have_exactly_one_winner(db_path: Path, stores) -> None:
    task = _create(stores.tasks)
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _claim() -> None:
        repository = TaskRepository(db_path)
        try:
            barrier.wait(timeout=5)
            won = repository.update_status(task.task_id, TaskStatus.RUNNING)
            with results_lock:
                results.append(won)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(results) == [False] * (workers - 1) + [True]
    loaded = stores.tasks.get(task.task_id)
    assert loaded is not None
    assert loaded.attempts == 1


def test_retry_task_respects_attempt_budget(stores) -> None:
    task = _create(stores.tasks, max_attempts=2)

    assert stores.tasks.update_status(task.task_id, TaskStatus.RUNNING)
    assert stores.tasks.update_status(
        task.task_id,
        TaskStatus.FAILED,
        TaskStatusPatch(error_message="first"),
    )
    retried = stores.tasks.retry_task(task.task_id)
    assert retried.status == TaskStatus.PENDING
    assert retried.error_message is None
    assert retried.attempts == 1

    assert stores.tasks.update_status(task.task_id, TaskStatus.RUNNING)
    assert stores.tasks.update_status(
        task.task_id,
        TaskStatus.FAILED,
        TaskStatusPatch(error_message="second"),
    )
    with pytest.raises(TaskRetryRejectedError, match="no attempts remaining"):
        stores.tasks.retry_task(task.task_id)


def test_retry_task_rejects_unknown_and_non_failed(stores) -> None:
    task = _create(stores.tasks)

    with pytest.raises(TaskNotFoundError):
        stores.tasks.retry_task("missing")
    with pytest.raises(TaskRetryRejectedError, match="Only failed tasks"):
        stores.tasks.retry_task(task.task_id)


def test_save_replaces_dependency_set(stores) -> None:
    first = _create(stores.tasks, "first")
    second = _create(stores.tasks, "second")
    task = _create(stores.tasks, "task", depends_on=(first.task_id,))

    task.depends_on_task_ids = (second.task_id,)
    stores.tasks.save(task)

    loaded = stores.tasks.get(task.task_id)
    assert loaded is not None
    assert loaded.depends_on_task_ids == (second.task_id,)


def test_update_prompt_only_applies_to_pending(stores) -> None:
    task = _create(stores.tasks, "draft")

    assert stores.tasks.update_prompt(task.task_id, "final")
    assert stores.tasks.update_status(task.task_id, TaskStatus.RUNNING)
    assert not stores.tasks.update_prompt(task.task_id, "too late")

    loaded = stores.tasks.get(task.task_id)
    assert loaded is not None
    assert loaded.prompt == "final"


def test_listing_queries(stores) -> None:
    first = _create(stores.tasks, "first")
    second = _create(stores.tasks, "second")
    assert stores.tasks.update_status(second.task_id, TaskStatus.RUNNING)
    assert stores.tasks.set_execution_handle(second.task_id, "handle-2")

    assert [task.task_id for task in stores.tasks.list_by_status(TaskStatus.PENDING)] == [
        first.task_id,
    ]
    assert [task.task_id for task in stores.tasks.list_running()] == [second.task_id]
    assert [task.task_id for task in stores.tasks.list_by_workspace("ws-1")] == [
        first.task_id,
        second.task_id,
    ]
    assert [task.task_id for task in stores.tasks.list_tasks(limit=10)] == [
        second.task_id,
        first.task_id,
    ]
    assert stores.tasks.list_tasks(status=TaskStatus.FAILED) == []


def test_set_execution_handle_requires_running(stores) -> None:
    task = _create(stores.tasks)

    assert not stores.tasks.set_execution_handle(task.task_id, "too-early")


def test_delete_removes_task(stores) -> None:
    upstream = _create(stores.tasks, "up")
    task = _create(stores.tasks, "down", depends_on=(upstream.task_id,))

    assert stores.tasks.delete(task.task_id)
    assert stores.tasks.get(task.task_id) is None
    assert not stores.tasks.delete(task.task_id)


def test_to_record_uses_iso_timestamps(stores) -> None:
    task = _create(stores.tasks)

    record = task.to_record()

    assert record["status"] == "PENDING"
    assert record["agentId"] == "writer"
    assert record["completedAt"] is None
    assert str(record["createdAt"]).endswith("+00:00")
