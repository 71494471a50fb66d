"""Dispatch and completion cycle over the task queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from task_engine.orchestrator.backend.base import AgentExecutor, ExecutionStatus
from task_engine.orchestrator.errors import TaskNotFoundError
from task_engine.orchestrator.models import BackgroundTask, TaskStatus, TaskStatusPatch
from task_engine.orchestrator.task_store import TaskRepository
from task_engine.orchestrator.workflow_store import WorkflowRunRepository
from task_engine.orchestrator.workflows import has_step_output_placeholders, resolve_step_outputs

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_EXCEEDED = "max attempts exceeded"


@dataclass(slots=True)
class DispatchSummary:
    claimed: list[str] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CompletionSummary:
    polled: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    still_running: list[str] = field(default_factory=list)
    completed_runs: list[str] = field(default_factory=list)
    failed_runs: list[str] = field(default_factory=list)


class Dispatcher:
    """Claims ready tasks, hands them to the executor, and records outcomes.

    Both passes are idempotent and safe to overlap: every state change is a
    status CAS, and only the caller whose CAS applied acts on the task.
    """

    def __init__(
        self,
        *,
        task_repository: TaskRepository,
        run_repository: WorkflowRunRepository,
        executor: AgentExecutor,
        auto_retry: bool = False,
    ) -> None:
        self.task_repository = task_repository
        self.run_repository = run_repository
        self.executor = executor
        self.auto_retry = auto_retry

    def dispatch_pending(self) -> DispatchSummary:
        summary = DispatchSummary()
        for candidate in self.task_repository.list_ready_to_run():
            if not self.task_repository.update_status(candidate.task_id, TaskStatus.RUNNING):
                summary.skipped.append(candidate.task_id)
                continue
            summary.claimed.append(candidate.task_id)
            try:
                self._dispatch_claimed(candidate.task_id, summary)
            except Exception:  # noqa: BLE001
                logger.exception("Dispatch failed for task %s", candidate.task_id)
        return summary

    def _dispatch_claimed(self, task_id: str, summary: DispatchSummary) -> None:
        task = self.task_repository.get(task_id)
        if task is None:
            return
        if task.attempts > task.max_attempts:
            if self._fail(task, MAX_ATTEMPTS_EXCEEDED) and task.workflow_run_id is not None:
                self.run_repository.fail_run(
                    task.workflow_run_id,
                    f"step {task.workflow_step_name!r} failed: {MAX_ATTEMPTS_EXCEEDED}",
                )
            summary.failed.append(task_id)
            return
        task = self._with_resolved_prompt(task)

        try:
            handle = self.executor.execute(task)
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor rejected task %s", task_id)
            self._fail(task, str(error) or type(error).__name__)
            summary.failed.append(task_id)
            return

        if not self.task_repository.set_execution_handle(task_id, handle):
            # Cancelled between claim and execute.
            self.executor.cancel(handle)
            return
        summary.dispatched.append(task_id)
        logger.info("Dispatched task %s attempt %d/%d", task_id, task.attempts, task.max_attempts)

    def _with_resolved_prompt(self, task: BackgroundTask) -> BackgroundTask:
        """Fill any step-output placeholders the completion pass has not rewritten yet."""

        if task.workflow_run_id is None or not has_step_output_placeholders(task.prompt):
            return task
        run = self.run_repository.get_run(task.workflow_run_id)
        if run is None:
            return task
        return replace(task, prompt=resolve_step_outputs(task.prompt, run.step_outputs))

    def check_completions(self) -> CompletionSummary:
        summary = CompletionSummary()
        for task in self.task_repository.list_running():
            summary.polled += 1
            try:
                self._check_one(task, summary)
            except Exception:  # noqa: BLE001
                logger.exception("Completion check failed for task %s", task.task_id)
        return summary

    def _check_one(self, task: BackgroundTask, summary: CompletionSummary) -> None:
        if task.execution_handle is None:
            return
        status: ExecutionStatus = self.executor.poll_completion(task.execution_handle)
        if not status.done:
            summary.still_running.append(task.task_id)
            return

        if status.succeeded:
            output = status.output or ""
            if task.workflow_run_id is not None and task.workflow_step_name is not None:
                self._complete_step(task, output, summary)
                return
            if not self.task_repository.update_status(
                task.task_id,
                TaskStatus.COMPLETED,
                TaskStatusPatch(task_output=output),
            ):
                return
            summary.completed.append(task.task_id)
            return

        error_message = status.error or "agent reported failure"
        if not self._fail(task, error_message):
            return
        summary.failed.append(task.task_id)
        if task.attempts_remaining and self.auto_retry:
            if self.task_repository.update_status(task.task_id, TaskStatus.PENDING):
                summary.retried.append(task.task_id)
                logger.info(
                    "Auto-retrying task %s (%d/%d)",
                    task.task_id,
                    task.attempts,
                    task.max_attempts,
                )
            return
        if task.workflow_run_id is not None and not task.attempts_remaining:
            reason = f"step {task.workflow_step_name!r} failed: {error_message}"
            if self.run_repository.fail_run(task.workflow_run_id, reason):
                summary.failed_runs.append(task.workflow_run_id)

    def _complete_step(
        self,
        task: BackgroundTask,
        output: str,
        summary: CompletionSummary,
    ) -> None:
        run_id = task.workflow_run_id
        step_name = task.workflow_step_name
        if run_id is None or step_name is None:
            return
        completion = self.run_repository.complete_step(
            task.task_id,
            run_id=run_id,
            step_name=step_name,
            output=output,
        )
        if not completion.task_completed:
            return
        summary.completed.append(task.task_id)
        if not completion.step_recorded:
            return
        if self.run_repository.complete_if_finished(run_id):
            summary.completed_runs.append(run_id)
            return

        run = self.run_repository.get_run(run_id)
        if run is None:
            return
        for pending in self.task_repository.list_by_workflow_run_id(run_id):
            if pending.status != TaskStatus.PENDING:
                continue
            if not has_step_output_placeholders(pending.prompt):
                continue
            resolved = resolve_step_outputs(pending.prompt, run.step_outputs)
            if resolved != pending.prompt:
                self.task_repository.update_prompt(pending.task_id, resolved)

    def _fail(self, task: BackgroundTask, error_message: str) -> bool:
        applied = self.task_repository.update_status(
            task.task_id,
            TaskStatus.FAILED,
            TaskStatusPatch(error_message=error_message),
        )
        if applied:
            logger.warning("Task %s failed: %s", task.task_id, error_message)
        return applied

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a PENDING or RUNNING task; other statuses are a no-op ``False``.

        A cancelled workflow step can never complete, so its run is failed.
        """

        task = self.task_repository.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        if not self.task_repository.update_status(task_id, TaskStatus.CANCELLED):
            logger.warning("Task %s not cancellable from status=%s", task_id, task.status.value)
            return False
        if task.workflow_run_id is not None:
            self.run_repository.fail_run(
                task.workflow_run_id,
                f"step {task.workflow_step_name!r} cancelled",
            )
        if task.execution_handle is not None:
            try:
                self.executor.cancel(task.execution_handle)
            except Exception:  # noqa: BLE001
                logger.exception("Executor cancel failed for task %s", task_id)
        return True

    def retry_task(self, task_id: str) -> BackgroundTask:
        return self.task_repository.retry_task(task_id)
