"""Domain models for the background task queue, workflow runs, and schedules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from task_engine.storage.common import to_iso, utc_now


class TaskStatus(str, Enum):
    """Background task lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# new status -> statuses it may be entered from
LEGAL_PREDECESSORS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.RUNNING: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.RUNNING}),
    TaskStatus.FAILED: frozenset({TaskStatus.RUNNING}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING, TaskStatus.RUNNING}),
    TaskStatus.PENDING: frozenset({TaskStatus.FAILED}),
}


class TaskPriority(str, Enum):
    """Ordering hint among otherwise-ready tasks."""

    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {TaskPriority.HIGH: 0, TaskPriority.NORMAL: 1, TaskPriority.LOW: 2}


class TriggerSource(str, Enum):
    """High-level category of what created a task."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    WORKFLOW = "workflow"


class WorkflowRunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TITLE_MAX_CHARS = 60


def derive_title(prompt: str) -> str:
    """Human-readable title from the first characters of a prompt."""

    return prompt[:TITLE_MAX_CHARS].replace("\n", " ")


@dataclass(slots=True)
class BackgroundTask:
    """A persisted unit of executable agent work."""

    task_id: str
    prompt: str
    agent_id: str
    workspace_id: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    attempts: int = 0
    max_attempts: int = 1
    depends_on_task_ids: tuple[str, ...] = ()
    trigger_source: TriggerSource = TriggerSource.MANUAL
    triggered_by: str = "user"
    workflow_run_id: str | None = None
    workflow_step_name: str | None = None
    task_output: str | None = None
    error_message: str | None = None
    execution_handle: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.title:
            self.title = derive_title(self.prompt)

    @property
    def attempts_remaining(self) -> bool:
        return self.attempts < self.max_attempts

    def to_record(self) -> dict[str, Any]:
        """Flat record with ISO-8601 timestamps for boundary serialization."""

        return {
            "id": self.task_id,
            "title": self.title,
            "prompt": self.prompt,
            "agentId": self.agent_id,
            "workspaceId": self.workspace_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "dependsOnTaskIds": list(self.depends_on_task_ids),
            "triggerSource": self.trigger_source.value,
            "triggeredBy": self.triggered_by,
            "workflowRunId": self.workflow_run_id,
            "workflowStepName": self.workflow_step_name,
            "taskOutput": self.task_output,
            "errorMessage": self.error_message,
            "executionHandle": self.execution_handle,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
        }


@dataclass(slots=True)
class CreateTaskRequest:
    """Insert request produced by trigger collaborators (manual API, webhook, poller)."""

    prompt: str
    agent_id: str
    workspace_id: str
    task_id: str | None = None
    title: str | None = None
    depends_on_task_ids: tuple[str, ...] = ()
    priority: TaskPriority = TaskPriority.NORMAL
    max_attempts: int = 1
    trigger_source: TriggerSource = TriggerSource.MANUAL
    triggered_by: str = "user"
    workflow_run_id: str | None = None
    workflow_step_name: str | None = None

    def build(self) -> BackgroundTask:
        if not self.prompt.strip():
            raise ValueError("Task prompt must not be empty.")
        if not self.agent_id.strip():
            raise ValueError("Task agent_id must not be empty.")
        if not self.workspace_id.strip():
            raise ValueError("Task workspace_id must not be empty.")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}.")
        now = utc_now()
        return BackgroundTask(
            task_id=self.task_id or str(uuid4()),
            prompt=self.prompt,
            agent_id=self.agent_id,
            workspace_id=self.workspace_id,
            title=self.title or derive_title(self.prompt),
            priority=self.priority,
            max_attempts=self.max_attempts,
            depends_on_task_ids=tuple(dict.fromkeys(self.depends_on_task_ids)),
            trigger_source=self.trigger_source,
            triggered_by=self.triggered_by,
            workflow_run_id=self.workflow_run_id,
            workflow_step_name=self.workflow_step_name,
            created_at=now,
            updated_at=now,
        )


@dataclass(slots=True)
class TaskStatusPatch:
    """Optional field updates applied together with a status transition."""

    task_output: str | None = None
    error_message: str | None = None
    execution_handle: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class WorkflowRun:
    """Bookkeeping for one execution of a workflow definition."""

    run_id: str
    workflow_id: str
    workflow_name: str
    workspace_id: str
    status: WorkflowRunStatus
    total_steps: int
    completed_steps: int
    created_at: datetime
    updated_at: datetime
    workflow_version: str | None = None
    current_step_name: str | None = None
    step_outputs: dict[str, str] = field(default_factory=dict)
    trigger_payload: str | None = None
    trigger_source: str = "manual"
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.run_id,
            "workflowId": self.workflow_id,
            "workflowName": self.workflow_name,
            "workflowVersion": self.workflow_version,
            "workspaceId": self.workspace_id,
            "status": self.status.value,
            "totalSteps": self.total_steps,
            "completedSteps": self.completed_steps,
            "currentStepName": self.current_step_name,
            "stepOutputs": dict(self.step_outputs),
            "triggerPayload": self.trigger_payload,
            "triggerSource": self.trigger_source,
            "errorMessage": self.error_message,
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass(slots=True)
class WorkflowRunCreate:
    workflow_id: str
    workflow_name: str
    workspace_id: str
    total_steps: int
    workflow_version: str | None = None
    trigger_payload: str | None = None
    trigger_source: str = "manual"


@dataclass(slots=True)
class Schedule:
    """A persisted cron-based agent trigger."""

    schedule_id: str
    name: str
    cron_expr: str
    task_prompt: str
    agent_id: str
    workspace_id: str
    enabled: bool
    created_at: datetime
    updated_at: datetime
    prompt_template: str | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    last_task_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.schedule_id,
            "name": self.name,
            "cronExpr": self.cron_expr,
            "taskPrompt": self.task_prompt,
            "promptTemplate": self.prompt_template,
            "agentId": self.agent_id,
            "workspaceId": self.workspace_id,
            "enabled": self.enabled,
            "lastRunAt": to_iso(self.last_run_at),
            "nextRunAt": to_iso(self.next_run_at),
            "lastTaskId": self.last_task_id,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass(slots=True)
class ScheduleCreate:
    """Input payload for creating a schedule."""

    name: str
    cron_expr: str
    task_prompt: str
    agent_id: str
    workspace_id: str
    schedule_id: str | None = None
    enabled: bool = True
    prompt_template: str | None = None


@dataclass(slots=True)
class ScheduleUpdate:
    """Partial schedule edit; ``None`` leaves a field unchanged."""

    name: str | None = None
    cron_expr: str | None = None
    task_prompt: str | None = None
    prompt_template: str | None = None
    agent_id: str | None = None
    enabled: bool | None = None
