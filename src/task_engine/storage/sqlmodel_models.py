"""SQLModel ORM tables for the task engine."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class BackgroundTaskRow(SQLModel, table=True):
    __tablename__ = "background_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_background_tasks_status_created", "status", "created_at"),
        Index("idx_background_tasks_workspace_created", "workspace_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    title: str
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    agent_id: str
    workspace_id: str
    status: str
    priority: str = "NORMAL"
    attempts: int = 0
    max_attempts: int = 1
    trigger_source: str = "manual"
    triggered_by: str = "user"
    workflow_run_id: str | None = Field(default=None, index=True)
    workflow_step_name: str | None = None
    task_output: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    execution_handle: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "depends_on_task_id",
            name="uq_task_dependencies_task_dependency",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("background_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    # Not a foreign key: a dangling id must stay visible so readiness fails closed.
    depends_on_task_id: str = Field(index=True)
    position: int = 0


class WorkflowRunRow(SQLModel, table=True):
    __tablename__ = "workflow_runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    workflow_name: str
    workflow_version: str | None = None
    workspace_id: str = Field(index=True)
    status: str = Field(index=True)
    total_steps: int = 0
    completed_steps: int = 0
    current_step_name: str | None = None
    trigger_payload: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    trigger_source: str = "manual"
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowStepOutputRow(SQLModel, table=True):
    __tablename__ = "workflow_step_outputs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "step_name", name="uq_workflow_step_outputs_run_step"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_name: str
    output: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScheduleRow(SQLModel, table=True):
    __tablename__ = "schedules"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_schedules_enabled_next_run", "enabled", "next_run_at"),)

    schedule_id: str = Field(primary_key=True)
    name: str
    cron_expr: str
    task_prompt: str = Field(sa_column=Column(Text, nullable=False))
    prompt_template: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    agent_id: str
    workspace_id: str = Field(index=True)
    enabled: bool = True
    last_run_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    next_run_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_task_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
