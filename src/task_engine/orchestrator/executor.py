"""Workflow decomposition into a dependency-wired batch of background tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from task_engine.orchestrator.models import (
    CreateTaskRequest,
    TriggerSource,
    WorkflowRunCreate,
)
from task_engine.orchestrator.task_store import TaskRepository
from task_engine.orchestrator.workflow_store import WorkflowRunRepository
from task_engine.orchestrator.workflows import (
    WorkflowDefinition,
    build_step_prompt,
    partition_cohorts,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TriggerWorkflowResult:
    workflow_run_id: str
    task_ids: list[str]


class WorkflowExecutor:
    """Materializes a whole workflow DAG up front; the dispatcher walks it later.

    Cohort ``i`` depends on exactly the tasks of cohort ``i - 1``, so a
    parallel group fans out after its predecessor and joins before its
    successor.
    """

    def __init__(
        self,
        *,
        task_repository: TaskRepository,
        run_repository: WorkflowRunRepository,
    ) -> None:
        self.task_repository = task_repository
        self.run_repository = run_repository

    def trigger(
        self,
        workflow_id: str,
        definition: WorkflowDefinition,
        workspace_id: str,
        trigger_payload: str | None = None,
        trigger_source: str = "manual",
    ) -> TriggerWorkflowResult:
        definition.validate()

        run = self.run_repository.create_run(
            WorkflowRunCreate(
                workflow_id=workflow_id,
                workflow_name=definition.name,
                workflow_version=definition.version,
                workspace_id=workspace_id,
                total_steps=len(definition.steps),
                trigger_payload=trigger_payload,
                trigger_source=trigger_source,
            ),
        )

        task_ids: list[str] = []
        barrier: tuple[str, ...] = ()
        for cohort in partition_cohorts(definition.steps):
            cohort_ids: list[str] = []
            for step in cohort:
                task = self.task_repository.save(
                    CreateTaskRequest(
                        prompt=build_step_prompt(step, definition.variables, trigger_payload),
                        title=f"[{definition.name}] {step.name}",
                        agent_id=step.specialist,
                        workspace_id=workspace_id,
                        depends_on_task_ids=barrier,
                        trigger_source=TriggerSource.WORKFLOW,
                        triggered_by=f"workflow:{definition.name}",
                        workflow_run_id=run.run_id,
                        workflow_step_name=step.name,
                    ).build(),
                )
                cohort_ids.append(task.task_id)
            task_ids.extend(cohort_ids)
            barrier = tuple(cohort_ids)

        self.run_repository.mark_running(run.run_id, current_step_name=definition.steps[0].name)
        logger.info(
            "Triggered workflow %s run=%s tasks=%d source=%s",
            workflow_id,
            run.run_id,
            len(task_ids),
            trigger_source,
        )
        return TriggerWorkflowResult(workflow_run_id=run.run_id, task_ids=task_ids)
