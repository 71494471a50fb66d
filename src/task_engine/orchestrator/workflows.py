"""Workflow definitions: YAML loading, cohort partitioning, and prompt substitution."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from task_engine.orchestrator.errors import WorkflowDefinitionError

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_VERSION = "1.0"
WORKFLOW_FILE_SUFFIXES = (".yaml", ".yml")

_TRIGGER_PAYLOAD_PLACEHOLDER = "${trigger.payload}"
_STEP_OUTPUT_RE = re.compile(r"\$\{steps\.(?P<step>[^{}]+?)\.output\}")


@dataclass(frozen=True, slots=True)
class WorkflowStep:
    """One stage of a workflow, executed by the named specialist agent."""

    name: str
    specialist: str
    input: str | None = None
    output_key: str | None = None
    parallel_group: str | None = None


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    """Declarative multi-step workflow. Not persisted; each trigger copies what it needs."""

    name: str
    steps: tuple[WorkflowStep, ...]
    description: str | None = None
    version: str = DEFAULT_WORKFLOW_VERSION
    variables: Mapping[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.name.strip():
            raise WorkflowDefinitionError("Workflow is missing required field: name")
        if not self.steps:
            raise WorkflowDefinitionError(f"Workflow {self.name!r} must have at least one step")
        seen: set[str] = set()
        for index, step in enumerate(self.steps):
            if not step.name.strip():
                raise WorkflowDefinitionError(
                    f"Step {index} in workflow {self.name!r} is missing required field: name",
                )
            if not step.specialist.strip():
                raise WorkflowDefinitionError(
                    f"Step {step.name!r} in workflow {self.name!r} "
                    "is missing required field: specialist",
                )
            if step.name in seen:
                raise WorkflowDefinitionError(
                    f"Duplicate step name {step.name!r} in workflow {self.name!r}",
                )
            seen.add(step.name)


def parse_workflow(raw: Any, *, source: str = "inline") -> WorkflowDefinition:  # noqa: ANN401
    """Build a validated definition from an already-decoded YAML mapping."""

    if not isinstance(raw, Mapping):
        raise WorkflowDefinitionError(f"Workflow from {source} must be a mapping")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkflowDefinitionError(f"Workflow from {source} missing required field: name")
    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise WorkflowDefinitionError(f"Workflow from {source} must have at least one step")

    steps: list[WorkflowStep] = []
    seen: set[str] = set()
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, Mapping):
            raise WorkflowDefinitionError(
                f"Step {index} in workflow from {source} is not a mapping",
            )
        step_name = raw_step.get("name")
        if not isinstance(step_name, str) or not step_name.strip():
            raise WorkflowDefinitionError(
                f"Step {index} in workflow from {source} missing required field: name",
            )
        if step_name in seen:
            raise WorkflowDefinitionError(
                f"Duplicate step name {step_name!r} in workflow from {source}",
            )
        seen.add(step_name)
        specialist = raw_step.get("specialist")
        if not isinstance(specialist, str) or not specialist.strip():
            raise WorkflowDefinitionError(
                f"Step {step_name!r} in workflow from {source} missing required field: specialist",
            )
        steps.append(
            WorkflowStep(
                name=step_name,
                specialist=specialist,
                input=_optional_str(raw_step.get("input")),
                output_key=_optional_str(raw_step.get("output_key")),
                parallel_group=_optional_str(raw_step.get("parallel_group")),
            ),
        )

    raw_variables = raw.get("variables") or {}
    if not isinstance(raw_variables, Mapping):
        raise WorkflowDefinitionError(f"Workflow from {source}: variables must be a mapping")

    version = raw.get("version")
    description = raw.get("description")
    return WorkflowDefinition(
        name=name,
        description=str(description) if description is not None else None,
        version=str(version) if version is not None else DEFAULT_WORKFLOW_VERSION,
        variables={str(key): str(value) for key, value in raw_variables.items()},
        steps=tuple(steps),
    )


def parse_workflow_yaml(content: str, *, source: str = "inline") -> WorkflowDefinition:
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise WorkflowDefinitionError(
            f"Failed to parse workflow YAML from {source}: {exc}",
        ) from exc
    return parse_workflow(raw, source=source)


class WorkflowLoader:
    """Loads workflow definitions from ``<flows_dir>/<workflow_id>.yaml``."""

    def __init__(self, flows_dir: Path) -> None:
        self.flows_dir = flows_dir
        self._cache: dict[str, WorkflowDefinition] = {}

    def list_workflow_ids(self) -> list[str]:
        if not self.flows_dir.is_dir():
            return []
        return sorted(
            path.stem
            for path in self.flows_dir.iterdir()
            if path.is_file() and path.suffix in WORKFLOW_FILE_SUFFIXES
        )

    def load(self, workflow_id: str) -> WorkflowDefinition:
        cached = self._cache.get(workflow_id)
        if cached is not None:
            return cached

        path = self._resolve_path(workflow_id)
        definition = parse_workflow_yaml(path.read_text(encoding="utf-8"), source=str(path))
        self._cache[workflow_id] = definition
        logger.info(
            "Loaded workflow %s (%d steps) from %s",
            workflow_id,
            len(definition.steps),
            path,
        )
        return definition

    def clear_cache(self) -> None:
        self._cache.clear()

    def _resolve_path(self, workflow_id: str) -> Path:
        if "/" in workflow_id or "\\" in workflow_id:
            path = Path(workflow_id)
            if not path.is_file():
                raise WorkflowDefinitionError(f"Workflow file not found: {path}")
            return path
        for suffix in WORKFLOW_FILE_SUFFIXES:
            candidate = self.flows_dir / f"{workflow_id}{suffix}"
            if candidate.is_file():
                return candidate
        raise WorkflowDefinitionError(f"Workflow not found: {workflow_id} (in {self.flows_dir})")


def partition_cohorts(steps: Sequence[WorkflowStep]) -> list[list[WorkflowStep]]:
    """Group consecutive steps sharing a ``parallel_group``; ungrouped steps stand alone."""

    cohorts: list[list[WorkflowStep]] = []
    current_group: str | None = None
    for step in steps:
        if step.parallel_group is not None and step.parallel_group == current_group:
            cohorts[-1].append(step)
            continue
        cohorts.append([step])
        current_group = step.parallel_group
    return cohorts


def build_step_prompt(
    step: WorkflowStep,
    variables: Mapping[str, str],
    trigger_payload: str | None,
) -> str:
    """Resolve creation-time placeholders; ``${steps.<name>.output}`` stays literal."""

    prompt = step.input or ""
    for key, value in variables.items():
        prompt = prompt.replace(f"${{variables.{key}}}", value)
        prompt = prompt.replace(f"${{{key}}}", value)
    prompt = prompt.replace(_TRIGGER_PAYLOAD_PLACEHOLDER, trigger_payload or "")
    return prompt or f"Execute step: {step.name}"


def resolve_step_outputs(prompt: str, step_outputs: Mapping[str, str]) -> str:
    """Replace ``${steps.<name>.output}`` for every step whose output is known."""

    def _substitute(match: re.Match[str]) -> str:
        output = step_outputs.get(match.group("step"))
        return output if output is not None else match.group(0)

    return _STEP_OUTPUT_RE.sub(_substitute, prompt)


def has_step_output_placeholders(prompt: str) -> bool:
    return _STEP_OUTPUT_RE.search(prompt) is not None


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None
