"""Runtime configuration for the task engine."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path


class ExecutorKind:
    ECHO = "echo"
    CLI = "cli"

    ALL = (ECHO, CLI)


DEFAULT_AGENT_COMMAND = (
    f"{shlex.quote(sys.executable)} -m task_engine.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)


@dataclass(slots=True)
class OrchestratorSettings:
    """Tick loop and agent execution settings."""

    tick_interval_seconds: float = 60.0
    executor: str = ExecutorKind.ECHO
    agent_command_template: str = DEFAULT_AGENT_COMMAND
    workdir_root: Path = Path(".task_engine_workdirs")
    auto_retry: bool = False
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class WorkflowSettings:
    """Workflow definition lookup settings."""

    flows_dir: Path = Path("flows")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_engine.db")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    workflows: WorkflowSettings = field(default_factory=WorkflowSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            orchestrator=OrchestratorSettings(
                tick_interval_seconds=_env_float("TASK_ENGINE_TICK_INTERVAL_SECONDS", 60.0),
                executor=os.getenv("TASK_ENGINE_EXECUTOR", ExecutorKind.ECHO).strip().lower(),
                agent_command_template=os.getenv(
                    "TASK_ENGINE_AGENT_COMMAND",
                    DEFAULT_AGENT_COMMAND,
                ),
                workdir_root=Path(
                    os.getenv("TASK_ENGINE_WORKDIR_ROOT", ".task_engine_workdirs"),
                ),
                auto_retry=_env_bool("TASK_ENGINE_AUTO_RETRY", default=False),
                sqlite_busy_timeout_ms=_env_int("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            workflows=WorkflowSettings(
                flows_dir=Path(os.getenv("TASK_ENGINE_FLOWS_DIR", "flows")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending environment variable."""

        if self.orchestrator.tick_interval_seconds <= 0:
            raise ValueError("TASK_ENGINE_TICK_INTERVAL_SECONDS must be > 0.")
        if self.orchestrator.executor not in ExecutorKind.ALL:
            raise ValueError(
                f"TASK_ENGINE_EXECUTOR must be one of {', '.join(ExecutorKind.ALL)}, "
                f"got {self.orchestrator.executor!r}.",
            )
        if self.orchestrator.executor == ExecutorKind.CLI:
            template = self.orchestrator.agent_command_template.strip()
            if not template:
                raise ValueError("TASK_ENGINE_AGENT_COMMAND must not be empty.")
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    "TASK_ENGINE_AGENT_COMMAND must include {prompt} or {prompt_file}.",
                )
        if self.orchestrator.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
