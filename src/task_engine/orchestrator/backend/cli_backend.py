"""Subprocess-based executor for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from task_engine.orchestrator.backend.agent_wrapper import write_exit_status
from task_engine.orchestrator.backend.base import UNTRACKED_HANDLE_ERROR, ExecutionStatus
from task_engine.orchestrator.models import BackgroundTask

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2_000
HANDLE_PREFIX = "cli"
EXIT_FILE_NAME = "exit_code"
CANCELLED_STATUS = "cancelled"
WRAPPER_MODULE = "task_engine.orchestrator.backend.agent_wrapper"


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(frozen=True, slots=True)
class AgentHandle:
    """Process id and attempt workdir, encoded as ``cli:<pid>:<workdir>``."""

    pid: int
    workdir: Path

    def encode(self) -> str:
        return f"{HANDLE_PREFIX}:{self.pid}:{self.workdir}"

    @classmethod
    def decode(cls, handle: str) -> AgentHandle | None:
        prefix, _, rest = handle.partition(":")
        pid, _, workdir = rest.partition(":")
        if prefix != HANDLE_PREFIX or not pid.isdigit() or not workdir:
            return None
        return cls(pid=int(pid), workdir=Path(workdir))

    @property
    def exit_file(self) -> Path:
        return self.workdir / EXIT_FILE_NAME


class CliAgentExecutor:
    """Spawn one CLI agent process per task and poll it on later ticks.

    The command template may use ``{prompt}``, ``{prompt_file}``,
    ``{agent}``, ``{workspace}`` and ``{task_id}``; values are shell-quoted.
    Agents run under ``agent_wrapper``, which writes the exit code into the
    attempt workdir, so any process holding a handle can poll or cancel it.
    """

    def __init__(self, *, command_template: str, workdir_root: Path) -> None:
        self.command_template = command_template
        self.workdir_root = workdir_root
        self._lock = threading.Lock()
        self._children: dict[str, subprocess.Popen[bytes]] = {}

    def execute(self, task: BackgroundTask) -> str:
        workdir = (self.workdir_root / task.task_id / f"attempt-{task.attempts}").resolve()
        workdir.mkdir(parents=True, exist_ok=True)
        prompt_file = workdir / "prompt.txt"
        prompt_file.write_text(task.prompt, "utf-8")
        for stale in (workdir / EXIT_FILE_NAME, workdir / f"{EXIT_FILE_NAME}.tmp"):
            stale.unlink(missing_ok=True)

        run_args = _build_run_args(
            command_template=self.command_template,
            task=task,
            prompt_file=prompt_file,
        )
        if shutil.which(run_args[0]) is None:
            raise BackendRunError(
                f"CLI backend command not found: {run_args[0]}",
                transient=False,
            )
        env = os.environ.copy()
        env["TASK_ENGINE_TASK_ID"] = task.task_id
        env["TASK_ENGINE_AGENT_ID"] = task.agent_id
        env["TASK_ENGINE_WORKSPACE_ID"] = task.workspace_id

        try:
            with (
                (workdir / "stdout.log").open("wb") as stdout_handle,
                (workdir / "stderr.log").open("wb") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    [
                        sys.executable,
                        "-m",
                        WRAPPER_MODULE,
                        str(workdir / EXIT_FILE_NAME),
                        *run_args,
                    ],
                    env=env,
                    cwd=workdir,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    start_new_session=True,
                )
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        handle = AgentHandle(pid=process.pid, workdir=workdir).encode()
        with self._lock:
            self._children[handle] = process
        logger.info("Spawned agent %s for task %s (handle=%s)", run_args[0], task.task_id, handle)
        return handle

    def poll_completion(self, handle: str) -> ExecutionStatus:
        agent = AgentHandle.decode(handle)
        if agent is None:
            return ExecutionStatus(done=True, error=UNTRACKED_HANDLE_ERROR)

        with self._lock:
            child = self._children.get(handle)
        if child is not None:
            if child.poll() is None:
                return ExecutionStatus(done=False)
            with self._lock:
                self._children.pop(handle, None)

        recorded = _read_text(agent.exit_file).strip()
        if recorded:
            return _status_from_exit(agent.workdir, recorded)
        if child is None and _pid_alive(agent.pid):
            return ExecutionStatus(done=False)
        if child is not None and child.returncode is not None and child.returncode < 0:
            return ExecutionStatus(done=True, error=f"agent killed by signal {-child.returncode}")
        return ExecutionStatus(done=True, error="agent exited without recording an exit code")

    def cancel(self, handle: str) -> None:
        agent = AgentHandle.decode(handle)
        if agent is None:
            return
        with self._lock:
            child = self._children.pop(handle, None)
        if child is not None:
            _terminate_process(child)
        elif _pid_alive(agent.pid):
            _signal_group(agent.pid, signal.SIGTERM)
        if not agent.exit_file.exists():
            write_exit_status(agent.exit_file, CANCELLED_STATUS)


def _build_run_args(
    *,
    command_template: str,
    task: BackgroundTask,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(task.prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            agent=shlex.quote(task.agent_id),
            workspace=shlex.quote(task.workspace_id),
            task_id=shlex.quote(task.task_id),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    """Stop the wrapper and the agent it started; both share one process group."""

    if process.poll() is not None:
        return
    _signal_group(process.pid, signal.SIGTERM)
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        _signal_group(process.pid, signal.SIGKILL)
        process.wait(timeout=2)


def _status_from_exit(workdir: Path, recorded: str) -> ExecutionStatus:
    if recorded == CANCELLED_STATUS:
        return ExecutionStatus(done=True, error="agent cancelled")
    if recorded == "0":
        return ExecutionStatus(done=True, output=_read_text(workdir / "stdout.log").strip())
    stderr_tail = _read_text(workdir / "stderr.log").strip()[-STDERR_TAIL_CHARS:]
    message = f"agent exited with code {recorded}"
    if stderr_tail:
        message = f"{message}: {stderr_tail}"
    return ExecutionStatus(done=True, error=message)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal_group(pid: int, signum: int) -> None:
    try:
        os.killpg(pid, signum)
    except ProcessLookupError:
        return
