"""Deterministic echo agent: an in-process executor and a CLI entry point.

The CLI form is what ``CliAgentExecutor`` integration tests spawn via
``python -m task_engine.orchestrator.backend.echo_agent``.
"""

from __future__ import annotations

import argparse
import itertools
import os
import sys
import threading
from pathlib import Path

from task_engine.orchestrator.backend.base import UNTRACKED_HANDLE_ERROR, ExecutionStatus
from task_engine.orchestrator.models import BackgroundTask

FAIL_MARKER = "[fail]"


def render_echo_output(prompt: str, *, agent_id: str) -> str:
    return f"[{agent_id}] {prompt.strip()}"


class EchoExecutor:
    """Completes every task immediately with its own prompt.

    Prompts containing ``[fail]`` complete with an error instead.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._results: dict[str, ExecutionStatus] = {}
        self.cancelled: list[str] = []

    def execute(self, task: BackgroundTask) -> str:
        if FAIL_MARKER in task.prompt:
            status = ExecutionStatus(done=True, error=f"echo agent refused task {task.task_id}")
        else:
            status = ExecutionStatus(
                done=True,
                output=render_echo_output(task.prompt, agent_id=task.agent_id),
            )
        with self._lock:
            handle = f"echo-{next(self._counter)}-{task.task_id}"
            self._results[handle] = status
        return handle

    def poll_completion(self, handle: str) -> ExecutionStatus:
        with self._lock:
            status = self._results.pop(handle, None)
        if status is None:
            return ExecutionStatus(done=True, error=UNTRACKED_HANDLE_ERROR)
        return status

    def cancel(self, handle: str) -> None:
        with self._lock:
            self._results.pop(handle, None)
            self.cancelled.append(handle)


def main(argv: list[str] | None = None) -> int:
    """Print the echoed prompt; exit non-zero for prompts carrying the fail marker."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text(encoding="utf-8")
    agent_id = os.getenv("TASK_ENGINE_AGENT_ID", "echo")
    if FAIL_MARKER in prompt:
        sys.stderr.write(f"echo agent refused prompt for {agent_id}\n")
        return 1
    sys.stdout.write(render_echo_output(prompt, agent_id=agent_id) + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
