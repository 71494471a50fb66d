"""Run one agent command and record its exit code beside its logs.

``CliAgentExecutor`` spawns agents through this module so that a process
other than the spawning one can read the outcome from the workdir.
"""

from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path

COMMAND_NOT_STARTED = 127


def write_exit_status(path: Path, value: str) -> None:
    """Publish ``value`` at ``path`` in one rename so readers never see a partial file."""

    staging = path.with_name(f"{path.name}.tmp")
    staging.write_text(value, encoding="utf-8")
    staging.replace(path)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("exit_file")
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)
    if not args.command:
        parser.error("missing agent command")

    try:
        returncode = subprocess.call(args.command)  # noqa: S603
    except OSError as error:
        sys.stderr.write(f"failed to start agent: {error}\n")
        returncode = COMMAND_NOT_STARTED
    write_exit_status(Path(args.exit_file), str(returncode))
    return returncode


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
