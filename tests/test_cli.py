from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from task_engine.main import task_engine

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI Ops"),
]

_FLOW = """
name: brief
steps:
  - name: research
    specialist: researcher
    input: "Research ${trigger.payload}"
  - name: write
    specialist: writer
    input: "Write from ${steps.research.output}"
"""


@pytest.fixture()
def cli_env(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("TASK_ENGINE_EXECUTOR", "echo")
    monkeypatch.delenv("TASK_ENGINE_AUTO_RETRY", raising=False)
    monkeypatch.setenv("TASK_ENGINE_WORKDIR_ROOT", str(tmp_path / "workdirs"))
    return tmp_path / "cli.db"


def _invoke(runner: CliRunner, *args: str):
    result = runner.invoke(task_engine, list(args))
    assert result.exit_code == 0, result.output
    return result


def _extract(pattern: str, output: str) -> str:
    match = re.search(pattern, output)
    assert match is not None, output
    return match.group(1)


def test_task_lifecycle_through_cli(cli_env: Path) -> None:
    db = str(cli_env)
    runner = CliRunner()

    created = _invoke(
        runner,
        "tasks",
        "create",
        "--db-path",
        db,
        "--prompt",
        "Check the build",
        "--agent",
        "ops",
        "--priority",
        "high",
    )
    task_id = _extract(r"task_id=(\S+)", created.output)
    assert "priority=HIGH" in created.output

    listed = _invoke(runner, "tasks", "list", "--db-path", db, "--status", "pending")
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output

    tick = _invoke(runner, "tick", "--db-path", db)
    assert "dispatched=1" in tick.output
    assert "completed=1" in tick.output

    inspected = _invoke(runner, "tasks", "inspect", "--db-path", db, "--task-id", task_id)
    assert "Status: COMPLETED" in inspected.output
    assert "Output: [ops] Check the build" in inspected.output

    cancelled = _invoke(runner, "tasks", "cancel", "--db-path", db, "--task-id", task_id)
    assert "not cancellable" in cancelled.output

    deleted = _invoke(runner, "tasks", "delete", "--db-path", db, "--task-id", task_id)
    assert f"Task deleted: {task_id}" in deleted.output
    missing = _invoke(runner, "tasks", "inspect", "--db-path", db, "--task-id", task_id)
    assert f"Task not found: {task_id}" in missing.output


def test_failed_task_retry_is_rejected_without_attempts(cli_env: Path) -> None:
    db = str(cli_env)
    runner = CliRunner()
    created = _invoke(
        runner,
        "tasks",
        "create",
        "--db-path",
        db,
        "--prompt",
        "[fail] always",
        "--agent",
        "ops",
    )
    task_id = _extract(r"task_id=(\S+)", created.output)
    _invoke(runner, "tick", "--db-path", db)

    retry = runner.invoke(task_engine, ["tasks", "retry", "--db-path", db, "--task-id", task_id])

    assert retry.exit_code == 1
    assert "no attempts remaining" in retry.output


def test_unknown_task_is_reported_as_error(cli_env: Path) -> None:
    result = CliRunner().invoke(
        task_engine,
        ["tasks", "cancel", "--db-path", str(cli_env), "--task-id", "nope"],
    )

    assert result.exit_code == 1
    assert "Task not found: nope" in result.output


def test_schedule_commands(cli_env: Path) -> None:
    db = str(cli_env)
    runner = CliRunner()

    created = _invoke(
        runner,
        "schedules",
        "create",
        "--db-path",
        db,
        "--name",
        "nightly",
        "--cron",
        "0 0 * * *",
        "--prompt",
        "Nightly report",
        "--agent",
        "reporter",
    )
    schedule_id = _extract(r"Schedule created: (\S+)", created.output)
    assert "Every day at midnight UTC" in created.output

    tick = _invoke(runner, "tick", "--db-path", db, "--now", "2099-01-01T00:00:30+00:00")
    assert "Schedules fired: 1" in tick.output

    fired = _invoke(runner, "schedules", "run", "--db-path", db, "--schedule-id", schedule_id)
    assert f"schedule_id={schedule_id}" in fired.output

    updated = _invoke(
        runner,
        "schedules",
        "update",
        "--db-path",
        db,
        "--schedule-id",
        schedule_id,
        "--disable",
    )
    assert "enabled=False" in updated.output

    listed = _invoke(runner, "schedules", "list", "--db-path", db)
    assert "Schedules: 1" in listed.output

    rejected = runner.invoke(
        task_engine,
        ["schedules", "run", "--db-path", db, "--schedule-id", schedule_id],
    )
    assert rejected.exit_code == 1
    assert "disabled" in rejected.output

    deleted = _invoke(runner, "schedules", "delete", "--db-path", db, "--schedule-id", schedule_id)
    assert "Schedule deleted" in deleted.output


def test_schedule_create_rejects_invalid_cron(cli_env: Path) -> None:
    result = CliRunner().invoke(
        task_engine,
        [
            "schedules",
            "create",
            "--db-path",
            str(cli_env),
            "--name",
            "bad",
            "--cron",
            "61 * * * *",
            "--prompt",
            "x",
            "--agent",
            "a",
        ],
    )

    assert result.exit_code == 1
    assert "Invalid cron expression" in result.output


def test_workflow_run_and_ticks(cli_env: Path, tmp_path: Path) -> None:
    db = str(cli_env)
    flows_dir = tmp_path / "flows"
    flows_dir.mkdir()
    (flows_dir / "brief.yaml").write_text(_FLOW, encoding="utf-8")
    runner = CliRunner()

    triggered = _invoke(
        runner,
        "workflows",
        "run",
        "--db-path",
        db,
        "--workflow-id",
        "brief",
        "--flows-dir",
        str(flows_dir),
        "--payload",
        "solar",
    )
    run_id = _extract(r"run_id=(\S+)", triggered.output)
    assert "tasks=2" in triggered.output

    _invoke(runner, "tick", "--db-path", db)
    _invoke(runner, "tick", "--db-path", db)

    runs = _invoke(runner, "workflows", "runs", "--db-path", db)
    assert run_id in runs.output
    assert "COMPLETED" in runs.output


def test_serve_runs_for_duration(cli_env: Path) -> None:
    result = _invoke(
        CliRunner(),
        "serve",
        "--db-path",
        str(cli_env),
        "--interval",
        "0.05",
        "--duration",
        "0.3",
    )

    assert re.search(r"Scheduler stopped after [1-9]\d* ticks", result.output)


def test_invalid_configuration_is_reported(cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASK_ENGINE_EXECUTOR", "docker")

    result = CliRunner().invoke(task_engine, ["tasks", "list", "--db-path", str(cli_env)])

    assert result.exit_code == 1
    assert "TASK_ENGINE_EXECUTOR" in result.output
