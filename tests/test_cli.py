import asyncio
import json
from collections.abc import Callable
from pathlib import Path

import pytest
from click.testing import CliRunner
from conftest import ScriptedBackend

from fluttery.cli import _until_stopped, cli
from fluttery.config import load_config, save_config


def _prepare(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, command: str) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("fluttery.cli._build_backend", lambda config, base_dir: ScriptedBackend())
    runner = CliRunner()
    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output

    config_path = tmp_path / "fluttery.toml"
    config = load_config(config_path)
    config.process.command = command
    config.process.startup_timeout_seconds = 10.0
    config.process.grace_period_seconds = 0.5
    config.workspace.scaffold_command = ""
    config.workspace.dependency_command = ""
    save_config(config_path, config)
    return runner


def test_init_writes_config_and_workspace_root(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--backend", "claude"])

    assert result.exit_code == 0, result.output
    assert "Backend: claude" in result.output
    assert load_config(tmp_path / "fluttery.toml").backend.primary == "claude"
    assert (tmp_path / ".fluttery" / "sessions").is_dir()


def test_plan_prints_ordered_tasks(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_server: Callable[..., str]
) -> None:
    runner = _prepare(tmp_path, monkeypatch, fake_server())

    result = runner.invoke(cli, ["plan", "Todo app with login"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["project"] == "todo_app_with"
    assert payload["requirements"]["features"] == ["authentication", "task_management"]
    assert [task["kind"] for task in payload["tasks"]] == ["design", "code", "test"]


def test_plan_reports_planning_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_server: Callable[..., str]
) -> None:
    runner = _prepare(tmp_path, monkeypatch, fake_server())
    config = load_config(tmp_path / "fluttery.toml")
    config.agents.planner = "agent"
    save_config(tmp_path / "fluttery.toml", config)
    monkeypatch.setattr(
        "fluttery.cli._build_backend",
        lambda config, base_dir: ScriptedBackend({"planner": "no plan today"}),
    )

    result = runner.invoke(cli, ["plan", "Todo app"])

    assert result.exit_code != 0
    assert "malformed JSON" in result.output


def test_preview_applies_requests_and_shuts_down(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_server: Callable[..., str]
) -> None:
    runner = _prepare(tmp_path, monkeypatch, fake_server())

    result = runner.invoke(cli, ["preview"], input="Add a todo list\n")

    assert result.exit_code == 0, result.output
    assert "Preview: http://localhost:8080" in result.output
    assert "Updated 3 files" in result.output
    assert "Dependencies: provider" in result.output
    assert "Session closed." in result.output
    assert list((tmp_path / ".fluttery" / "sessions").iterdir()) == []


def test_preview_start_failure_is_reported(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_server: Callable[..., str]
) -> None:
    runner = _prepare(tmp_path, monkeypatch, fake_server("crash"))

    result = runner.invoke(cli, ["preview"], input="")

    assert result.exit_code != 0
    assert "before it became ready" in result.output


def test_stop_signal_cancels_pending_work() -> None:
    cancelled: list[bool] = []

    async def scenario() -> None:
        stop = asyncio.Event()
        started = asyncio.Event()

        async def slow_update() -> str:
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise
            return "late"

        async def interrupt() -> None:
            await started.wait()
            stop.set()

        interrupter = asyncio.create_task(interrupt())
        assert await _until_stopped(stop, slow_update()) is None
        await interrupter

        assert await _until_stopped(asyncio.Event(), asyncio.sleep(0, "done")) == "done"

    asyncio.run(scenario())

    assert cancelled == [True]
