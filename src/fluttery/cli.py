from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
import threading
from collections.abc import Awaitable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from fluttery.backends import (
    BackendExecutionError,
    ClaudeCodeBackend,
    GenerativeBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from fluttery.config import BackendName, FlutteryConfig, load_config, save_config
from fluttery.errors import FlutteryError
from fluttery.manager import SessionManager
from fluttery.orchestrator import project_name_from
from fluttery.workers import WorkerContext, extract_requirements

logger = logging.getLogger(__name__)

_FAILURE_EVENTS = {"backend_attempt_failed", "backend_failover_start"}

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    base_dir: Path
    config_path: Path
    config: FlutteryConfig
    backend: GenerativeBackend
    manager: SessionManager


def _resolve_config_path(base_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = base_dir / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, config: FlutteryConfig, base_dir: Path
) -> GenerativeBackend:
    if backend_name == "openai":
        return OpenAIBackend(model=config.agents.model)
    return ClaudeCodeBackend(working_directory=base_dir)


def _log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "backend_event")
    details = ", ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    if name in _FAILURE_EVENTS:
        logger.warning("%s: %s", name, details)
    else:
        logger.info("%s: %s", name, details)


def _build_backend(config: FlutteryConfig, base_dir: Path) -> GenerativeBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, config, base_dir),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, config, base_dir),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _load_runtime(base_dir: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    backend = _build_backend(config, base_dir)
    manager = SessionManager.from_config(config, backend, base_dir=base_dir)
    return Runtime(
        base_dir=base_dir,
        config_path=config_path,
        config=config,
        backend=backend,
        manager=manager,
    )


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output.")
def cli(verbose: bool) -> None:
    """Fluttery CLI."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--backend", type=click.Choice(["openai", "claude"]), default=None)
@click.option("--config", "config_value", default="fluttery.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    base_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(base_dir, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    workspace_root = Path(config.sessions.workspace_root)
    if not workspace_root.is_absolute():
        workspace_root = base_dir / workspace_root
    workspace_root.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Fluttery in {base_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Workspaces: {workspace_root}")


@cli.command("plan")
@click.argument("prompt")
@click.option("--config", "config_value", default="fluttery.toml", show_default=True)
def plan_command(prompt: str, config_value: str) -> None:
    """Show the task plan a request would run, without executing it."""
    base_dir = Path.cwd().resolve()
    runtime = _load_runtime(base_dir, _resolve_config_path(base_dir, config_value))
    orchestrator = runtime.manager.orchestrator
    context = WorkerContext(
        session_id="plan",
        request=prompt,
        requirements=extract_requirements(prompt),
    )
    try:
        run = asyncio.run(orchestrator.start_run("plan", prompt, context))
        graph = run.require_graph()
    except (FlutteryError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc

    payload = {
        "project": project_name_from(prompt),
        "requirements": context.requirements,
        "tasks": [graph.get(task_id).to_dict() for task_id in run.order],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _read_line(loop: asyncio.AbstractEventLoop) -> asyncio.Future[str]:
    # A daemon thread, so a pending read never blocks interpreter exit.
    future: asyncio.Future[str] = loop.create_future()

    def _deliver(line: str) -> None:
        if not future.done():
            future.set_result(line)

    def _reader() -> None:
        line = sys.stdin.readline()
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(_deliver, line)

    threading.Thread(target=_reader, name="fluttery-stdin", daemon=True).start()
    return future


async def _until_stopped(stop: asyncio.Event, awaitable: Awaitable[T]) -> T | None:
    """Await ``awaitable`` unless ``stop`` fires first, in which case it is cancelled."""
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await work
    if work.cancelled():
        return None
    return work.result()


async def _next_request(stop: asyncio.Event) -> str | None:
    line = await _until_stopped(stop, _read_line(asyncio.get_running_loop()))
    return line if line else None


async def _preview(manager: SessionManager, prompt: str | None, owner_id: str | None) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    registered: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
            registered.append(sig)

    try:
        session = await _until_stopped(
            stop, manager.create_session(owner_id=owner_id, initial_request=prompt)
        )
        if session is None:
            return
        manager.start()
        click.echo(f"Session: {session.id}")
        click.echo(f"Preview: {session.preview_address}")
        click.echo("Describe a change and press Enter (Ctrl-D to quit).")

        while not stop.is_set():
            line = await _next_request(stop)
            if line is None:
                break
            request = line.strip()
            if not request:
                continue
            try:
                result = await _until_stopped(stop, manager.update_code(session.id, request))
            except (FlutteryError, BackendExecutionError) as exc:
                click.echo(f"Update failed: {exc}", err=True)
                continue
            if result is None:
                break
            click.echo(f"Updated {len(result.files)} files (run {result.run_id})")
            if result.dependencies_added:
                click.echo("Dependencies: " + ", ".join(result.dependencies_added))
            click.echo("Reloaded." if result.reloaded else "Reload not delivered.")
    finally:
        await manager.shutdown()
        for sig in registered:
            loop.remove_signal_handler(sig)


@cli.command("preview")
@click.argument("prompt", required=False)
@click.option("--owner", "owner_id", default=None)
@click.option("--config", "config_value", default="fluttery.toml", show_default=True)
def preview_command(prompt: str | None, owner_id: str | None, config_value: str) -> None:
    """Start a preview session and apply follow-up requests read from stdin."""
    base_dir = Path.cwd().resolve()
    runtime = _load_runtime(base_dir, _resolve_config_path(base_dir, config_value))
    try:
        asyncio.run(_preview(runtime.manager, prompt, owner_id))
    except (FlutteryError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Session closed.")
