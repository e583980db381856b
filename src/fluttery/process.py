"""Supervision of the per-session development server processes.

Each child gets a dedicated supervising loop that scans its output line by
line and publishes typed events on the handle's channel. The owner consumes
the channel with ``async for event in handle.events()``; the channel closes
after the exit event.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from fluttery.errors import ReloadError, StartError

logger = logging.getLogger(__name__)

ProcessState = Literal["starting", "ready", "reloading", "exited"]

_STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True, slots=True)
class OutputLine:
    text: str
    stream: Literal["stdout", "stderr"] = "stdout"


@dataclass(frozen=True, slots=True)
class Ready:
    port: int


@dataclass(frozen=True, slots=True)
class Reloaded:
    pass


@dataclass(frozen=True, slots=True)
class Crashed:
    exit_code: int | None


@dataclass(frozen=True, slots=True)
class Stopped:
    exit_code: int | None


ProcessEvent = OutputLine | Ready | Reloaded | Crashed | Stopped


class ReadinessMarker(Protocol):
    def is_ready_marker(self, line: str) -> bool: ...

    def is_reload_marker(self, line: str) -> bool: ...


class ServingMarker:
    """Substring heuristic over the dev server's console output.

    This couples to the exact wording of ``flutter run``; swap the marker
    factory on the supervisor when the child prints something else.
    """

    RELOAD_PREFIXES = ("Reloaded ", "Restarted application", "Performing hot reload")

    def __init__(self, port: int, template: str = "is being served at http://localhost:{port}") -> None:
        self.port = port
        self.needle = template.format(port=port)

    def is_ready_marker(self, line: str) -> bool:
        return self.needle in line

    def is_reload_marker(self, line: str) -> bool:
        stripped = line.strip()
        return any(stripped.startswith(prefix) for prefix in self.RELOAD_PREFIXES)


MarkerFactory = Callable[[int], ReadinessMarker]


class ProcessHandle:
    """Control reference to one running child; the session record never owns it."""

    def __init__(self, process: asyncio.subprocess.Process, port: int, working_dir: Path) -> None:
        self.process = process
        self.port = port
        self.working_dir = working_dir
        self.state: ProcessState = "starting"
        self.exit_code: int | None = None
        self.force_killed = False
        self.stopping = False
        self._events: asyncio.Queue[ProcessEvent | None] = asyncio.Queue()
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def publish(self, event: ProcessEvent | None) -> None:
        self._events.put_nowait(event)

    async def events(self) -> AsyncIterator[ProcessEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def wait_ready(self) -> None:
        ready = asyncio.ensure_future(self._ready.wait())
        exited = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            exited.cancel()
        if not self._ready.is_set():
            raise StartError(
                f"Development server on port {self.port} exited with code {self.exit_code} "
                "before it became ready",
                reason="process",
                exit_code=self.exit_code,
            )

    async def wait_exited(self) -> int | None:
        await self._exited.wait()
        return self.exit_code


class ProcessSupervisor:
    def __init__(
        self,
        command: str = "flutter run -d web-server --web-port {port}",
        *,
        startup_timeout: float = 120.0,
        grace_period: float = 5.0,
        reload_trigger: str = "r",
        marker_factory: MarkerFactory = ServingMarker,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = command
        self.startup_timeout = startup_timeout
        self.grace_period = grace_period
        self.reload_trigger = reload_trigger
        self.marker_factory = marker_factory
        self.env = env

    def build_command(self, port: int) -> list[str]:
        return [part.format(port=port) for part in shlex.split(self.command)]

    async def start(self, working_dir: Path, port: int) -> ProcessHandle:
        command = self.build_command(port)
        logger.info("Starting dev server on port %s: %s", port, " ".join(command[:4]))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_dir),
                env=self.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise StartError(
                f"Could not spawn development server: {exc}", reason="process"
            ) from exc

        handle = ProcessHandle(process, port, working_dir)
        marker = self.marker_factory(port)
        readers = [
            asyncio.create_task(self._pump(handle, process.stdout, "stdout", marker)),
            asyncio.create_task(self._pump(handle, process.stderr, "stderr", marker)),
        ]
        handle._tasks = [*readers, asyncio.create_task(self._watch_exit(handle, readers))]

        try:
            await asyncio.wait_for(handle.wait_ready(), timeout=self.startup_timeout)
        except TimeoutError as exc:
            await self.stop(handle)
            raise StartError(
                f"Development server on port {port} did not become ready "
                f"within {self.startup_timeout:.1f}s",
                reason="timeout",
            ) from exc
        except BaseException:
            await self.stop(handle)
            raise
        logger.info("Dev server ready on port %s (pid %s)", port, handle.pid)
        return handle

    async def _pump(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader | None,
        name: Literal["stdout", "stderr"],
        marker: ReadinessMarker,
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            handle.publish(OutputLine(line, name))
            if handle.state == "starting" and marker.is_ready_marker(line):
                handle.state = "ready"
                handle._ready.set()
                handle.publish(Ready(handle.port))
            elif handle.state == "reloading" and marker.is_reload_marker(line):
                handle.state = "ready"
                handle.publish(Reloaded())

    async def _watch_exit(self, handle: ProcessHandle, readers: list[asyncio.Task[None]]) -> None:
        exit_code = await handle.process.wait()
        await asyncio.gather(*readers)
        handle.state = "exited"
        handle.exit_code = exit_code
        if handle.stopping:
            logger.info("Dev server on port %s stopped with code %s", handle.port, exit_code)
            handle.publish(Stopped(exit_code))
        else:
            logger.warning("Dev server on port %s exited unexpectedly with code %s", handle.port, exit_code)
            handle.publish(Crashed(exit_code))
        handle._exited.set()
        handle.publish(None)

    @staticmethod
    def _send_signal(handle: ProcessHandle, sig: signal.Signals) -> None:
        try:
            if os.name == "posix":
                # The child leads its own process group; signal the whole tree.
                os.killpg(handle.pid, sig)
            else:
                handle.process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def signal_reload(self, handle: ProcessHandle) -> None:
        stdin = handle.process.stdin
        if handle.exited or stdin is None:
            raise ReloadError(f"Dev server on port {handle.port} is not running")
        previous_state = handle.state
        handle.state = "reloading"
        try:
            stdin.write(f"{self.reload_trigger}\n".encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            if handle.state == "reloading":
                handle.state = previous_state
            raise ReloadError(f"Could not deliver reload trigger: {exc}") from exc
        logger.info("Hot reload triggered on port %s", handle.port)

    async def stop(self, handle: ProcessHandle) -> int | None:
        if handle.exited:
            return handle.exit_code
        handle.stopping = True
        self._send_signal(handle, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.wait_exited(), timeout=self.grace_period)
        except TimeoutError:
            logger.warning(
                "Dev server on port %s ignored SIGTERM for %.1fs; killing",
                handle.port,
                self.grace_period,
            )
            handle.force_killed = True
            self._send_signal(handle, signal.SIGKILL)
            await handle.wait_exited()
        return handle.exit_code
