"""Public lifecycle API: one development server and workspace per session.

Operations on different sessions run independently. Operations on the same
session are expected to be serialized by the caller; the manager only
guarantees that termination is shared and that a session is torn down once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path

from fluttery.backends.base import BackendExecutionError, GenerativeBackend
from fluttery.config import FlutteryConfig
from fluttery.errors import (
    CapacityExceededError,
    FlutteryError,
    ReloadError,
    RunNotFoundError,
    SessionNotFoundError,
    SessionNotReadyError,
)
from fluttery.orchestrator import Orchestrator, Run, RunPhase, RunProgress
from fluttery.ports import PortAllocator
from fluttery.process import Crashed, OutputLine, ProcessHandle, ProcessSupervisor, Reloaded, ServingMarker
from fluttery.results import Artifact
from fluttery.store import Session, SessionStore, utcnow
from fluttery.workers import (
    AgentPlanner,
    CodeWorker,
    DesignWorker,
    StaticPlanner,
    TestWorker,
    WorkerContext,
    extract_requirements,
)
from fluttery.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True, slots=True)
class UpdateResult:
    run_id: str
    files: list[str]
    dependencies_added: list[str]
    reloaded: bool
    preview_address: str


@dataclass(frozen=True, slots=True)
class RunStatus:
    run_id: str
    status: RunPhase
    progress: RunProgress
    artifact: Artifact | None = None
    error: str | None = None
    applied: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "progress": self.progress.to_dict(),
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": self.error,
        }


class SessionManager:
    def __init__(
        self,
        *,
        ports: PortAllocator,
        supervisor: ProcessSupervisor,
        workspaces: WorkspaceManager,
        orchestrator: Orchestrator,
        store: SessionStore | None = None,
        host: str = "localhost",
        max_sessions: int = 50,
        idle_timeout: float = 3600.0,
        sweep_interval: float = 600.0,
        clock: Clock = utcnow,
    ) -> None:
        self.ports = ports
        self.supervisor = supervisor
        self.workspaces = workspaces
        self.orchestrator = orchestrator
        self.store = store or SessionStore()
        self.host = host
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._handles: dict[str, ProcessHandle] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._terminating: dict[str, asyncio.Future[bool]] = {}
        self._creating: dict[str, asyncio.Task[object] | None] = {}
        self._aborted: set[str] = set()
        self._applied: dict[str, set[str]] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: FlutteryConfig,
        backend: GenerativeBackend,
        *,
        base_dir: Path | None = None,
        clock: Clock = utcnow,
    ) -> SessionManager:
        base_dir = base_dir or Path.cwd()
        model = config.agents.model
        if config.agents.planner == "agent":
            planner = AgentPlanner(backend, model=model)
        else:
            planner = StaticPlanner()
        orchestrator = Orchestrator(
            planner,
            [
                DesignWorker(backend, model=model),
                CodeWorker(backend, model=model),
                TestWorker(backend, model=model),
            ],
            batch_size=config.agents.batch_size,
        )
        supervisor = ProcessSupervisor(
            config.process.command,
            startup_timeout=config.process.startup_timeout_seconds,
            grace_period=config.process.grace_period_seconds,
            reload_trigger=config.process.reload_trigger,
            marker_factory=partial(ServingMarker, template=config.process.ready_marker),
        )
        workspace_root = Path(config.sessions.workspace_root)
        if not workspace_root.is_absolute():
            workspace_root = base_dir / workspace_root
        workspaces = WorkspaceManager(
            workspace_root,
            scaffold_command=config.workspace.scaffold_command,
            dependency_command=config.workspace.dependency_command,
            command_timeout=config.workspace.command_timeout_seconds,
        )
        return cls(
            ports=PortAllocator(config.server.base_port, config.server.port_range),
            supervisor=supervisor,
            workspaces=workspaces,
            orchestrator=orchestrator,
            host=config.server.host,
            max_sessions=config.sessions.max_sessions,
            idle_timeout=config.sessions.idle_timeout_seconds,
            sweep_interval=config.sessions.sweep_interval_seconds,
            clock=clock,
        )

    # Lifecycle

    async def create_session(
        self,
        owner_id: str | None = None,
        initial_request: str | None = None,
    ) -> Session:
        # Capacity, port and record are claimed before the first await so
        # concurrent creates cannot overshoot either bound.
        if self.store.count() >= self.max_sessions:
            raise CapacityExceededError(
                f"Maximum of {self.max_sessions} concurrent sessions reached"
            )
        port = self.ports.acquire()
        session_id = uuid.uuid4().hex
        now = self._clock()
        session = self.store.create(
            Session(
                id=session_id,
                workspace=self.workspaces.path_for(session_id),
                port=port,
                preview_address=f"http://{self.host}:{port}",
                owner_id=owner_id,
                created_at=now,
                last_active=now,
            )
        )
        logger.info("Creating session %s on port %s", session_id, port)

        handle: ProcessHandle | None = None
        self._creating[session_id] = asyncio.current_task()
        try:
            await self.workspaces.provision(session_id)
            if initial_request:
                await self._seed(session, initial_request)
            handle = await self.supervisor.start(session.workspace, port)
        except asyncio.CancelledError:
            await self._rollback(session, handle)
            current = asyncio.current_task()
            if session_id in self._aborted and current is not None and current.uncancel() == 0:
                raise SessionNotFoundError(session_id) from None
            raise
        except BaseException:
            await self._rollback(session, handle)
            raise
        finally:
            self._creating.pop(session_id, None)
            self._aborted.discard(session_id)

        self._handles[session_id] = handle
        self._watchers[session_id] = asyncio.create_task(self._watch(session_id, handle))
        session = self.store.update(session_id, status="ready")
        logger.info("Session %s ready at %s", session_id, session.preview_address)
        return session

    async def _rollback(self, session: Session, handle: ProcessHandle | None) -> None:
        logger.warning("Rolling back session %s", session.id)
        if handle is not None:
            await self.supervisor.stop(handle)
        self._remove_workspace(session)
        self.ports.release(session.port)
        self.store.delete(session.id)
        self.orchestrator.discard_session(session.id)
        self._applied.pop(session.id, None)

    async def _seed(self, session: Session, request: str) -> None:
        context = WorkerContext(
            session_id=session.id,
            request=request,
            requirements=extract_requirements(request),
        )
        try:
            artifact = await self.orchestrator.execute(session.id, request, context)
            await self._apply(session, artifact)
        except (FlutteryError, BackendExecutionError) as exc:
            logger.warning(
                "Initial generation for session %s failed; keeping default workspace: %s",
                session.id,
                exc,
            )

    def get_session(self, session_id: str) -> Session:
        return self.store.get(session_id)

    def list_sessions(self) -> list[Session]:
        return self.store.list()

    async def terminate_session(self, session_id: str) -> bool:
        """Tear a session down; concurrent callers share one termination.

        Returns ``False`` when the session is already gone.
        """
        pending = self._terminating.get(session_id)
        if pending is None:
            if self.store.find(session_id) is None:
                return False
            pending = asyncio.ensure_future(self._terminate(session_id))
            self._terminating[session_id] = pending
            pending.add_done_callback(lambda _: self._terminating.pop(session_id, None))
        return await asyncio.shield(pending)

    async def _terminate(self, session_id: str) -> bool:
        if self.store.find(session_id) is None:
            return False
        creator = self._creating.get(session_id)
        if creator is not None:
            # Still starting: the creating task owns the port until its rollback.
            self._aborted.add(session_id)
            creator.cancel()
            await asyncio.wait({creator})
            logger.info("Session %s terminated while starting", session_id)
            return True
        session = self.store.update(session_id, status="terminated")
        handle = self._handles.pop(session_id, None)
        watcher = self._watchers.pop(session_id, None)
        if handle is not None:
            await self.supervisor.stop(handle)
            logger.info(
                "Stopped dev server for session %s (forced: %s)",
                session_id,
                handle.force_killed,
            )
        if watcher is not None:
            await watcher
        self._remove_workspace(session)
        self.ports.release(session.port)
        self.store.delete(session_id)
        self.orchestrator.discard_session(session_id)
        self._applied.pop(session_id, None)
        logger.info("Session %s terminated", session_id)
        return True

    def _remove_workspace(self, session: Session) -> None:
        try:
            self.workspaces.remove(session.workspace)
        except OSError as exc:
            logger.error("Could not remove workspace %s: %s", session.workspace, exc)

    async def _watch(self, session_id: str, handle: ProcessHandle) -> None:
        async for event in handle.events():
            match event:
                case OutputLine(text=text, stream=stream):
                    logger.debug("[%s %s] %s", session_id[:8], stream, text)
                case Reloaded():
                    logger.info("Session %s reloaded", session_id)
                case Crashed(exit_code=exit_code):
                    logger.error(
                        "Dev server for session %s crashed with code %s", session_id, exit_code
                    )
                    if self.store.find(session_id) is not None:
                        self.store.update(session_id, status="error")
                case _:
                    pass

    # Code updates

    def _require_ready(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session.status != "ready":
            raise SessionNotReadyError(session_id, session.status)
        return session

    def _context_for(self, session: Session, request: str) -> WorkerContext:
        return WorkerContext(
            session_id=session.id,
            request=request,
            requirements=extract_requirements(request),
            current_code=self.workspaces.read_entrypoint(session.workspace),
        )

    async def _apply(self, session: Session, artifact: Artifact) -> tuple[list[str], list[str]]:
        written = self.workspaces.write_files(session.workspace, artifact.files())
        added: list[str] = []
        if artifact.dependencies():
            added = self.workspaces.add_dependencies(session.workspace, artifact.dependencies())
        if added:
            await self.workspaces.resolve_dependencies(session.workspace)
        logger.info("Applied %s files to session %s", len(written), session.id)
        return written, added

    async def _reload(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        if handle is None:
            return False
        try:
            await self.supervisor.signal_reload(handle)
        except ReloadError as exc:
            logger.warning("Hot reload for session %s failed: %s", session_id, exc)
            return False
        return True

    def _mark_applied(self, run: Run) -> bool:
        applied = self._applied.setdefault(run.session_id, set())
        if run.id in applied:
            return False
        applied.add(run.id)
        return True

    async def update_code(self, session_id: str, request: str) -> UpdateResult:
        session = self._require_ready(session_id)
        self.store.touch(session_id, self._clock())
        run = await self.orchestrator.start_run(
            session_id, request, self._context_for(session, request)
        )
        artifact = await self.orchestrator.run_to_completion(run)
        self._mark_applied(run)
        written, added = await self._apply(session, artifact)
        reloaded = await self._reload(session_id)
        self.store.touch(session_id, self._clock())
        return UpdateResult(
            run_id=run.id,
            files=written,
            dependencies_added=added,
            reloaded=reloaded,
            preview_address=session.preview_address,
        )

    async def start_update(self, session_id: str, request: str) -> RunStatus:
        session = self._require_ready(session_id)
        self.store.touch(session_id, self._clock())
        run = await self.orchestrator.start_run(
            session_id, request, self._context_for(session, request)
        )
        return self._status(run)

    async def continue_run(self, session_id: str) -> RunStatus:
        session = self._require_ready(session_id)
        self.store.touch(session_id, self._clock())
        latest = self.orchestrator.latest_run(session_id)
        if latest is None:
            raise RunNotFoundError(f"Session {session_id} has no run to continue")
        run = await self.orchestrator.continue_run(latest.id)
        applied: list[str] = []
        if run.phase == "completed" and run.artifact is not None and self._mark_applied(run):
            applied, _ = await self._apply(session, run.artifact)
            await self._reload(session_id)
        return self._status(run, applied)

    def _status(self, run: Run, applied: list[str] | None = None) -> RunStatus:
        return RunStatus(
            run_id=run.id,
            status=run.phase,
            progress=self.orchestrator.progress(run.id),
            artifact=run.artifact,
            error=run.error,
            applied=applied or [],
        )

    # Reclamation

    async def idle_sweep(self) -> list[str]:
        threshold = self._clock() - timedelta(seconds=self.idle_timeout)
        swept: list[str] = []

        async def reclaim(session: Session) -> None:
            if await self.terminate_session(session.id):
                swept.append(session.id)

        await self.store.for_each_idle_since(threshold, reclaim)
        if swept:
            logger.info("Idle sweep reclaimed %s sessions", len(swept))
        return swept

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.idle_sweep()
            except FlutteryError:
                logger.exception("Idle sweep failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        sessions = self.store.list()
        if sessions:
            logger.info("Shutting down %s sessions", len(sessions))
        await asyncio.gather(*(self.terminate_session(session.id) for session in sessions))
