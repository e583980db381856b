"""Plan / execute / integrate engine behind every code update.

A run is planned once, executed in dependency order one batch per
``continue_run`` call, then integrated into a single :class:`Artifact`.
Callers that do not need step-wise progress use :meth:`Orchestrator.execute`.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, assert_never

from fluttery.backends.base import BackendExecutionError
from fluttery.errors import (
    PlanningError,
    RunInProgressError,
    RunNotFoundError,
    TaskFailedError,
    WorkerError,
)
from fluttery.graph import Task, TaskGraph
from fluttery.results import Artifact, CodeResult, DesignResult, TaskKind, TaskResult, TestResult
from fluttery.workers.base import Worker, WorkerContext
from fluttery.workers.planner import Planner

logger = logging.getLogger(__name__)

RunPhase = Literal["planning", "executing", "integrating", "completed", "failed"]
ACTIVE_PHASES: frozenset[RunPhase] = frozenset({"planning", "executing", "integrating"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def project_name_from(request: str) -> str:
    words = [word for word in re.sub(r"[^a-z0-9\s]", "", request.lower()).split() if len(word) > 2]
    return "_".join(words[:3]) or "flutter_app"


@dataclass(frozen=True, slots=True)
class RunProgress:
    completed_tasks: int
    total_tasks: int
    current_worker: str | None
    phase: RunPhase

    def to_dict(self) -> dict[str, object]:
        return {
            "completed_tasks": self.completed_tasks,
            "total_tasks": self.total_tasks,
            "current_worker": self.current_worker,
            "phase": self.phase,
        }


@dataclass(slots=True)
class Run:
    id: str
    session_id: str
    request: str
    context: WorkerContext
    phase: RunPhase = "planning"
    graph: TaskGraph | None = None
    order: list[str] = field(default_factory=list)
    cursor: int = 0
    artifact: Artifact | None = None
    error: str | None = None
    current_worker: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def terminal(self) -> bool:
        return not self.active

    def tasks(self) -> list[Task]:
        return list(self.graph) if self.graph is not None else []

    def set_phase(self, phase: RunPhase) -> None:
        self.phase = phase
        self.updated_at = _utcnow_iso()

    def require_graph(self) -> TaskGraph:
        if self.graph is None:
            raise PlanningError(f"Run {self.id} has no plan")
        return self.graph


class Orchestrator:
    def __init__(
        self,
        planner: Planner,
        workers: Iterable[Worker],
        *,
        batch_size: int | None = None,
    ) -> None:
        self.planner = planner
        self.workers: dict[TaskKind, Worker] = {worker.kind: worker for worker in workers}
        self.batch_size = batch_size if batch_size and batch_size > 0 else None
        self._runs: dict[str, Run] = {}
        self._session_runs: dict[str, list[str]] = {}

    def get_run(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    def latest_run(self, session_id: str) -> Run | None:
        run_ids = self._session_runs.get(session_id)
        if not run_ids:
            return None
        return self._runs[run_ids[-1]]

    def discard_session(self, session_id: str) -> list[str]:
        run_ids = self._session_runs.pop(session_id, [])
        for run_id in run_ids:
            self._runs.pop(run_id, None)
        return run_ids

    def progress(self, run_id: str) -> RunProgress:
        run = self.get_run(run_id)
        graph = run.graph
        return RunProgress(
            completed_tasks=graph.count("completed") if graph is not None else 0,
            total_tasks=len(graph) if graph is not None else 0,
            current_worker=run.current_worker,
            phase=run.phase,
        )

    async def start_run(
        self,
        session_id: str,
        request: str,
        context: WorkerContext | None = None,
    ) -> Run:
        latest = self.latest_run(session_id)
        if latest is not None and latest.active:
            raise RunInProgressError(
                f"Session {session_id} already has run {latest.id} in phase {latest.phase}"
            )
        run = Run(
            id=uuid.uuid4().hex,
            session_id=session_id,
            request=request,
            context=context or WorkerContext(session_id=session_id, request=request),
        )
        self._runs[run.id] = run
        self._session_runs.setdefault(session_id, []).append(run.id)
        logger.info("Planning run %s for session %s", run.id, session_id)

        try:
            tasks = await self.planner.plan(run.context)
            graph = self._build_graph(tasks)
            order = graph.topological_order()
        except PlanningError as exc:
            self._fail(run, str(exc))
            raise
        except BackendExecutionError as exc:
            self._fail(run, f"Planning failed: {exc}")
            raise PlanningError(f"Planning failed: {exc}") from exc
        except asyncio.CancelledError:
            self._fail(run, "Planning was cancelled")
            raise
        except Exception as exc:
            self._fail(run, str(exc))
            raise

        run.graph = graph
        run.order = order
        run.set_phase("executing")
        logger.info("Run %s planned: %s", run.id, " -> ".join(order))
        return run

    def _build_graph(self, tasks: list[Task]) -> TaskGraph:
        if not tasks:
            raise PlanningError("Planner produced an empty plan")
        seen: set[TaskKind] = set()
        for task in tasks:
            worker = self.workers.get(task.kind)
            if worker is None:
                raise PlanningError(f"No worker registered for task kind: {task.kind}")
            if task.kind in seen:
                raise PlanningError(f"Plan has more than one {task.kind} task")
            seen.add(task.kind)
            task.worker = worker.role
        return TaskGraph(tasks)

    async def continue_run(self, run_id: str) -> Run:
        run = self.get_run(run_id)
        async with run.lock:
            match run.phase:
                case "executing":
                    await self._execute_batch(run)
                case "integrating":
                    self._integrate(run)
                case "planning" | "completed" | "failed":
                    pass
        return run

    async def execute(
        self,
        session_id: str,
        request: str,
        context: WorkerContext | None = None,
    ) -> Artifact:
        run = await self.start_run(session_id, request, context)
        return await self.run_to_completion(run)

    async def run_to_completion(self, run: Run) -> Artifact:
        while run.active:
            await self.continue_run(run.id)
        if run.artifact is None:
            raise PlanningError(run.error or f"Run {run.id} produced no artifact")
        return run.artifact

    async def _execute_batch(self, run: Run) -> None:
        graph = run.require_graph()
        remaining = run.order[run.cursor :]
        batch = remaining[: self.batch_size] if self.batch_size else remaining
        for task_id in batch:
            await self._run_task(run, graph.get(task_id))
            run.cursor += 1
        run.current_worker = None
        if run.cursor >= len(run.order):
            run.set_phase("integrating")

    async def _run_task(self, run: Run, task: Task) -> None:
        graph = run.require_graph()
        upstream: dict[TaskKind, TaskResult] = {}
        for dep_id in task.depends_on:
            dependency = graph.get(dep_id)
            if dependency.result is not None:
                upstream[dependency.kind] = dependency.result

        task.mark("in_progress")
        run.current_worker = task.worker
        logger.info("Run %s: task %s dispatched to %s", run.id, task.id, task.worker)
        try:
            result = await self.workers[task.kind].handle(task, run.context.with_upstream(upstream))
            if result.kind != task.kind:
                raise WorkerError(
                    f"{task.worker} returned a {result.kind} result for a {task.kind} task"
                )
        except (WorkerError, BackendExecutionError) as exc:
            task.mark("failed", error=str(exc))
            self._fail(run, f"Task {task.id} ({task.worker}) failed: {exc}")
            raise TaskFailedError(
                f"Task {task.id} ({task.worker}) failed: {exc}",
                task_id=task.id,
                kind=task.kind,
            ) from exc
        except asyncio.CancelledError:
            task.mark("failed", error="cancelled")
            self._fail(run, f"Task {task.id} ({task.worker}) was cancelled")
            raise
        except Exception as exc:
            task.mark("failed", error=str(exc))
            self._fail(run, str(exc))
            raise

        task.result = result
        task.mark("completed")
        logger.info("Run %s: task %s completed", run.id, task.id)

    def _integrate(self, run: Run) -> None:
        graph = run.require_graph()
        design: DesignResult | None = None
        code: CodeResult | None = None
        tests: TestResult | None = None
        for task in graph:
            result = task.result
            match result:
                case DesignResult():
                    design = result
                case CodeResult():
                    code = result
                case TestResult():
                    tests = result
                case None:
                    raise PlanningError(f"Task {task.id} finished without a result")
                case _:
                    assert_never(result)
            task.result = None

        run.artifact = Artifact(
            project_name=project_name_from(run.request),
            description=run.request,
            design=design,
            code=code,
            tests=tests,
            workers_used=tuple(dict.fromkeys(task.worker for task in graph)),
            total_tasks=len(graph),
        )
        run.set_phase("completed")
        logger.info("Run %s integrated into %s files", run.id, len(run.artifact.files()))

    def _fail(self, run: Run, message: str) -> None:
        run.error = message
        run.current_worker = None
        run.set_phase("failed")
        for task in run.tasks():
            task.result = None
        logger.warning("Run %s failed: %s", run.id, message)
