from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from fluttery.errors import CycleError, PlanningError
from fluttery.results import TaskKind, TaskResult

TaskStatus = Literal["pending", "in_progress", "completed", "failed"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Task:
    id: str
    kind: TaskKind
    worker: str
    description: str
    depends_on: list[str] = field(default_factory=list)
    status: TaskStatus = "pending"
    result: TaskResult | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    def mark(self, status: TaskStatus, *, error: str | None = None) -> None:
        self.status = status
        if status == "in_progress":
            self.started_at = _utcnow_iso()
        if status in {"completed", "failed"}:
            self.completed_at = _utcnow_iso()
        if error:
            self.error = error

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "kind": self.kind,
            "worker": self.worker,
            "description": self.description,
            "depends_on": list(self.depends_on),
            "status": self.status,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class TaskGraph:
    """Tasks plus prerequisite edges, kept in insertion order."""

    def __init__(self, tasks: Iterable[Task]) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise PlanningError(f"Duplicate task id in plan: {task.id}")
            self._tasks[task.id] = task
        for task in self._tasks.values():
            unknown = [dep for dep in task.depends_on if dep not in self._tasks]
            if unknown:
                raise PlanningError(
                    f"Task {task.id} depends on unknown tasks: " + ", ".join(unknown)
                )

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def get(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def count(self, status: TaskStatus) -> int:
        return sum(1 for task in self._tasks.values() if task.status == status)

    def topological_order(self) -> list[str]:
        order: list[str] = []
        visited: set[str] = set()
        in_progress: list[str] = []

        def visit(task_id: str) -> None:
            if task_id in visited:
                return
            if task_id in in_progress:
                start = in_progress.index(task_id)
                raise CycleError([*in_progress[start:], task_id])
            in_progress.append(task_id)
            for dep_id in self._tasks[task_id].depends_on:
                visit(dep_id)
            in_progress.pop()
            visited.add(task_id)
            order.append(task_id)

        for task_id in self._tasks:
            visit(task_id)
        return order
