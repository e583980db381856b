from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from fluttery.backends.base import GenerativeBackend
from fluttery.errors import PlanningError
from fluttery.graph import Task
from fluttery.results import TASK_KINDS, TaskKind
from fluttery.workers.base import WorkerContext, extract_json_from_text

logger = logging.getLogger(__name__)

ROLE_FOR_KIND: dict[TaskKind, str] = {
    "design": "designer",
    "code": "coder",
    "test": "tester",
}


class Planner(Protocol):
    async def plan(self, context: WorkerContext) -> list[Task]: ...


class StaticPlanner:
    """The canonical design -> code -> test chain, without a model call."""

    async def plan(self, context: WorkerContext) -> list[Task]:
        return [
            Task(
                id="design",
                kind="design",
                worker=ROLE_FOR_KIND["design"],
                description="Create the UI/UX design specification for the requested app.",
            ),
            Task(
                id="code",
                kind="code",
                worker=ROLE_FOR_KIND["code"],
                description="Generate the Flutter code that implements the design.",
                depends_on=["design"],
            ),
            Task(
                id="test",
                kind="test",
                worker=ROLE_FOR_KIND["test"],
                description="Write tests covering the generated code.",
                depends_on=["code"],
            ),
        ]


class AgentPlanner:
    role = "planner"
    system_prompt = """
You are the Planner/Architect for Flutter app development.
Break the user request into tasks for the design, code, and test specialists,
at most one task per kind, and state which tasks each one depends on.
You produce plans, not code.
Respond with a JSON object: {"tasks": [{"id": "design", "kind": "design",
"description": "...", "depends_on": []}]}.
""".strip()

    def __init__(self, backend: GenerativeBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def plan(self, context: WorkerContext) -> list[Task]:
        run_context = context.to_prompt_context()
        if self.model:
            run_context["model"] = self.model
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=f"Create an execution plan for: {context.request}",
            context=run_context,
        ):
            chunks.append(chunk)
        return self.parse_plan("".join(chunks))

    @staticmethod
    def parse_plan(text: str) -> list[Task]:
        try:
            payload = json.loads(extract_json_from_text(text))
        except json.JSONDecodeError as exc:
            raise PlanningError(f"Planner returned malformed JSON: {exc}") from exc
        items: Any = payload.get("tasks", payload.get("plans")) if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise PlanningError("Planner output has no task list")

        tasks: list[Task] = []
        for index, item in enumerate(items, start=1):
            if not isinstance(item, dict):
                raise PlanningError(f"Plan entry {index} is not an object")
            kind = item.get("kind", item.get("type"))
            if kind not in TASK_KINDS:
                raise PlanningError(f"Plan entry {index} has unknown kind: {kind!r}")
            depends_on = item.get("depends_on", item.get("dependencies", []))
            if not isinstance(depends_on, list):
                raise PlanningError(f"Plan entry {index} has malformed dependencies")
            tasks.append(
                Task(
                    id=str(item.get("id") or f"{kind}-{index}"),
                    kind=kind,
                    worker=ROLE_FOR_KIND[kind],
                    description=str(item.get("description") or item.get("action") or kind),
                    depends_on=[str(dep) for dep in depends_on],
                )
            )
        logger.debug("Planner proposed %s tasks", len(tasks))
        return tasks
