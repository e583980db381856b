from __future__ import annotations

from typing import Any

from fluttery.errors import WorkerError
from fluttery.graph import Task
from fluttery.results import CodeResult, GeneratedFile
from fluttery.workers.base import Worker, WorkerContext, explanation_of, file_entries


def _dependency_names(items: Any) -> tuple[str, ...]:
    names: list[str] = []
    if not isinstance(items, list):
        return ()
    for item in items:
        if isinstance(item, dict):
            if item.get("dev"):
                continue
            item = item.get("name")
        if isinstance(item, str) and item.strip() and item.strip() not in names:
            names.append(item.strip())
    return tuple(names)


class CodeWorker(Worker):
    role = "coder"
    kind = "code"
    system_prompt = """
You are the Flutter Code Generation specialist.
Implement the planned design as complete, compilable Dart files; lib/main.dart is the entrypoint.
Respond with a JSON object: {"files": [{"path": "lib/main.dart", "content": "..."}],
"dependencies": [{"name": "package_name"}], "explanation": "..."}.
""".strip()

    def build_prompt(self, task: Task, context: WorkerContext) -> str:
        prompt = super().build_prompt(task, context)
        if context.current_code:
            prompt += "\n\nEvolve the existing lib/main.dart instead of starting over."
        return prompt

    def build_result(self, payload: dict[str, Any]) -> CodeResult:
        files = tuple(GeneratedFile(path, content) for path, content in file_entries(payload.get("files")))
        if not files:
            raise WorkerError(f"{self.role} returned no files")
        return CodeResult(
            files=files,
            dependencies=_dependency_names(payload.get("dependencies")),
            explanation=explanation_of(payload),
        )
