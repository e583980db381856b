from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from fluttery.backends.base import GenerativeBackend
from fluttery.errors import WorkerError
from fluttery.results import CodeResult, DesignResult, TaskKind, TaskResult, TestResult

if TYPE_CHECKING:
    from fluttery.graph import Task

_FEATURE_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("auth", "login", "sign in", "signup", "sign up"), "authentication"),
    (("firebase", "database", "firestore"), "database"),
    (("todo", "task"), "task_management"),
    (("chat", "message"), "messaging"),
    (("ecommerce", "e-commerce", "shop", "cart"), "ecommerce"),
]


def extract_requirements(request: str) -> dict[str, Any]:
    """Keyword scan of a request into features plus a rough complexity."""
    lowered = request.lower()
    features = [
        feature
        for keywords, feature in _FEATURE_KEYWORDS
        if any(keyword in lowered for keyword in keywords)
    ]
    if "ecommerce" in features or len(features) > 3:
        complexity = "high"
    elif not features:
        complexity = "low"
    else:
        complexity = "medium"
    return {
        "app_type": "mobile",
        "platform": "flutter",
        "features": features,
        "complexity": complexity,
    }


def extract_json_from_text(text: str) -> str:
    text = text.strip()

    # Strip Markdown code fences if present.
    if text.startswith("```"):
        lines = text.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()

    if "{" in text and "}" in text:
        start = text.find("{")
        end = text.rfind("}")
        if end > start:
            return text[start : end + 1].strip()
    return text


def parse_payload(text: str, *, role: str) -> dict[str, Any]:
    if not text.strip():
        raise WorkerError(f"{role} returned no output")
    try:
        payload = json.loads(extract_json_from_text(text))
    except json.JSONDecodeError as exc:
        raise WorkerError(f"{role} returned malformed JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise WorkerError(f"{role} returned {type(payload).__name__}, expected an object")
    return payload


@dataclass(slots=True)
class WorkerContext:
    """What a worker sees: the session's request plus its dependencies' results."""

    session_id: str
    request: str
    requirements: dict[str, Any] = field(default_factory=dict)
    current_code: str = ""
    upstream: dict[TaskKind, TaskResult] = field(default_factory=dict)

    def with_upstream(self, results: dict[TaskKind, TaskResult]) -> WorkerContext:
        return WorkerContext(
            session_id=self.session_id,
            request=self.request,
            requirements=dict(self.requirements),
            current_code=self.current_code,
            upstream=dict(results),
        )

    def to_prompt_context(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "request": self.request,
            "requirements": self.requirements,
        }
        if self.current_code:
            payload["current_code"] = self.current_code
        for result in self.upstream.values():
            match result:
                case DesignResult(specification=specification):
                    payload["design"] = specification
                case CodeResult(files=files, dependencies=dependencies):
                    payload["codebase"] = {
                        "files": [{"path": f.path, "content": f.content} for f in files],
                        "dependencies": list(dependencies),
                    }
                case TestResult(files=files):
                    payload["tests"] = [f.path for f in files]
        return payload


class Worker(ABC):
    role: str = "worker"
    kind: TaskKind
    system_prompt: str = "You are a Flutter development specialist."

    def __init__(self, backend: GenerativeBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    def build_prompt(self, task: Task, context: WorkerContext) -> str:
        return f"{task.description}\n\nUser request: {context.request}"

    @abstractmethod
    def build_result(self, payload: dict[str, Any]) -> TaskResult:
        """Turn the parsed JSON payload into this worker's typed result."""

    async def handle(self, task: Task, context: WorkerContext) -> TaskResult:
        run_context = context.to_prompt_context()
        if self.model:
            run_context["model"] = self.model
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=self.build_prompt(task, context),
            context=run_context,
        ):
            chunks.append(chunk)
        payload = parse_payload("".join(chunks), role=self.role)
        return self.build_result(payload)


def explanation_of(payload: dict[str, Any]) -> str:
    explanation = payload.get("explanation")
    return explanation.strip() if isinstance(explanation, str) else ""


_SAFE_PATH = re.compile(r"^[\w./-]+$")


def file_entries(items: Any, *, path_key: str = "path") -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    if not isinstance(items, list):
        return entries
    for item in items:
        if not isinstance(item, dict):
            continue
        path = item.get(path_key) or item.get("path") or item.get("file")
        content = item.get("content")
        if isinstance(path, str) and _SAFE_PATH.match(path.strip()) and isinstance(content, str):
            entries.append((path.strip(), content))
    return entries
