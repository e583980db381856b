from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskKind = Literal["design", "code", "test"]
TASK_KINDS: tuple[TaskKind, ...] = ("design", "code", "test")


@dataclass(frozen=True, slots=True)
class GeneratedFile:
    path: str
    content: str


@dataclass(frozen=True, slots=True)
class DesignResult:
    specification: dict[str, Any]
    explanation: str = ""
    kind: Literal["design"] = "design"


@dataclass(frozen=True, slots=True)
class CodeResult:
    files: tuple[GeneratedFile, ...]
    dependencies: tuple[str, ...] = ()
    explanation: str = ""
    kind: Literal["code"] = "code"


@dataclass(frozen=True, slots=True)
class TestResult:
    files: tuple[GeneratedFile, ...]
    explanation: str = ""
    kind: Literal["test"] = "test"

    __test__ = False


TaskResult = DesignResult | CodeResult | TestResult


@dataclass(frozen=True, slots=True)
class Artifact:
    """Integrated output of one run; one slot per task kind."""

    project_name: str
    description: str
    design: DesignResult | None = None
    code: CodeResult | None = None
    tests: TestResult | None = None
    workers_used: tuple[str, ...] = ()
    total_tasks: int = 0
    generated_at: str = field(
        default_factory=lambda: datetime.now(UTC).replace(microsecond=0).isoformat()
    )

    def files(self) -> list[GeneratedFile]:
        files: list[GeneratedFile] = []
        if self.code is not None:
            files.extend(self.code.files)
        if self.tests is not None:
            files.extend(self.tests.files)
        return files

    def dependencies(self) -> list[str]:
        if self.code is None:
            return []
        return list(self.code.dependencies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {"name": self.project_name, "description": self.description},
            "design": self.design.specification if self.design else None,
            "files": [file.path for file in self.files()],
            "dependencies": self.dependencies(),
            "metadata": {
                "generated_at": self.generated_at,
                "workers_used": list(self.workers_used),
                "total_tasks": self.total_tasks,
            },
        }
