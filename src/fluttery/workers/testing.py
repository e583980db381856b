from __future__ import annotations

from typing import Any

from fluttery.errors import WorkerError
from fluttery.results import GeneratedFile, TestResult
from fluttery.workers.base import Worker, explanation_of, file_entries

_SUITE_SECTIONS = ("unitTests", "widgetTests", "integrationTests")


class TestWorker(Worker):
    __test__ = False

    role = "tester"
    kind = "test"
    system_prompt = """
You are the Flutter Testing/QA specialist.
Write unit, widget, and integration tests for the generated code.
Respond with a JSON object: {"testSuite": {"unitTests": [{"file": "test/...", "content": "..."}],
"widgetTests": [...], "integrationTests": [...]}, "explanation": "..."}.
""".strip()

    def build_result(self, payload: dict[str, Any]) -> TestResult:
        entries = file_entries(payload.get("files"))
        suite = payload.get("testSuite")
        if isinstance(suite, dict):
            for section in _SUITE_SECTIONS:
                entries.extend(file_entries(suite.get(section), path_key="file"))
        files: dict[str, GeneratedFile] = {}
        for path, content in entries:
            files.setdefault(path, GeneratedFile(path, content))
        if not files:
            raise WorkerError(f"{self.role} returned no test files")
        return TestResult(files=tuple(files.values()), explanation=explanation_of(payload))
