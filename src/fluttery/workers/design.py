from __future__ import annotations

from typing import Any

from fluttery.errors import WorkerError
from fluttery.results import DesignResult
from fluttery.workers.base import Worker, explanation_of


class DesignWorker(Worker):
    role = "designer"
    kind = "design"
    system_prompt = """
You are the UI/UX Design specialist for Flutter applications.
Produce Material Design 3 specifications: theme, layout, and screens with their widgets.
Respond with a JSON object: {"design": {"theme": {...}, "layout": {...}, "screens": [...]},
"explanation": "..."}.
""".strip()

    def build_result(self, payload: dict[str, Any]) -> DesignResult:
        specification = payload.get("design", payload)
        if isinstance(specification, dict):
            specification = {
                key: value for key, value in specification.items() if key != "explanation"
            }
        if not isinstance(specification, dict) or not specification:
            raise WorkerError(f"{self.role} returned an empty design specification")
        return DesignResult(specification=specification, explanation=explanation_of(payload))
