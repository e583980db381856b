from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a generative backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend CLI process cannot be launched."""


def render_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    payload = {key: value for key, value in context.items() if key != "model"}
    if not payload:
        return user_prompt
    return "\n\n".join(
        [user_prompt, "Context JSON:", json.dumps(payload, ensure_ascii=False, indent=2)]
    )


class GenerativeBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run one generation and stream textual chunks."""
