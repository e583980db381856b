from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from fluttery.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    GenerativeBackend,
    render_user_prompt,
)

logger = logging.getLogger(__name__)


class ClaudeCodeBackend(GenerativeBackend):
    """Runs the ``claude`` CLI in print mode and streams the assistant's text.

    Each stdout line is one stream-json event. Only assistant text blocks are
    forwarded; stderr is drained alongside stdout so a noisy CLI cannot stall
    on a full pipe.
    """

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        if self.model:
            command += ["--model", self.model]
        return command

    @staticmethod
    def text_of(event: dict[str, Any]) -> str:
        match event:
            case {"type": "assistant", "message": {"content": list(blocks)}}:
                return "".join(
                    block["text"]
                    for block in blocks
                    if isinstance(block, dict)
                    and block.get("type") == "text"
                    and isinstance(block.get("text"), str)
                )
            case {"type": "result", "is_error": True}:
                raise BackendExecutionError(
                    f"Claude reported an error: {event.get('result') or event.get('subtype')}",
                    backend="claude",
                    retriable=True,
                )
            case _:
                return ""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, render_user_prompt(user_prompt, context))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc
        if process.stdout is None or process.stderr is None:
            raise BackendProcessError(
                "Claude backend did not expose its output streams.",
                backend="claude",
                retriable=False,
            )

        stderr_reader = asyncio.ensure_future(process.stderr.read())
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    yield line
                    continue
                if not isinstance(event, dict):
                    continue
                text = self.text_of(event)
                if text:
                    yield text

            return_code = await process.wait()
            stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            stderr_reader.cancel()

        if stderr_output:
            logger.debug("claude stderr: %s", stderr_output)
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
