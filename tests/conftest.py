import json
import shlex
import sys
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from fluttery.backends.base import GenerativeBackend
from fluttery.manager import SessionManager
from fluttery.orchestrator import Orchestrator
from fluttery.ports import PortAllocator
from fluttery.process import ProcessSupervisor
from fluttery.store import utcnow
from fluttery.workers import CodeWorker, DesignWorker, StaticPlanner, TestWorker
from fluttery.workspace import WorkspaceManager

FAKE_SERVER = """\
import signal
import sys
import time

port = sys.argv[1]
mode = sys.argv[2] if len(sys.argv) > 2 else "normal"

if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
if mode == "crash":
    print("Error: no pubspec.yaml file found.", flush=True)
    sys.exit(3)

print("Launching lib/main.dart on Web Server in debug mode...", flush=True)
if mode != "silent":
    print(f"lib/main.dart is being served at http://localhost:{port}", flush=True)
if mode == "crash_after_ready":
    time.sleep(0.2)
    sys.exit(4)

while True:
    line = sys.stdin.readline()
    if not line:
        break
    if line.strip() == "r":
        print("Performing hot reload...", flush=True)
        print("Reloaded 1 of 1 libraries in 12ms.", flush=True)
"""

DESIGN_PAYLOAD = {
    "design": {
        "theme": {"primaryColor": "#6750A4", "fontFamily": "Roboto"},
        "screens": [{"name": "home", "route": "/"}],
    },
    "explanation": "Single Material 3 home screen.",
}

CODE_PAYLOAD = {
    "files": [
        {"path": "lib/main.dart", "content": "void main() => runApp(const TodoApp());\n"},
        {"path": "lib/models/todo.dart", "content": "class Todo {}\n"},
    ],
    "dependencies": [{"name": "provider"}, {"name": "flutter_lints", "dev": True}],
    "explanation": "Provider based todo list.",
}

TEST_PAYLOAD = {
    "testSuite": {
        "widgetTests": [
            {"file": "test/widget_test.dart", "content": "void main() {}\n"},
        ],
    },
    "explanation": "Smoke test.",
}


def role_of(system_prompt: str) -> str:
    if "Design specialist" in system_prompt:
        return "designer"
    if "Code Generation" in system_prompt:
        return "coder"
    if "Testing/QA" in system_prompt:
        return "tester"
    return "planner"


class ScriptedBackend(GenerativeBackend):
    """Answers each worker role with a canned payload, or raises a canned error."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses: dict[str, Any] = {
            "designer": json.dumps(DESIGN_PAYLOAD),
            "coder": "```json\n" + json.dumps(CODE_PAYLOAD) + "\n```",
            "tester": json.dumps(TEST_PAYLOAD),
        }
        self.responses.update(responses or {})
        self.calls: list[str] = []
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = user_prompt
        role = role_of(system_prompt)
        self.calls.append(role)
        self.contexts.append(context)
        response = self.responses[role]
        if isinstance(response, BaseException):
            raise response
        yield response


@pytest.fixture
def fake_server(tmp_path: Path) -> Callable[..., str]:
    script = tmp_path / "fake_flutter.py"
    script.write_text(FAKE_SERVER, encoding="utf-8")

    def command(mode: str = "normal") -> str:
        return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{port}} {mode}"

    return command


@pytest.fixture
def make_manager(tmp_path: Path, fake_server: Callable[..., str]) -> Callable[..., SessionManager]:
    def build(
        mode: str = "normal",
        *,
        backend: GenerativeBackend | None = None,
        max_sessions: int = 50,
        port_range: int = 10,
        startup_timeout: float = 10.0,
        grace_period: float = 0.5,
        idle_timeout: float = 3600.0,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> SessionManager:
        backend = backend or ScriptedBackend()
        orchestrator = Orchestrator(
            StaticPlanner(),
            [DesignWorker(backend), CodeWorker(backend), TestWorker(backend)],
            batch_size=batch_size,
        )
        return SessionManager(
            ports=PortAllocator(8080, port_range),
            supervisor=ProcessSupervisor(
                fake_server(mode),
                startup_timeout=startup_timeout,
                grace_period=grace_period,
            ),
            workspaces=WorkspaceManager(tmp_path / "sessions"),
            orchestrator=orchestrator,
            max_sessions=max_sessions,
            idle_timeout=idle_timeout,
            clock=clock,
        )

    return build
