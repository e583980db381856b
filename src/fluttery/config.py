from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["openai", "claude"]
PlannerMode = Literal["static", "agent"]


@dataclass(slots=True)
class ServerConfig:
    host: str = "localhost"
    base_port: int = 8080
    port_range: int = 1000


@dataclass(slots=True)
class SessionsConfig:
    max_sessions: int = 50
    idle_timeout_seconds: float = 3600.0
    sweep_interval_seconds: float = 600.0
    workspace_root: str = ".fluttery/sessions"


@dataclass(slots=True)
class ProcessConfig:
    command: str = "flutter run -d web-server --web-port {port}"
    ready_marker: str = "is being served at http://localhost:{port}"
    reload_trigger: str = "r"
    startup_timeout_seconds: float = 120.0
    grace_period_seconds: float = 5.0


@dataclass(slots=True)
class WorkspaceConfig:
    scaffold_command: str = "flutter create --project-name {project_name} ."
    dependency_command: str = "flutter pub get"
    command_timeout_seconds: float = 30.0


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "openai"
    fallback: BackendName = "claude"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "gpt-4.1"
    planner: PlannerMode = "static"
    batch_size: int = 0


@dataclass(slots=True)
class FlutteryConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)

    @classmethod
    def default(cls) -> FlutteryConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FlutteryConfig:
        return cls(
            server=ServerConfig(**data.get("server", {})),
            sessions=SessionsConfig(**data.get("sessions", {})),
            process=ProcessConfig(**data.get("process", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
        )

    def to_dict(self) -> dict:
        return {
            "server": {
                "host": self.server.host,
                "base_port": self.server.base_port,
                "port_range": self.server.port_range,
            },
            "sessions": {
                "max_sessions": self.sessions.max_sessions,
                "idle_timeout_seconds": self.sessions.idle_timeout_seconds,
                "sweep_interval_seconds": self.sessions.sweep_interval_seconds,
                "workspace_root": self.sessions.workspace_root,
            },
            "process": {
                "command": self.process.command,
                "ready_marker": self.process.ready_marker,
                "reload_trigger": self.process.reload_trigger,
                "startup_timeout_seconds": self.process.startup_timeout_seconds,
                "grace_period_seconds": self.process.grace_period_seconds,
            },
            "workspace": {
                "scaffold_command": self.workspace.scaffold_command,
                "dependency_command": self.workspace.dependency_command,
                "command_timeout_seconds": self.workspace.command_timeout_seconds,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
                "planner": self.agents.planner,
                "batch_size": self.agents.batch_size,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FlutteryConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["server", "sessions", "process", "workspace", "backend", "agents"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FlutteryConfig:
    if not path.exists():
        return FlutteryConfig.default()
    return FlutteryConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FlutteryConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
