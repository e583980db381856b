import tomllib
from pathlib import Path

from fluttery import __version__
from fluttery.config import FlutteryConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "fluttery.toml"
    config = FlutteryConfig.default()
    config.server.base_port = 9100
    config.server.port_range = 25
    config.sessions.max_sessions = 4
    config.sessions.idle_timeout_seconds = 120.0
    config.process.command = "fvm flutter run -d web-server --web-port {port}"
    config.workspace.scaffold_command = ""
    config.backend.primary = "claude"
    config.backend.fallback = "openai"
    config.backend.max_retries = 3
    config.agents.planner = "agent"
    config.agents.batch_size = 1

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.server.base_port == 9100
    assert loaded.server.port_range == 25
    assert loaded.sessions.max_sessions == 4
    assert loaded.sessions.idle_timeout_seconds == 120.0
    assert loaded.sessions.sweep_interval_seconds == 600.0
    assert loaded.process.command.startswith("fvm flutter run")
    assert loaded.process.ready_marker == "is being served at http://localhost:{port}"
    assert loaded.workspace.scaffold_command == ""
    assert loaded.backend.primary == "claude"
    assert loaded.backend.fallback == "openai"
    assert loaded.backend.max_retries == 3
    assert loaded.agents.planner == "agent"
    assert loaded.agents.batch_size == 1


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.server.base_port == 8080
    assert config.server.port_range == 1000
    assert config.sessions.max_sessions == 50
    assert config.process.startup_timeout_seconds == 120.0
    assert config.process.grace_period_seconds == 5.0


def test_partial_config_keeps_other_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "fluttery.toml"
    config_path.write_text("[sessions]\nmax_sessions = 2\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.sessions.max_sessions == 2
    assert config.sessions.idle_timeout_seconds == 3600.0
    assert config.backend.primary == "openai"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(FlutteryConfig.default())

    for section in ("[server]", "[sessions]", "[process]", "[workspace]", "[backend]", "[agents]"):
        assert section in rendered
    assert "idle_timeout_seconds = 3600.0" in rendered
    assert "retry_backoff_seconds = 0.5" in rendered
    assert tomllib.loads(rendered)["process"]["reload_trigger"] == "r"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
