import asyncio
import logging
import shlex
import sys
from pathlib import Path

import pytest

from fluttery.errors import WorkspaceError
from fluttery.results import GeneratedFile
from fluttery.workspace import WorkspaceManager, dependency_name, project_name_for


def test_provision_writes_default_template(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path / "sessions")

    workspace = asyncio.run(manager.provision("abc123"))

    assert workspace == tmp_path / "sessions" / "abc123"
    assert "name: flutter_app_abc123" in (workspace / "pubspec.yaml").read_text(encoding="utf-8")
    assert "runApp" in manager.read_entrypoint(workspace)


def test_provision_runs_scaffold_command(tmp_path: Path) -> None:
    python = shlex.quote(sys.executable)
    manager = WorkspaceManager(
        tmp_path,
        scaffold_command=(
            f"{python} -c \"import sys, pathlib; "
            "pathlib.Path('pubspec.yaml').write_text('name: ' + sys.argv[1] + '\\\\n')\" "
            "{project_name}"
        ),
    )

    workspace = asyncio.run(manager.provision("s1"))

    assert (workspace / "pubspec.yaml").read_text(encoding="utf-8").startswith(
        "name: flutter_app_s1"
    )


def test_failing_scaffold_command_raises(tmp_path: Path) -> None:
    python = shlex.quote(sys.executable)
    manager = WorkspaceManager(tmp_path, scaffold_command=f"{python} -c \"raise SystemExit(2)\"")

    with pytest.raises(WorkspaceError, match="exit code 2"):
        asyncio.run(manager.provision("s1"))


def test_provision_refuses_existing_workspace(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path)
    (tmp_path / "taken").mkdir()

    with pytest.raises(WorkspaceError):
        asyncio.run(manager.provision("taken"))


def test_write_files_creates_parents_and_stays_inside(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path)

    written = manager.write_files(
        tmp_path, [GeneratedFile("lib/screens/home.dart", "class Home {}\n")]
    )

    assert written == ["lib/screens/home.dart"]
    assert (tmp_path / "lib" / "screens" / "home.dart").exists()
    with pytest.raises(WorkspaceError):
        manager.write_files(tmp_path, [GeneratedFile("../escape.dart", "")])
    with pytest.raises(WorkspaceError):
        manager.write_files(tmp_path, [GeneratedFile("/etc/passwd", "")])


def test_add_dependencies_uses_known_versions_once(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path)
    asyncio.run(manager.provision("s1"))
    workspace = tmp_path / "s1"

    added = manager.add_dependencies(workspace, ["provider", "http: ^0.13.0", "fancy_widgets"])
    again = manager.add_dependencies(workspace, ["provider", "cupertino_icons", "Not Valid!"])

    pubspec = (workspace / "pubspec.yaml").read_text(encoding="utf-8")
    assert added == ["provider", "http", "fancy_widgets"]
    assert again == []
    assert "  provider: ^6.1.1" in pubspec
    assert "  http: ^1.1.0" in pubspec
    assert "  fancy_widgets: ^1.0.0" in pubspec
    assert pubspec.count("provider:") == 1


def test_add_dependencies_requires_manifest(tmp_path: Path) -> None:
    with pytest.raises(WorkspaceError):
        WorkspaceManager(tmp_path).add_dependencies(tmp_path, ["http"])


def test_resolve_dependencies_failure_is_logged(tmp_path: Path, caplog) -> None:
    python = shlex.quote(sys.executable)
    manager = WorkspaceManager(
        tmp_path, dependency_command=f"{python} -c \"raise SystemExit(1)\""
    )

    with caplog.at_level(logging.WARNING, logger="fluttery.workspace"):
        resolved = asyncio.run(manager.resolve_dependencies(tmp_path))

    assert resolved is False
    assert "Dependency resolution failed" in caplog.text


def test_remove_deletes_recursively(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path)
    workspace = asyncio.run(manager.provision("s1"))

    manager.remove(workspace)
    manager.remove(workspace)

    assert not workspace.exists()


def test_name_helpers() -> None:
    assert project_name_for("A1-b2") == "flutter_app_a1_b2"
    assert dependency_name(" Provider: ^6.0.0 ") == "provider"
