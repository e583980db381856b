from __future__ import annotations

import asyncio
import logging
import re
import shlex
import shutil
from collections.abc import Iterable
from pathlib import Path

from fluttery.errors import WorkspaceError
from fluttery.results import GeneratedFile

logger = logging.getLogger(__name__)

ENTRYPOINT = Path("lib") / "main.dart"
MANIFEST = "pubspec.yaml"
DEFAULT_VERSION = "^1.0.0"

KNOWN_VERSIONS: dict[str, str] = {
    "http": "^1.1.0",
    "shared_preferences": "^2.2.2",
    "provider": "^6.1.1",
    "flutter_bloc": "^8.1.3",
    "get": "^4.6.6",
    "dio": "^5.3.2",
    "cached_network_image": "^3.3.0",
    "image_picker": "^1.0.4",
    "path_provider": "^2.1.1",
    "sqflite": "^2.3.0",
    "url_launcher": "^6.2.1",
    "webview_flutter": "^4.4.2",
    "camera": "^0.10.5+5",
    "geolocator": "^10.1.0",
    "permission_handler": "^11.1.0",
    "flutter_local_notifications": "^16.3.2",
    "connectivity_plus": "^5.0.1",
    "device_info_plus": "^9.1.1",
    "package_info_plus": "^4.2.0",
    "share_plus": "^7.2.1",
    "cloud_firestore": "^4.13.3",
    "firebase_auth": "^4.15.0",
    "firebase_core": "^2.24.0",
    "firebase_storage": "^11.6.0",
    "firebase_analytics": "^10.7.0",
    "firebase_messaging": "^14.7.6",
}

_PACKAGE_NAME = re.compile(r"^[a-z][a-z0-9_]*$")

DEFAULT_PUBSPEC = """\
name: {project_name}
description: Flutter app generated by Fluttery

publish_to: 'none'

version: 1.0.0+1

environment:
  sdk: '>=3.1.0 <4.0.0'

dependencies:
  flutter:
    sdk: flutter
  cupertino_icons: ^1.0.2

dev_dependencies:
  flutter_test:
    sdk: flutter

flutter:
  uses-material-design: true
"""

DEFAULT_MAIN = """\
import 'package:flutter/material.dart';

void main() {
  runApp(const MyApp());
}

class MyApp extends StatelessWidget {
  const MyApp({super.key});

  @override
  Widget build(BuildContext context) {
    return const MaterialApp(
      title: 'Fluttery',
      home: Scaffold(
        body: Center(child: Text('Describe the app you want to build.')),
      ),
    );
  }
}
"""


def project_name_for(session_id: str) -> str:
    return "flutter_app_" + re.sub(r"[^a-z0-9_]", "_", session_id.lower())


def dependency_name(raw: str) -> str:
    return raw.split(":", 1)[0].strip().lower()


class WorkspaceManager:
    """Owns the on-disk project directory of every session."""

    def __init__(
        self,
        root: Path,
        *,
        scaffold_command: str = "",
        dependency_command: str = "",
        command_timeout: float = 30.0,
    ) -> None:
        self.root = root
        self.scaffold_command = scaffold_command
        self.dependency_command = dependency_command
        self.command_timeout = command_timeout

    def path_for(self, session_id: str) -> Path:
        return self.root / session_id

    async def provision(self, session_id: str) -> Path:
        workspace = self.path_for(session_id)
        if workspace.exists():
            raise WorkspaceError(f"Workspace already exists: {workspace}")
        workspace.mkdir(parents=True)
        project_name = project_name_for(session_id)
        if self.scaffold_command.strip():
            command = self.scaffold_command.format(project_name=project_name)
            await self._run(command, workspace)
        else:
            (workspace / MANIFEST).write_text(
                DEFAULT_PUBSPEC.format(project_name=project_name), encoding="utf-8"
            )
            self.write_files(workspace, [GeneratedFile(str(ENTRYPOINT), DEFAULT_MAIN)])
        logger.info("Provisioned workspace %s", workspace)
        return workspace

    def write_files(self, workspace: Path, files: Iterable[GeneratedFile]) -> list[str]:
        root = workspace.resolve()
        written: list[str] = []
        for generated in files:
            relative = Path(generated.path)
            if relative.is_absolute():
                raise WorkspaceError(f"Refusing to write absolute path: {generated.path}")
            target = (root / relative).resolve()
            if not target.is_relative_to(root):
                raise WorkspaceError(f"Refusing to write outside the workspace: {generated.path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(generated.content, encoding="utf-8")
            written.append(relative.as_posix())
        return written

    def add_dependencies(self, workspace: Path, names: Iterable[str]) -> list[str]:
        manifest = workspace / MANIFEST
        if not manifest.exists():
            raise WorkspaceError(f"Dependency manifest not found: {manifest}")
        lines = manifest.read_text(encoding="utf-8").splitlines()
        try:
            header = lines.index("dependencies:")
        except ValueError as exc:
            raise WorkspaceError(f"No dependencies section in {manifest}") from exc

        end = header + 1
        while end < len(lines) and (not lines[end].strip() or lines[end].startswith(" ")):
            end += 1
        present = {
            line.strip().split(":", 1)[0]
            for line in lines[header + 1 : end]
            if line.startswith("  ") and not line.startswith("   ")
        }

        added: list[str] = []
        for raw in names:
            name = dependency_name(raw)
            if not _PACKAGE_NAME.match(name) or name in present or name in added:
                continue
            added.append(name)
        if not added:
            return []

        entries = [f"  {name}: {KNOWN_VERSIONS.get(name, DEFAULT_VERSION)}" for name in added]
        lines[header + 1 : header + 1] = entries
        manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logger.info("Added dependencies to %s: %s", manifest, ", ".join(added))
        return added

    async def resolve_dependencies(self, workspace: Path) -> bool:
        if not self.dependency_command.strip():
            return True
        try:
            await self._run(self.dependency_command, workspace)
        except WorkspaceError as exc:
            logger.warning("Dependency resolution failed in %s: %s", workspace, exc)
            return False
        return True

    def read_entrypoint(self, workspace: Path) -> str:
        entrypoint = workspace / ENTRYPOINT
        if not entrypoint.exists():
            return ""
        return entrypoint.read_text(encoding="utf-8")

    def remove(self, workspace: Path) -> None:
        if workspace.exists():
            shutil.rmtree(workspace)

    async def _run(self, command: str, cwd: Path) -> None:
        args = shlex.split(command)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise WorkspaceError(f"Could not run {args[0]}: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise WorkspaceError(
                f"'{command}' timed out after {self.command_timeout:.1f}s"
            ) from exc
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise WorkspaceError(
                f"'{command}' failed with exit code {process.returncode}: {message[:400]}"
            )
