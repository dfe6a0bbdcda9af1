"""Persisted connections and per-project deployment settings.

Both files are small JSON documents that are read and written whole.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from raspdebug import config
from raspdebug.connection import ConnectionInfo

logger = logging.getLogger(__name__)


# ── Connections ───────────────────────────────────────────────────


def _normalize(connections: list[ConnectionInfo]) -> list[ConnectionInfo]:
    """Sort by name and make sure exactly one connection is the default."""
    connections = sorted(connections, key=lambda c: c.sort_key)
    if not connections:
        return connections

    default = next((c for c in connections if c.is_default), connections[0])
    for conn in connections:
        conn.is_default = conn is default
    return connections


class ConnectionStore:
    """The workstation's list of known Raspberry connections."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else config.CONNECTIONS_PATH

    def read(self) -> list[ConnectionInfo]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("Corrupt connection store %s: %s", self.path, exc)
            raise
        return _normalize([ConnectionInfo.from_dict(d) for d in data])

    def write(self, connections: list[ConnectionInfo]) -> None:
        connections = _normalize(list(connections))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump([c.to_dict() for c in connections], f, indent=2)
        logger.debug("Saved %d connections to %s", len(connections), self.path)

    def find(self, name: str) -> ConnectionInfo | None:
        """Case-insensitive lookup by ``user@host``."""
        wanted = name.lower()
        return next((c for c in self.read() if c.sort_key == wanted), None)

    def get_default(self) -> ConnectionInfo | None:
        return next((c for c in self.read() if c.is_default), None)

    def add(self, info: ConnectionInfo) -> None:
        """Add a new connection; a default connection replaces the old default."""
        connections = self.read()
        if any(c.sort_key == info.sort_key for c in connections):
            raise ValueError(f"Connection [{info.name}] already exists.")
        if info.is_default:
            for conn in connections:
                conn.is_default = False
        connections.append(info)
        self.write(connections)

    def update(self, info: ConnectionInfo) -> None:
        """Replace the stored connection with the same name, or add it."""
        connections = [c for c in self.read() if c.sort_key != info.sort_key]
        if info.is_default:
            for conn in connections:
                conn.is_default = False
        connections.append(info)
        self.write(connections)

    def update_keys(self, info: ConnectionInfo) -> None:
        """Record newly created key paths for ``info``."""
        stored = self.find(info.name)
        if stored is None:
            self.update(info)
            return
        stored.private_key_path = info.private_key_path
        stored.public_key_path = info.public_key_path
        self.update(stored)

    def remove(self, name: str) -> bool:
        connections = self.read()
        remaining = [c for c in connections if c.sort_key != name.lower()]
        if len(remaining) == len(connections):
            return False
        self.write(remaining)
        return True


# ── Project settings ──────────────────────────────────────────────


@dataclass
class ProjectSettings:
    """Deployment settings for one project in a solution."""

    remote_debugging_enabled: bool = False
    target_connection_name: str | None = None  # None means the default connection
    target_group: str = config.DEFAULT_TARGET_GROUP
    use_web_server_proxy: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> ProjectSettings:
        return cls(
            remote_debugging_enabled=bool(data.get("remoteDebuggingEnabled", False)),
            target_connection_name=data.get("targetConnectionName"),
            target_group=data.get("targetGroup") or config.DEFAULT_TARGET_GROUP,
            use_web_server_proxy=bool(data.get("useWebServerProxy", False)),
        )

    def to_dict(self) -> dict:
        return {
            "remoteDebuggingEnabled": self.remote_debugging_enabled,
            "targetConnectionName": self.target_connection_name,
            "targetGroup": self.target_group,
            "useWebServerProxy": self.use_web_server_proxy,
        }


class ProjectSettingsStore:
    """Settings for every project in a solution, kept beside the solution."""

    def __init__(self, solution_dir: str | Path) -> None:
        self.path = Path(solution_dir) / config.PROJECT_SETTINGS_RELPATH
        self._settings: dict[str, ProjectSettings] = {}
        if self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._settings = {k: ProjectSettings.from_dict(v) for k, v in data.items()}

    def __contains__(self, project_id: str) -> bool:
        return project_id in self._settings

    def get_or_create(self, project_id: str) -> ProjectSettings:
        """Return the project's settings, creating disabled defaults if new."""
        settings = self._settings.get(project_id)
        if settings is None:
            settings = ProjectSettings()
            self._settings[project_id] = settings
        return settings

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({k: v.to_dict() for k, v in self._settings.items()}, f, indent=2)
