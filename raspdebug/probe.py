"""Read-only inspection of a connected Raspberry.

Runs one small command per fact so each can be answered independently:

  - Processor (``uname -m``) and the derived architecture
  - PATH, presence of ``unzip`` and of the remote debugger
  - Installed .NET SDKs (folders under ``/lib/dotnet/sdk``)
  - Board model and revision, checked against the supported boards

Probing never changes the device; installation belongs to the Installer.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from importlib import resources

from raspdebug import config
from raspdebug.catalog import (
    Architecture,
    Catalog,
    CatalogItem,
    ComponentKind,
    architecture_label,
    classify_processor,
    load_catalog,
    parse_version,
)
from raspdebug.connection import SSHConnection
from raspdebug.errors import UnsupportedArchitectureError

logger = logging.getLogger(__name__)

# Boards able to run .NET; older models (Pi 1/2, Zero W) lack ARMv7+ support
SUPPORTED_BOARD_PREFIXES = (
    "Raspberry Pi 3 Model",
    "Raspberry Pi 4 Model",
    "Raspberry Pi Compute Module 4",
    "Raspberry Pi Zero 2",
)


def is_supported_board(model: str) -> bool:
    return bool(model) and model.startswith(SUPPORTED_BOARD_PREFIXES)


# ── Data models ───────────────────────────────────────────────────


@dataclass(frozen=True)
class Component:
    """An installed component."""

    name: str
    version: str
    architecture: Architecture

    def __str__(self) -> str:
        return f"{self.name}/{architecture_label(self.architecture)}"


@dataclass(frozen=True)
class Status:
    """Snapshot of a device's state; a new one replaces it after changes."""

    processor: str = ""
    path: str = ""
    has_unzip: bool = False
    has_debugger: bool = False
    installed_components: tuple[Component, ...] = ()
    model: str = ""
    revision: str = ""
    architecture: Architecture = Architecture.UNKNOWN
    board_supported: bool = False

    def require_architecture(self) -> Architecture:
        """Return the architecture, raising if the processor is not ARM."""
        if self.architecture == Architecture.UNKNOWN:
            raise UnsupportedArchitectureError(self.processor or "unknown")
        return self.architecture

    def is_installed(self, item: CatalogItem) -> bool:
        if item.kind == ComponentKind.DEBUGGER:
            return self.has_debugger
        return any(
            c.name == item.name and c.architecture == item.architecture
            for c in self.installed_components
        )

    def installed_sdk(self, requested: str | None) -> Component | None:
        """The newest installed SDK matching a ``major.minor`` request."""
        if not requested:
            return None
        prefix = f"{requested}."
        matches = [
            c for c in self.installed_components
            if c.architecture == self.architecture
            and (c.version == requested or c.version.startswith(prefix))
        ]
        return max(matches, key=lambda c: parse_version(c.version), default=None)

    def with_installed(self, item: CatalogItem) -> Status:
        """A copy of this status that includes ``item``."""
        if item.kind == ComponentKind.DEBUGGER:
            return dataclasses.replace(self, has_debugger=True)
        component = Component(item.name, item.version, item.architecture)
        return dataclasses.replace(
            self, installed_components=self.installed_components + (component,)
        )

    def with_unzip(self) -> Status:
        return dataclasses.replace(self, has_unzip=True)


# ── Board catalog ─────────────────────────────────────────────────


@dataclass(frozen=True)
class RaspberryModel:
    code: str
    model: str
    revision: str
    ram: str
    manufacturer: str


_board_catalog: dict[str, RaspberryModel] | None = None


def load_board_catalog() -> dict[str, RaspberryModel]:
    """Revision code (lower-case hex) to board model, loaded once."""
    global _board_catalog
    if _board_catalog is None:
        text = resources.files("raspdebug").joinpath("data/raspberry-catalog.json").read_text(
            encoding="utf-8"
        )
        models = [RaspberryModel(**m) for m in json.loads(text)["models"]]
        _board_catalog = {m.code.lower(): m for m in models}
    return _board_catalog


def lookup_revision(revision: str) -> RaspberryModel | None:
    return load_board_catalog().get(revision.strip().lower())


# ── Probe ─────────────────────────────────────────────────────────


class DeviceProbe:
    """Inspect a Raspberry over an open session."""

    def __init__(self, catalog: Catalog | None = None) -> None:
        self.catalog = catalog or load_catalog()

    async def probe(self, ssh: SSHConnection) -> Status:
        """Run every check and return a fresh :class:`Status`."""
        logger.info("[%s]: Checking Raspberry status", ssh.name)

        result = await ssh.run("uname -m")
        processor = result.stdout.strip()
        architecture = classify_processor(processor)

        result = await ssh.run("echo $PATH")
        path = result.stdout.strip()

        result = await ssh.run("which unzip")
        has_unzip = result.returncode == 0 and bool(result.stdout.strip())

        result = await ssh.run(f"test -f {config.REMOTE_DEBUGGER_PATH} && echo yes || echo no")
        has_debugger = result.stdout.strip() == "yes"

        result = await ssh.run(f"ls -m {config.REMOTE_SDK_FOLDER} 2>/dev/null || true")
        installed = self._match_sdks(result.stdout, architecture)

        result = await ssh.run("cat /proc/device-tree/model 2>/dev/null || true")
        model = result.stdout.strip().rstrip("\x00")

        result = await ssh.run("grep -m1 '^Revision' /proc/cpuinfo | cut -d: -f2")
        revision = result.stdout.strip()

        if not model and revision:
            known = lookup_revision(revision)
            if known is not None:
                model = known.model

        supported = is_supported_board(model)
        if not supported:
            logger.warning("[%s]: Unsupported board [%s] (revision %s)", ssh.name, model, revision)
        if architecture == Architecture.UNKNOWN:
            logger.warning("[%s]: Unsupported processor [%s]", ssh.name, processor)

        return Status(
            processor=processor,
            path=path,
            has_unzip=has_unzip,
            has_debugger=has_debugger,
            installed_components=tuple(installed),
            model=model,
            revision=revision,
            architecture=architecture,
            board_supported=supported,
        )

    def _match_sdks(self, listing: str, architecture: Architecture) -> list[Component]:
        """Map SDK folder names from ``ls -m`` output onto catalog items."""
        components = []
        for name in (n.strip() for n in listing.replace("\n", "").split(",")):
            if not name:
                continue
            item = self.catalog.find(name, architecture)
            if item is None or item.kind != ComponentKind.SDK:
                logger.warning(
                    "Unknown SDK [%s] for [%s] installed on the Raspberry",
                    name, architecture_label(architecture),
                )
                continue
            components.append(Component(item.name, item.version, item.architecture))
        return components
