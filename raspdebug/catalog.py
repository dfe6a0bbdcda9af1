"""Component catalog and version resolution.

The catalog is an embedded JSON registry of every installable component
(.NET SDKs and the ``vsdbg`` debugger) for 32-bit and 64-bit ARM. It is
loaded once per process and is never fetched over the network; the offline
checker (``python -m raspdebug check-catalog``) validates it before release.

Resolution picks the newest usable item for a ``major.minor`` request:

    resolver = ComponentResolver(load_catalog())
    item = resolver.resolve("6.0", Architecture.ARM64)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from pathlib import Path

from raspdebug import config
from raspdebug.errors import (
    CatalogIntegrityError,
    CatalogProblem,
    UnsupportedArchitectureError,
    UnsupportedVersionError,
)

logger = logging.getLogger(__name__)


# ── Architecture ──────────────────────────────────────────────────


class Architecture(Enum):
    ARM32 = "arm32"
    ARM64 = "arm64"
    UNKNOWN = "unknown"


# Canonical catalog labels and their inverse
_ARCH_TO_LABEL: dict[Architecture, str] = {
    Architecture.ARM32: "Arm32",
    Architecture.ARM64: "Arm64",
    Architecture.UNKNOWN: "Unknown",
}
_LABEL_TO_ARCH: dict[str, Architecture] = {v: k for k, v in _ARCH_TO_LABEL.items()}

# .NET runtime identifiers used by ``dotnet publish --runtime``
_ARCH_TO_RUNTIME: dict[Architecture, str] = {
    Architecture.ARM32: "linux-arm",
    Architecture.ARM64: "linux-arm64",
}

# Processor prefixes reported by ``uname -m``; the two sets are disjoint
BITNESS32_PREFIXES = ("armv3", "armv6", "armv7")
BITNESS64_PREFIXES = ("armv8", "aarch64", "arm64")

# Download links carry their architecture in the file name
_LINK_MARKERS: dict[Architecture, str] = {
    Architecture.ARM32: "linux-arm.",
    Architecture.ARM64: "linux-arm64.",
}


def architecture_label(arch: Architecture) -> str:
    """Catalog label for an architecture (``Arm32``/``Arm64``/``Unknown``)."""
    return _ARCH_TO_LABEL[arch]


def parse_architecture(label: str) -> Architecture:
    """Inverse of :func:`architecture_label`; case-insensitive."""
    for text, arch in _LABEL_TO_ARCH.items():
        if text.lower() == label.strip().lower():
            return arch
    raise ValueError(f"Unknown architecture label: {label!r}")


def runtime_identifier(arch: Architecture) -> str:
    """.NET runtime identifier for publishing to the given architecture."""
    if arch not in _ARCH_TO_RUNTIME:
        raise UnsupportedArchitectureError(architecture_label(arch))
    return _ARCH_TO_RUNTIME[arch]


def classify_processor(processor: str) -> Architecture:
    """Map a processor string like ``armv7l`` or ``aarch64`` to an architecture."""
    value = (processor or "").strip().lower()
    if value.startswith(BITNESS64_PREFIXES):
        return Architecture.ARM64
    if value.startswith(BITNESS32_PREFIXES):
        return Architecture.ARM32
    return Architecture.UNKNOWN


def link_marker(arch: Architecture) -> str | None:
    return _LINK_MARKERS.get(arch)


# ── Versions ──────────────────────────────────────────────────────


def parse_version(text: str) -> tuple[int, ...]:
    """Parse ``major.minor[.patch...]`` into a comparable tuple.

    Pre-release suffixes (``-preview.1``) are ignored for ordering.
    """
    core = text.strip().lstrip("v").split("-", 1)[0]
    parts = core.split(".")
    try:
        return tuple(int(p) for p in parts)
    except ValueError:
        raise ValueError(f"Invalid version: {text!r}") from None


def major_minor(text: str) -> str:
    """Reduce a version like ``6.0.25`` to ``6.0``."""
    parts = parse_version(text)
    if len(parts) < 2:
        return f"{parts[0]}.0"
    return f"{parts[0]}.{parts[1]}"


# ── Catalog ───────────────────────────────────────────────────────


class ComponentKind(str, Enum):
    SDK = "sdk"
    DEBUGGER = "debugger"


@dataclass(frozen=True)
class CatalogItem:
    """One downloadable component build."""

    name: str  # "6.0.101" for SDKs, "vsdbg" for the debugger
    version: str  # "6.0.1"
    architecture: Architecture
    link: str
    checksum: str  # SHA-512, hex
    kind: ComponentKind = ComponentKind.SDK
    usable: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> CatalogItem:
        return cls(
            name=data["name"],
            version=data["version"],
            architecture=parse_architecture(data["architecture"]),
            link=data["link"],
            checksum=data["checksum"],
            kind=ComponentKind(data.get("kind", "sdk")),
            usable=bool(data.get("usable", True)),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "architecture": architecture_label(self.architecture),
            "kind": self.kind.value,
            "link": self.link,
            "checksum": self.checksum,
            "usable": self.usable,
        }

    @property
    def sort_key(self) -> tuple:
        return (parse_version(self.version), self.name)


@dataclass
class Catalog:
    """The full registry, including items marked unusable."""

    items: list[CatalogItem] = field(default_factory=list)

    @classmethod
    def from_json(cls, text: str) -> Catalog:
        data = json.loads(text)
        return cls(items=[CatalogItem.from_dict(d) for d in data.get("items", [])])

    @classmethod
    def load(cls, path: str | Path) -> Catalog:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def save(self, path: str | Path) -> None:
        data = {"items": [item.to_dict() for item in self.items]}
        Path(path).write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def usable_items(self) -> list[CatalogItem]:
        return [item for item in self.items if item.usable]

    def find(self, name: str, architecture: Architecture) -> CatalogItem | None:
        """Find an item by its (name, architecture) identity."""
        for item in self.items:
            if item.name == name and item.architecture == architecture:
                return item
        return None


_cached_catalog: Catalog | None = None


def load_catalog() -> Catalog:
    """Return the active catalog, loading it on first use.

    ``RASPDEBUG_CATALOG`` points at a verified catalog file that replaces
    the embedded one.
    """
    global _cached_catalog
    if _cached_catalog is None:
        if config.CATALOG_PATH is not None:
            _cached_catalog = Catalog.load(config.CATALOG_PATH)
            logger.info("Using catalog [%s]", config.CATALOG_PATH)
        else:
            text = resources.files("raspdebug").joinpath("data/sdk-catalog.json").read_text(
                encoding="utf-8"
            )
            _cached_catalog = Catalog.from_json(text)
        usable = len(_cached_catalog.usable_items())
        logger.debug("Loaded %d catalog items (%d usable)", len(_cached_catalog.items), usable)
        if not usable:
            logger.warning(
                "No catalog item has a verified checksum; components cannot be installed. "
                "Run 'check-catalog --refresh' and set RASPDEBUG_CATALOG."
            )
    return _cached_catalog


# ── Resolution ────────────────────────────────────────────────────


class ComponentResolver:
    """Selects the best catalog entry for a requested version and architecture."""

    def __init__(self, catalog: Catalog | None = None) -> None:
        self.catalog = catalog or load_catalog()

    def candidates(
        self,
        requested: str | None,
        architecture: Architecture,
        kind: ComponentKind = ComponentKind.SDK,
    ) -> list[CatalogItem]:
        """Usable items matching kind, architecture and ``major.minor`` prefix."""
        prefix = f"{requested}." if requested else ""
        return [
            item for item in self.catalog.usable_items()
            if item.kind == kind
            and item.architecture == architecture
            and (not requested or item.version == requested or item.version.startswith(prefix))
        ]

    def resolve(
        self,
        requested: str | None,
        architecture: Architecture,
        kind: ComponentKind = ComponentKind.SDK,
    ) -> CatalogItem:
        """Return the highest matching version.

        ``requested`` is a ``major.minor`` string such as ``"6.0"``; ``None``
        accepts any version (used for the debugger).
        """
        if architecture == Architecture.UNKNOWN:
            raise UnsupportedArchitectureError(architecture_label(architecture))

        matches = self.candidates(requested, architecture, kind)
        if not matches:
            raise UnsupportedVersionError(requested, architecture_label(architecture), kind.value)

        best = max(matches, key=lambda item: item.sort_key)
        logger.debug(
            "Resolved %s [%s/%s] -> %s (v%s)",
            kind.value, requested or "any", architecture_label(architecture),
            best.name, best.version,
        )
        return best

    def supports(self, requested: str) -> bool:
        """Whether the catalog lists an ARM SDK for ``requested``.

        Unusable items count: a device may already have that SDK even when
        the catalog cannot install it.
        """
        prefix = f"{requested}."
        return any(
            item.kind == ComponentKind.SDK
            and item.architecture in (Architecture.ARM32, Architecture.ARM64)
            and (item.version == requested or item.version.startswith(prefix))
            for item in self.catalog.items
        )


# ── Integrity ─────────────────────────────────────────────────────


def check_integrity(catalog: Catalog) -> list[CatalogIntegrityError]:
    """Return every static integrity problem in ``catalog``.

    Checks unique links, unique (name, architecture) pairs, that each link
    mentions the item name, and that each link carries its own architecture
    marker and never the other one. Usable items need a SHA-512 checksum.
    """
    problems: list[CatalogIntegrityError] = []
    by_link: dict[str, CatalogItem] = {}
    by_identity: dict[tuple[str, Architecture], CatalogItem] = {}

    for item in catalog.items:
        label = f"{item.name}/{architecture_label(item.architecture)}"

        existing = by_link.get(item.link)
        if existing is not None:
            problems.append(CatalogIntegrityError(
                f"[{existing.name}/{architecture_label(existing.architecture)}] and "
                f"[{label}] have the same link: [{item.link}]",
                CatalogProblem.DUPLICATE_LINK,
            ))
        else:
            by_link[item.link] = item

        identity = (item.name, item.architecture)
        if identity in by_identity:
            problems.append(CatalogIntegrityError(
                f"[{label}] is listed multiple times.",
                CatalogProblem.DUPLICATE_COMPONENT,
            ))
        else:
            by_identity[identity] = item

        if item.name not in item.link:
            problems.append(CatalogIntegrityError(
                f"[{label}] link does not include the name: [{item.link}]",
                CatalogProblem.LINK_NAME_MISMATCH,
            ))

        problems.extend(_check_link_architecture(item, label))

        if item.usable and not is_sha512(item.checksum):
            problems.append(CatalogIntegrityError(
                f"[{label}] is usable but has no SHA-512 checksum.",
                CatalogProblem.INVALID_CHECKSUM,
            ))

    return problems


def is_sha512(value: str) -> bool:
    return len(value) == 128 and all(c in "0123456789abcdefABCDEF" for c in value)


def _check_link_architecture(item: CatalogItem, label: str) -> list[CatalogIntegrityError]:
    own = link_marker(item.architecture)
    if own is None:
        return [CatalogIntegrityError(
            f"[{label}] has no concrete architecture.",
            CatalogProblem.ARCHITECTURE_LINK_MISMATCH,
        )]

    problems = []
    if own not in item.link:
        problems.append(CatalogIntegrityError(
            f"[{label}] link does not reference a {architecture_label(item.architecture)} build.",
            CatalogProblem.ARCHITECTURE_LINK_MISMATCH,
        ))
    for arch, marker in _LINK_MARKERS.items():
        if arch != item.architecture and marker in item.link:
            problems.append(CatalogIntegrityError(
                f"[{label}] link references a {architecture_label(arch)} build.",
                CatalogProblem.ARCHITECTURE_LINK_MISMATCH,
            ))
    return problems
