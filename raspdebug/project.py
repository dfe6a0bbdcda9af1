"""Snapshot of the project being deployed.

The properties are read once, synchronously, from the ``.csproj`` file and
``Properties/launchSettings.json`` before any asynchronous work starts, so
the rest of a deployment sees a consistent view even if the project changes.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from raspdebug.catalog import Architecture, ComponentResolver, parse_version, runtime_identifier

logger = logging.getLogger(__name__)

DEFAULT_WEB_PORT = 5000
MINIMUM_SDK_VERSION = (3, 1)

_WEB_SDK = "Microsoft.NET.Sdk.Web"
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


# ── Command line ──────────────────────────────────────────────────


def parse_args(command_line: str | None) -> list[str]:
    """Split a command line, honouring single/double quotes and escapes.

    >>> parse_args('one "two three" \\'four\\'')
    ['one', 'two three', 'four']
    """
    text = (command_line or "").strip()
    args: list[str] = []
    pos = 0

    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue

        quote = text[pos] if text[pos] in "'\"" else None
        if quote:
            pos += 1

        start = pos
        while pos < len(text):
            ch = text[pos]
            if ch == "\\":
                if pos + 1 >= len(text):
                    raise ValueError(f"Invalid escape in: [{command_line}]")
                pos += 2
                continue
            if (quote and ch == quote) or (not quote and ch.isspace()):
                break
            pos += 1

        arg = text[start:pos]
        pos += 1  # skip the closing quote or delimiter
        if arg:
            args.append(_unescape(arg))

    return args


def _unescape(arg: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), arg)


# ── Framework monikers ────────────────────────────────────────────


def parse_target_framework(moniker: str) -> tuple[bool, str | None]:
    """Return ``(is_net_core, "major.minor")`` for a TargetFramework value.

    ``netcoreapp3.1`` and ``net5.0``+ are .NET Core; ``net48`` and
    ``netstandard2.0`` are not.
    """
    value = moniker.strip().lower()
    match = re.match(r"^netcoreapp(\d+)\.(\d+)", value)
    if match:
        return True, f"{match.group(1)}.{match.group(2)}"
    match = re.match(r"^net(\d+)\.(\d+)", value)
    if match and int(match.group(1)) >= 5:
        return True, f"{match.group(1)}.{match.group(2)}"
    return False, None


def _property(root: ET.Element, name: str) -> str | None:
    for group in root.iter():
        if _local(group.tag) != "PropertyGroup":
            continue
        for child in group:
            if _local(child.tag) == name and child.text and child.text.strip():
                return child.text.strip()
    return None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


# ── Project properties ────────────────────────────────────────────


@dataclass(frozen=True)
class ProjectProperties:
    name: str
    project_path: Path
    configuration: str = "Debug"
    framework: str | None = None  # "net6.0"
    is_net_core: bool = True
    sdk_version: str | None = None  # "6.0"
    output_folder: Path = Path("bin")
    assembly_name: str = ""
    is_executable: bool = True
    is_web_server: bool = False
    web_port: int = DEFAULT_WEB_PORT
    launch_browser: bool = False
    browser_uri: str = "/"
    command_line_args: tuple[str, ...] = ()
    environment_variables: dict[str, str] = field(default_factory=dict)
    is_supported_sdk_version: bool = True

    @classmethod
    def from_project_file(
        cls,
        path: str | Path,
        configuration: str = "Debug",
        resolver: ComponentResolver | None = None,
    ) -> ProjectProperties:
        """Read the project file and its launch settings."""
        path = Path(path)
        root = ET.parse(path).getroot()
        name = path.stem

        framework = _property(root, "TargetFramework")
        if framework is None:
            frameworks = _property(root, "TargetFrameworks")
            framework = frameworks.split(";")[0].strip() if frameworks else None
        is_net_core, sdk_version = parse_target_framework(framework or "")

        output_type = (_property(root, "OutputType") or "Library").lower()
        assembly_name = _property(root, "AssemblyName") or name
        is_web_server = root.get("Sdk", "").strip() == _WEB_SDK

        profile = _load_profile(path.parent / "Properties" / "launchSettings.json", name)
        args = parse_args(profile.get("commandLineArgs"))
        env = {k: str(v) for k, v in (profile.get("environmentVariables") or {}).items()}
        web_port = _web_port(profile.get("applicationUrl")) if is_web_server else DEFAULT_WEB_PORT
        launch_url = (profile.get("launchUrl") or "").strip().lstrip("/")

        resolver = resolver or ComponentResolver()
        supported = bool(sdk_version) and resolver.supports(sdk_version)

        output_folder = path.parent / "bin" / configuration
        if framework:
            output_folder = output_folder / framework

        return cls(
            name=name,
            project_path=path,
            configuration=configuration,
            framework=framework,
            is_net_core=is_net_core,
            sdk_version=sdk_version,
            output_folder=output_folder,
            assembly_name=assembly_name,
            is_executable=output_type == "exe",
            is_web_server=is_web_server,
            web_port=web_port,
            launch_browser=bool(profile.get("launchBrowser", False)),
            browser_uri=f"/{launch_url}",
            command_line_args=tuple(args),
            environment_variables=env,
            is_supported_sdk_version=supported,
        )

    @property
    def is_raspberry_compatible(self) -> bool:
        """Whether this project can run on a Raspberry at all."""
        if not (self.is_net_core and self.is_executable and self.sdk_version):
            return False
        if parse_version(self.sdk_version)[:2] < MINIMUM_SDK_VERSION:
            return False
        return self.is_supported_sdk_version and " " not in self.assembly_name

    def incompatibility_reason(self) -> str | None:
        if not self.is_net_core:
            return f"[{self.name}] does not target .NET Core."
        if not self.is_executable:
            return f"[{self.name}] is not an executable project."
        if not self.sdk_version or parse_version(self.sdk_version)[:2] < MINIMUM_SDK_VERSION:
            return f"[{self.name}] must target .NET Core 3.1 or later."
        if not self.is_supported_sdk_version:
            return f"No Raspberry SDK is available for .NET [{self.sdk_version}]."
        if " " in self.assembly_name:
            return f"Assembly name [{self.assembly_name}] must not contain spaces."
        return None

    def runtime_for(self, architecture: Architecture) -> str:
        return runtime_identifier(architecture)

    def publish_folder(self, architecture: Architecture) -> Path:
        return self.output_folder / self.runtime_for(architecture)


def _load_profile(path: Path, project_name: str) -> dict:
    """The launch profile named after the project, else the first Project profile."""
    if not path.exists():
        return {}
    try:
        settings = json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring invalid %s: %s", path, exc)
        return {}

    profiles = settings.get("profiles") or {}
    if project_name in profiles:
        return profiles[project_name]
    for profile in profiles.values():
        if profile.get("commandName") == "Project":
            return profile
    return {}


def _web_port(application_url: str | None) -> int:
    for url in (application_url or "").split(";"):
        parsed = urlparse(url.strip())
        if parsed.scheme == "http" and parsed.port:
            return parsed.port
    return DEFAULT_WEB_PORT
