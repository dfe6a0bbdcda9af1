"""Settings for the Raspberry debugger.

Local state lives under the settings folder (``~/.raspberry`` unless
``RASPDEBUG_SETTINGS_DIR`` is set):

  - ``connections.json``: the persisted connection store
  - ``keys/``: SSH key pairs created for each connection

``RASPDEBUG_CATALOG`` selects a component catalog file with verified
checksums (see ``check-catalog --refresh``).

The remote directory layout below is a fixed contract shared with devices
provisioned by earlier releases and must not change.
"""

from __future__ import annotations

import os
from pathlib import Path

# ── Workstation ───────────────────────────────────────────────────

SETTINGS_DIR = Path(
    os.environ.get("RASPDEBUG_SETTINGS_DIR", str(Path.home() / ".raspberry"))
)
KEYS_DIR = SETTINGS_DIR / "keys"
CONNECTIONS_PATH = SETTINGS_DIR / "connections.json"

# Solution-relative file holding per-project settings (not source controlled)
PROJECT_SETTINGS_RELPATH = Path(".vs") / "raspberry-projects.json"

CONNECT_TIMEOUT = float(os.environ.get("RASPDEBUG_CONNECT_TIMEOUT", "15"))

# ── Downloads ─────────────────────────────────────────────────────

DOWNLOAD_ATTEMPTS = 3
DOWNLOAD_RETRY_DELAY = float(os.environ.get("RASPDEBUG_DOWNLOAD_RETRY_DELAY", "5"))
DOWNLOAD_TIMEOUT = 600.0

# Verified catalog replacing the embedded one
CATALOG_PATH = Path(os.environ["RASPDEBUG_CATALOG"]) if os.environ.get("RASPDEBUG_CATALOG") else None

# Published SDK checksums, per ``major.minor`` channel
RELEASE_METADATA_URL = (
    "https://dotnetcli.blob.core.windows.net/dotnet/release-metadata/{channel}/releases.json"
)

# ── Remote layout ─────────────────────────────────────────────────

REMOTE_DOTNET_FOLDER = "/lib/dotnet"
REMOTE_DOTNET_COMMAND = REMOTE_DOTNET_FOLDER + "/dotnet"
REMOTE_SDK_FOLDER = REMOTE_DOTNET_FOLDER + "/sdk"
REMOTE_DEBUGGER_FOLDER = REMOTE_DOTNET_FOLDER + "/vsdbg"
REMOTE_DEBUGGER_PATH = REMOTE_DEBUGGER_FOLDER + "/vsdbg"
REMOTE_PROFILE = "/etc/profile"

DOTNET_ROOT_VARIABLE = "DOTNET_ROOT"
WEB_URLS_VARIABLE = "ASPNETCORE_URLS"

DEFAULT_TARGET_GROUP = "gpio"

ISSUES_URL = "https://github.com/nforgeio/RaspberryDebugger/issues"


def remote_debug_binary_root(username: str) -> str:
    """Folder under the user's home that holds deployed programs."""
    if not username:
        raise ValueError("username is required")
    return f"/home/{username}/vsdbg"


def remote_program_folder(username: str, assembly_name: str) -> str:
    """Per-program deployment folder, keyed by the output assembly name."""
    return f"{remote_debug_binary_root(username)}/{assembly_name}"


def ensure_settings_dirs() -> None:
    """Create the local settings and keys folders if missing."""
    KEYS_DIR.mkdir(parents=True, exist_ok=True)
