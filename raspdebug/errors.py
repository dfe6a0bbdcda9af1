"""Exception taxonomy for the Raspberry debugger.

Every failure the orchestrator can report derives from
:class:`RaspDebugError`. Errors with several causes carry a ``kind`` so
callers can branch without parsing messages.
"""

from __future__ import annotations

from enum import Enum


class RaspDebugError(Exception):
    """Base error for all deployment failures."""


# ── Connection ────────────────────────────────────────────────────


class ConnectionFailure(str, Enum):
    DNS_FAILURE = "dns-failure"
    AUTH_FAILURE = "auth-failure"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    COMMAND_FAILED = "command-failed"


class RemoteConnectionError(RaspDebugError):
    """Raised when a session to the device cannot be opened or used."""

    def __init__(self, name: str | None, error: str | None, kind: ConnectionFailure) -> None:
        self.name = name or "????"
        self.kind = kind
        super().__init__(f"[{self.name}]: {error or 'unspecified error'}")


# ── Device / catalog ──────────────────────────────────────────────


class UnsupportedBoardError(RaspDebugError):
    """Raised when the device's board model is not on the allow-list."""

    def __init__(self, model: str) -> None:
        self.model = model
        super().__init__(
            f"Your [{model or 'unknown board'}] is not supported. "
            ".NET requires a Raspberry Pi 3, 4, Compute Module 4 or Pi Zero 2."
        )


class UnsupportedArchitectureError(RaspDebugError):
    """Raised when the device processor is neither 32-bit nor 64-bit ARM."""

    def __init__(self, processor: str) -> None:
        self.processor = processor
        super().__init__(f"Unsupported processor architecture: [{processor}]")


class UnsupportedVersionError(RaspDebugError):
    """Raised when no usable catalog item matches the requested version."""

    def __init__(self, version: str | None, architecture: str, kind: str = "sdk") -> None:
        self.version = version
        self.architecture = architecture
        self.kind = kind
        super().__init__(
            f"No usable {kind} for version [{version or 'any'}] on [{architecture}]"
        )


# ── Installation ──────────────────────────────────────────────────


class InstallFailure(str, Enum):
    CHECKSUM_MISMATCH = "checksum-mismatch"
    DOWNLOAD_FAILURE = "download-failure"
    RETRIES_EXHAUSTED = "retries-exhausted"
    REMOTE_FAILURE = "remote-failure"


class InstallError(RaspDebugError):
    """Raised when a component cannot be installed on the device.

    ``last_failure`` holds the reason of the final attempt when the
    error reports exhausted retries.
    """

    def __init__(
        self,
        message: str,
        kind: InstallFailure,
        last_failure: InstallFailure | None = None,
    ) -> None:
        self.kind = kind
        self.last_failure = last_failure
        super().__init__(message)


# ── Catalog integrity (offline checker only) ──────────────────────


class CatalogProblem(str, Enum):
    DUPLICATE_LINK = "duplicate-link"
    DUPLICATE_COMPONENT = "duplicate-component"
    ARCHITECTURE_LINK_MISMATCH = "architecture-link-mismatch"
    LINK_NAME_MISMATCH = "link-name-mismatch"
    INVALID_CHECKSUM = "invalid-checksum"


class CatalogIntegrityError(RaspDebugError):
    """A single integrity problem found in the component catalog."""

    def __init__(self, message: str, kind: CatalogProblem) -> None:
        self.kind = kind
        super().__init__(message)


# ── Deployment ────────────────────────────────────────────────────


class DeploymentFailure(str, Enum):
    NOT_COMPATIBLE = "not-compatible"
    NO_CONNECTION = "no-connection"
    PUBLISH_FAILURE = "publish-failure"
    TRANSFER_FAILURE = "transfer-failure"
    LAUNCH_FAILURE = "launch-failure"


class DeploymentError(RaspDebugError):
    """Raised when the project cannot be deployed or started."""

    def __init__(self, message: str, kind: DeploymentFailure) -> None:
        self.kind = kind
        super().__init__(message)
