"""Install .NET SDKs and the debugger on a Raspberry.

Archives are downloaded on the workstation, verified against the catalog's
SHA-512 checksum, uploaded to the device and unpacked under ``/lib/dotnet``.
Installation is idempotent: a component the Status already reports is never
downloaded again.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import asyncssh
import httpx

from raspdebug import config
from raspdebug.catalog import CatalogItem, ComponentKind, architecture_label, is_sha512
from raspdebug.connection import SSHConnection
from raspdebug.errors import InstallError, InstallFailure, RemoteConnectionError
from raspdebug.probe import Status
from raspdebug.progress import ProgressCoordinator

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


class InstallOutcome(Enum):
    ALREADY_INSTALLED = "already-installed"
    INSTALLED = "installed"


@dataclass(frozen=True)
class InstallResult:
    outcome: InstallOutcome
    item: CatalogItem
    status: Status  # superseding status; unchanged when already installed


class Installer:
    """Reconciles a device Status against catalog items."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        attempts: int = config.DOWNLOAD_ATTEMPTS,
        retry_delay: float = config.DOWNLOAD_RETRY_DELAY,
        progress: ProgressCoordinator | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.progress = progress or ProgressCoordinator()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=config.DOWNLOAD_TIMEOUT, follow_redirects=True
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Installer:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def ensure_installed(
        self, session: SSHConnection, status: Status, item: CatalogItem
    ) -> InstallResult:
        """Install ``item`` unless ``status`` shows it is already present."""
        if status.is_installed(item):
            logger.info("[%s]: %s [%s] is already installed", session.name, item.kind.value, item.name)
            return InstallResult(InstallOutcome.ALREADY_INSTALLED, item, status)

        architecture = status.require_architecture()
        if item.architecture != architecture:
            raise ValueError(
                f"Cannot install a {architecture_label(item.architecture)} build on a "
                f"{architecture_label(architecture)} device"
            )

        label = "debugger" if item.kind == ComponentKind.DEBUGGER else "SDK"
        async with self.progress.operation(f"Download and install {label} [{item.name}]..."):
            archive = await self.download_verified(item)
            try:
                await self._install_archive(session, item, archive)
            finally:
                await asyncio.to_thread(archive.unlink, True)

            if item.kind == ComponentKind.SDK:
                await self._configure_profile(session)

        logger.info("[%s]: Installed %s [%s] v%s", session.name, label, item.name, item.version)
        return InstallResult(InstallOutcome.INSTALLED, item, status.with_installed(item))

    async def ensure_unzip(self, session: SSHConnection, status: Status) -> Status:
        """Install ``unzip`` (needed to transfer programs) when missing."""
        if status.has_unzip:
            return status

        async with self.progress.operation("Installing unzip..."):
            result = await session.sudo("apt-get update && apt-get install -yq unzip")
        if result.returncode != 0:
            raise InstallError(
                f"[{session.name}]: Cannot install unzip: {result.all_text}",
                InstallFailure.REMOTE_FAILURE,
            )
        return status.with_unzip()

    # ------------------------------------------------------------------ #
    # Download
    # ------------------------------------------------------------------ #

    async def download_verified(self, item: CatalogItem) -> Path:
        """Download ``item`` until its SHA-512 matches, up to ``attempts`` times."""
        if not is_sha512(item.checksum):
            raise InstallError(
                f"[{item.name}/{architecture_label(item.architecture)}] has no verified checksum",
                InstallFailure.CHECKSUM_MISMATCH,
            )
        last_failure = InstallFailure.DOWNLOAD_FAILURE

        for attempt in range(1, self.attempts + 1):
            fd, name = tempfile.mkstemp(suffix=".tar.gz", prefix="raspdebug-")
            os.close(fd)
            path = Path(name)
            try:
                digest = await self._download_once(item.link, path)
            except httpx.HTTPError as exc:
                logger.warning(
                    "Download of [%s] failed (attempt %d/%d): %s",
                    item.link, attempt, self.attempts, exc,
                )
                last_failure = InstallFailure.DOWNLOAD_FAILURE
            except BaseException:
                path.unlink(missing_ok=True)
                raise
            else:
                if digest.lower() == item.checksum.lower():
                    return path
                logger.warning(
                    "Checksum mismatch for [%s] (attempt %d/%d)",
                    item.link, attempt, self.attempts,
                )
                last_failure = InstallFailure.CHECKSUM_MISMATCH

            await asyncio.to_thread(path.unlink, True)
            if attempt < self.attempts:
                await asyncio.sleep(self.retry_delay)

        raise InstallError(
            f"Cannot download [{item.name}/{architecture_label(item.architecture)}] "
            f"after {self.attempts} attempts ({last_failure.value})",
            InstallFailure.RETRIES_EXHAUSTED,
            last_failure=last_failure,
        )

    async def _download_once(self, url: str, dest: Path) -> str:
        """Stream ``url`` into ``dest`` and return the SHA-512 hex digest."""
        hasher = hashlib.sha512()
        client = self._get_client()
        with open(dest, "wb") as f:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    await asyncio.to_thread(_consume, f, hasher, chunk)
        return hasher.hexdigest()

    # ------------------------------------------------------------------ #
    # Remote
    # ------------------------------------------------------------------ #

    async def _install_archive(self, session: SSHConnection, item: CatalogItem, archive: Path) -> None:
        label = architecture_label(item.architecture).lower()
        remote_archive = f"/tmp/{item.name}-{label}.tar.gz"
        if item.kind == ComponentKind.DEBUGGER:
            target = config.REMOTE_DEBUGGER_FOLDER
        else:
            target = config.REMOTE_DOTNET_FOLDER

        try:
            await session.upload(archive, remote_archive)
        except (RemoteConnectionError, OSError, asyncssh.Error) as exc:
            raise InstallError(
                f"[{session.name}]: Cannot upload [{item.name}]: {exc}",
                InstallFailure.REMOTE_FAILURE,
            ) from exc

        script = (
            f"set -e\n"
            f"mkdir -p {target}\n"
            f"tar -zxf {remote_archive} -C {target}\n"
            f"rm -f {remote_archive}\n"
        )
        if item.kind == ComponentKind.DEBUGGER:
            script += f"chmod 755 {config.REMOTE_DEBUGGER_PATH}\n"

        result = await session.sudo(script)
        if result.returncode != 0:
            raise InstallError(
                f"[{session.name}]: Cannot install [{item.name}]: {result.all_text}",
                InstallFailure.REMOTE_FAILURE,
            )

    async def _configure_profile(self, session: SSHConnection) -> None:
        """Export DOTNET_ROOT and extend PATH for login shells."""
        root = config.REMOTE_DOTNET_FOLDER
        variable = config.DOTNET_ROOT_VARIABLE
        profile = config.REMOTE_PROFILE
        script = (
            f"if ! grep --quiet '{variable}={root}' {profile} ; then\n"
            f"    echo 'export {variable}={root}' >> {profile}\n"
            f"    echo 'export PATH=$PATH:{root}' >> {profile}\n"
            f"fi\n"
        )
        result = await session.sudo(script)
        if result.returncode != 0:
            raise InstallError(
                f"[{session.name}]: Cannot update {profile}: {result.all_text}",
                InstallFailure.REMOTE_FAILURE,
            )


def _consume(f, hasher, chunk: bytes) -> None:
    hasher.update(chunk)
    f.write(chunk)
