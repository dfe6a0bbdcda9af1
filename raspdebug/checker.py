"""Offline integrity checker for the component catalog.

Run before every release::

    python -m raspdebug check-catalog [--download] [PATH]
    python -m raspdebug check-catalog --refresh OUTPUT [PATH]

The static checks are cheap; ``--download`` also fetches every usable item
(newest first) and verifies its SHA-512 checksum. ``--refresh`` copies the
SHA-512 values Microsoft publishes in its release metadata into a new
catalog file and marks those SDK items usable.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path

import httpx

from raspdebug import config
from raspdebug.catalog import (
    Catalog,
    CatalogItem,
    ComponentKind,
    architecture_label,
    check_integrity,
    is_sha512,
    load_catalog,
    major_minor,
    runtime_identifier,
)
from raspdebug.errors import InstallError
from raspdebug.installer import Installer

logger = logging.getLogger(__name__)


async def verify_downloads(
    catalog: Catalog,
    client: httpx.AsyncClient | None = None,
    retry_delay: float = config.DOWNLOAD_RETRY_DELAY,
) -> list[str]:
    """Download every usable item and return a message for each bad checksum or link."""
    problems: list[str] = []
    items = sorted(catalog.usable_items(), key=lambda item: item.sort_key, reverse=True)

    async with Installer(client=client, retry_delay=retry_delay) as installer:
        for item in items:
            label = f"{item.name}/{architecture_label(item.architecture)}"
            logger.info("Checking [%s]: %s", label, item.link)
            try:
                path = await installer.download_verified(item)
            except InstallError as exc:
                problems.append(f"[{label}]: {exc}")
                continue
            await asyncio.to_thread(path.unlink, True)

    return problems


# ── Published checksums ───────────────────────────────────────────


def _published_hash(releases: dict, item: CatalogItem) -> str | None:
    """SHA-512 listed in a channel's ``releases.json`` for ``item``."""
    rid = runtime_identifier(item.architecture)
    archive = item.link.rsplit("/", 1)[-1]
    for release in releases.get("releases", []):
        sdks = release.get("sdks") or ([release["sdk"]] if release.get("sdk") else [])
        for sdk in sdks:
            if sdk.get("version") != item.name:
                continue
            for f in sdk.get("files", []):
                url = f.get("url", "")
                if f.get("rid") == rid and url.endswith(".tar.gz"):
                    if url.rsplit("/", 1)[-1] != archive:
                        logger.warning("[%s]: published archive is [%s]", item.link, url)
                        return None
                    return f.get("hash")
    return None


async def refresh_checksums(
    catalog: Catalog,
    client: httpx.AsyncClient | None = None,
) -> tuple[Catalog, list[str]]:
    """Return a copy of ``catalog`` carrying the published SDK checksums.

    Items found in the release metadata get its checksum and become usable;
    the messages report every item left unverified or changed.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=config.DOWNLOAD_TIMEOUT, follow_redirects=True)
    channels: dict[str, dict] = {}
    messages: list[str] = []
    items: list[CatalogItem] = []

    try:
        for item in catalog.items:
            label = f"{item.name}/{architecture_label(item.architecture)}"
            if item.kind != ComponentKind.SDK:
                messages.append(f"[{label}]: no published checksum; verify it by hand")
                items.append(item)
                continue

            channel = major_minor(item.version)
            if channel not in channels:
                url = config.RELEASE_METADATA_URL.format(channel=channel)
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                    channels[channel] = response.json()
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("Cannot read release metadata [%s]: %s", url, exc)
                    channels[channel] = {}

            published = _published_hash(channels[channel], item)
            if not published or not is_sha512(published):
                messages.append(f"[{label}]: not found in the {channel} release metadata")
                items.append(item)
                continue

            published = published.lower()
            if item.checksum and item.checksum.lower() != published:
                messages.append(f"[{label}]: checksum changed to the published value")
            items.append(dataclasses.replace(item, checksum=published, usable=True))
    finally:
        if owns_client:
            await client.aclose()

    return Catalog(items), messages


# ── Entry points ──────────────────────────────────────────────────


async def run_checks(path: str | Path | None = None, download: bool = False) -> list[str]:
    catalog = Catalog.load(path) if path else load_catalog()
    problems = [str(p) for p in check_integrity(catalog)]
    if download and not problems:
        problems += await verify_downloads(catalog)
    return problems


def run_checker(path: str | Path | None = None, download: bool = False) -> int:
    """Print every catalog problem; returns the process exit status."""
    problems = asyncio.run(run_checks(path, download))
    for problem in problems:
        print(f"ERROR: {problem}")
    if problems:
        print(f"\n{len(problems)} problem(s) found.")
        return 1
    print("Catalog is OK.")
    return 0


def run_refresh(output: str | Path, path: str | Path | None = None) -> int:
    """Write a catalog with published checksums to ``output``."""
    catalog = Catalog.load(path) if path else load_catalog()
    refreshed, messages = asyncio.run(refresh_checksums(catalog))
    for message in messages:
        print(f"WARNING: {message}")
    refreshed.save(output)
    usable = len(refreshed.usable_items())
    print(f"Wrote [{output}]: {usable} of {len(refreshed.items)} item(s) usable.")
    print("Confirm with 'check-catalog --download', then set RASPDEBUG_CATALOG to the file.")
    return 0 if usable else 1
