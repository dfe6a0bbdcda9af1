"""Nested progress reporting.

Long operations nest: deploying connects, connecting creates keys, and so
on. The coordinator keeps a stack of descriptions so that only one progress
surface is ever open. The first operation opens it, inner operations replace
the displayed text, and leaving an operation restores the outer text. The
surface closes when the outermost operation finishes.

Usage::

    progress = ProgressCoordinator()
    async with progress.operation("Connecting..."):
        async with progress.operation("Creating SSH keys..."):
            ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Surfaces ──────────────────────────────────────────────────────


class ProgressSurface(Protocol):
    """Where progress is shown: a dialog, a status bar, the log."""

    def open(self, description: str) -> None:
        ...

    def update(self, description: str) -> None:
        ...

    def close(self) -> None:
        ...


class LoggingProgressSurface:
    """Reports progress through ``logging``."""

    def open(self, description: str) -> None:
        logger.info("%s", description)

    def update(self, description: str) -> None:
        logger.info("%s", description)

    def close(self) -> None:
        logger.debug("Progress closed")


@dataclass
class RecordingProgressSurface:
    """Keeps ``(event, description)`` tuples for inspection."""

    events: list[tuple[str, str | None]] = field(default_factory=list)

    def open(self, description: str) -> None:
        self.events.append(("open", description))

    def update(self, description: str) -> None:
        self.events.append(("update", description))

    def close(self) -> None:
        self.events.append(("close", None))

    @property
    def open_count(self) -> int:
        return sum(1 for event, _ in self.events if event == "open")

    @property
    def close_count(self) -> int:
        return sum(1 for event, _ in self.events if event == "close")


# ── Coordinator ───────────────────────────────────────────────────


class ProgressCoordinator:
    """Stack of operation descriptions driving a single progress surface.

    The coordinator binds to the thread (and event loop) of its first
    operation. Changing the stack from any other thread raises
    ``RuntimeError``; worker threads use :meth:`run_threadsafe`.
    """

    def __init__(self, surface: ProgressSurface | None = None) -> None:
        self.surface = surface or LoggingProgressSurface()
        self._stack: list[str] = []
        self._thread_id: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def displayed(self) -> str | None:
        """The description currently shown, or None when closed."""
        return self._stack[-1] if self._stack else None

    def bind(self) -> None:
        """Bind to the calling thread and its running event loop."""
        self._thread_id = threading.get_ident()
        self._loop = asyncio.get_running_loop()

    def _check_thread(self) -> None:
        current = threading.get_ident()
        if self._thread_id is None:
            self._thread_id = current
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                self._loop = None
        elif current != self._thread_id:
            raise RuntimeError("ProgressCoordinator used from a foreign thread")

    def push(self, description: str) -> None:
        self._check_thread()
        self._stack.append(description)
        if len(self._stack) == 1:
            self.surface.open(description)
        else:
            self.surface.update(description)

    def pop(self) -> None:
        self._check_thread()
        if not self._stack:
            raise RuntimeError("No progress operation to pop")
        self._stack.pop()
        if self._stack:
            self.surface.update(self._stack[-1])
        else:
            self.surface.close()

    @asynccontextmanager
    async def operation(self, description: str) -> AsyncIterator[None]:
        self.push(description)
        try:
            yield
        finally:
            self.pop()

    async def run(self, description: str, action: Callable[[], Awaitable[T]]) -> T:
        """Await ``action()`` while ``description`` is displayed."""
        async with self.operation(description):
            return await action()

    def run_threadsafe(self, description: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run :meth:`run` on the owning loop from a worker thread and wait."""
        if self._loop is None:
            raise RuntimeError("ProgressCoordinator is not bound to an event loop")
        future = asyncio.run_coroutine_threadsafe(self.run(description, action), self._loop)
        return future.result()
