"""Tests for nested progress reporting."""

from __future__ import annotations

import asyncio

import pytest

from raspdebug.progress import ProgressCoordinator, RecordingProgressSurface


def _coordinator():
    surface = RecordingProgressSurface()
    return ProgressCoordinator(surface), surface


class TestProgressCoordinator:
    @pytest.mark.asyncio
    async def test_nested_operations_share_one_surface(self):
        progress, surface = _coordinator()

        async with progress.operation("Deploying"):
            async with progress.operation("Connecting"):
                async with progress.operation("Creating SSH keys"):
                    assert progress.depth == 3
                    assert progress.displayed == "Creating SSH keys"
                assert progress.displayed == "Connecting"
            assert progress.displayed == "Deploying"

        assert progress.displayed is None
        assert surface.open_count == 1
        assert surface.close_count == 1
        assert surface.events == [
            ("open", "Deploying"),
            ("update", "Connecting"),
            ("update", "Creating SSH keys"),
            ("update", "Connecting"),
            ("update", "Deploying"),
            ("close", None),
        ]

    @pytest.mark.asyncio
    async def test_exception_pops_every_frame(self):
        progress, surface = _coordinator()

        with pytest.raises(RuntimeError, match="boom"):
            async with progress.operation("outer"):
                async with progress.operation("inner"):
                    raise RuntimeError("boom")

        assert progress.depth == 0
        assert surface.close_count == 1

    @pytest.mark.asyncio
    async def test_new_root_reopens(self):
        progress, surface = _coordinator()

        async with progress.operation("first"):
            pass
        async with progress.operation("second"):
            pass

        assert surface.open_count == 2
        assert surface.close_count == 2

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        progress, surface = _coordinator()

        async def action():
            assert progress.displayed == "working"
            return 42

        assert await progress.run("working", action) == 42
        assert progress.depth == 0

    def test_pop_without_push(self):
        progress, _ = _coordinator()
        with pytest.raises(RuntimeError):
            progress.pop()


class TestThreadAffinity:
    @pytest.mark.asyncio
    async def test_foreign_thread_is_rejected(self):
        progress, _ = _coordinator()
        progress.bind()

        with pytest.raises(RuntimeError, match="foreign thread"):
            await asyncio.to_thread(progress.push, "from a worker")
        assert progress.depth == 0

    @pytest.mark.asyncio
    async def test_run_threadsafe_hands_off_to_loop(self):
        progress, surface = _coordinator()
        progress.bind()

        async def action():
            return progress.displayed

        result = await asyncio.to_thread(progress.run_threadsafe, "from a worker", action)

        assert result == "from a worker"
        assert surface.events == [("open", "from a worker"), ("close", None)]

    def test_run_threadsafe_requires_a_loop(self):
        progress, _ = _coordinator()

        async def action():
            return None

        with pytest.raises(RuntimeError):
            progress.run_threadsafe("x", action)
