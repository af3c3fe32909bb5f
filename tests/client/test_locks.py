"""Tests for per-key async locks."""

from __future__ import annotations

import asyncio

import pytest

from gitgallery.client.locks import KeyedLock


class TestKeyedLock:
    """Tests for KeyedLock."""

    @pytest.mark.asyncio
    async def test_same_key_is_exclusive(self) -> None:
        """Two holders of one key never overlap."""
        locks = KeyedLock()
        events: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("k"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self) -> None:
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("a"):
                await inside.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with locks.hold("b"):
            inside.set()
        await task

    @pytest.mark.asyncio
    async def test_released_on_exception(self) -> None:
        """The lock is released and the entry dropped when the body raises."""
        locks = KeyedLock()

        with pytest.raises(ValueError):
            async with locks.hold("k"):
                assert locks.locked("k")
                raise ValueError("boom")

        assert not locks.locked("k")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_cancellation(self) -> None:
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("k"):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(holder())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(locks) == 0
        async with locks.hold("k"):
            pass
