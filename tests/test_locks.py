"""Tests for the reference-counted keyed lock."""
import asyncio

import pytest

from core.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_entry_dropped_after_release(self):
        locks = KeyedLock()
        async with locks.hold("a"):
            assert "a" in locks
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_kept_while_waiters_queue(self):
        locks = KeyedLock()
        order = []

        async def worker(name: str, pause: float):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(pause)
                order.append(f"{name}-out")

        first = asyncio.create_task(worker("first", 0.05))
        await asyncio.sleep(0)
        second = asyncio.create_task(worker("second", 0))
        await asyncio.sleep(0.01)
        assert "k" in locks

        await asyncio.gather(first, second)
        assert order == ["first-in", "first-out", "second-in", "second-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_dropped_when_body_raises(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
