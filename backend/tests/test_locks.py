"""
Tests for KeyedLock — per-entity single-writer regions.
"""

import asyncio

import pytest

from core.locks import KeyedLock


@pytest.mark.asyncio
class TestKeyedLock:
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        events: list[str] = []

        async def writer(name: str):
            async with locks("model-name:M"):
                events.append(f"{name}:enter")
                await asyncio.sleep(0.01)
                events.append(f"{name}:exit")

        await asyncio.gather(writer("a"), writer("b"))
        assert events in (
            ["a:enter", "a:exit", "b:enter", "b:exit"],
            ["b:enter", "b:exit", "a:enter", "a:exit"],
        )

    async def test_different_keys_overlap(self):
        locks = KeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks("a"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await inside.wait()
        async with locks("b"):
            assert locks.locked("a")
            assert locks.locked("b")
        release.set()
        await task

    async def test_idle_locks_are_dropped(self):
        locks = KeyedLock()
        async with locks("x"):
            assert len(locks) == 1
            assert locks.locked("x")
        assert len(locks) == 0
        assert not locks.locked("x")

    async def test_lock_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks("x"):
                raise RuntimeError("boom")
        assert not locks.locked("x")
