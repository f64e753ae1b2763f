"""Tests for per-key locks."""

from __future__ import annotations

import asyncio

import pytest

from trade_bot_detector.locks import KeyedLocks


class TestKeyedLocks:
    """Tests for KeyedLocks."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self) -> None:
        locks = KeyedLocks()
        active = 0
        peak = 0

        async def critical() -> None:
            nonlocal active, peak
            async with locks.hold("a"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(critical() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_independent(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("a"):
            assert locks.is_locked("a")
            assert not locks.is_locked("b")
            async with locks.hold("b"):
                assert len(locks) == 2

    @pytest.mark.asyncio
    async def test_idle_locks_dropped(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("a"):
            pass
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")
        assert not locks.is_locked("a")
        assert len(locks) == 0
