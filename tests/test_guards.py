"""
Unit tests for the dedup cache and the buy guard.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from fakes import FakeClock
from watchr.guards import BuyGuard, EventDedupCache, event_key, run_sweeper


class TestEventKey:
    """Dedup key construction."""

    def test_signature_key(self):
        assert event_key("sig1", "actor", "mint", "buy", 12.5) == "sig1:mint:buy"

    def test_synthesized_key_without_signature(self):
        assert event_key(None, "actor", "mint", "sell", 1.5) == "actor:mint:sell:1500000"

    def test_sides_are_distinct(self):
        assert event_key("sig1", "a", "m", "buy", 1) != event_key("sig1", "a", "m", "sell", 1)


class TestEventDedupCache:
    """TTL-bounded idempotency."""

    def test_second_delivery_is_duplicate(self):
        cache = EventDedupCache(ttl_seconds=300, clock=FakeClock())

        assert cache.check_and_mark("k") is False
        assert cache.check_and_mark("k") is True

    def test_replay_after_ttl_is_new(self):
        clock = FakeClock()
        cache = EventDedupCache(ttl_seconds=300, clock=clock)
        cache.check_and_mark("k")

        clock.advance(300)
        assert cache.check_and_mark("k") is True

        clock.advance(1)
        assert cache.check_and_mark("k") is False

    def test_sweep_evicts_only_expired(self):
        clock = FakeClock()
        cache = EventDedupCache(ttl_seconds=10, clock=clock)
        cache.check_and_mark("old")
        clock.advance(8)
        cache.check_and_mark("new")
        clock.advance(5)

        assert cache.sweep() == 1
        assert len(cache) == 1
        assert cache.is_duplicate("new")


class TestBuyGuard:
    """Per-mint fail-fast lock."""

    def test_second_acquire_fails_fast(self):
        guard = BuyGuard(clock=FakeClock())

        assert guard.acquire("mint", 180)
        assert not guard.acquire("mint", 180)
        assert guard.acquire("other", 180)

    def test_release_is_idempotent(self):
        guard = BuyGuard(clock=FakeClock())
        token = guard.acquire("mint", 180)

        assert guard.release("mint", token)
        assert not guard.release("mint", token)

        assert not guard.is_held("mint")
        assert guard.acquire("mint", 180)

    def test_expired_hold_is_free(self):
        clock = FakeClock()
        guard = BuyGuard(clock=clock)
        guard.acquire("mint", 180)

        clock.advance(180)

        assert not guard.is_held("mint")
        assert guard.acquire("mint", 180)

    def test_sweep_drops_expired(self):
        clock = FakeClock()
        guard = BuyGuard(clock=clock)
        guard.acquire("a", 10)
        guard.acquire("b", 100)
        clock.advance(50)

        assert guard.sweep() == 1
        assert guard.is_held("b")

    def test_stale_release_keeps_newer_hold(self):
        clock = FakeClock()
        guard = BuyGuard(clock=clock)
        slow = guard.acquire("mint", 180)
        clock.advance(200)
        fresh = guard.acquire("mint", 180)

        assert fresh and fresh != slow
        assert not guard.release("mint", slow)
        assert guard.is_held("mint")
        assert not guard.acquire("mint", 180)

        assert guard.release("mint", fresh)
        assert not guard.is_held("mint")


class TestSweeper:
    """Background sweep loop."""

    @pytest.mark.asyncio
    async def test_sweeper_keeps_running_after_error(self):
        failing = MagicMock()
        failing.sweep.side_effect = RuntimeError("boom")
        healthy = MagicMock()
        healthy.sweep.return_value = 0

        task = asyncio.create_task(run_sweeper(failing, healthy, interval_seconds=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert failing.sweep.call_count >= 2
        assert healthy.sweep.call_count >= 2
