"""
In-memory idempotency guards.

- EventDedupCache: the same upstream delivery, replayed within the TTL,
  is processed once.
- BuyGuard: one in-flight buy per mint; a second trigger is rejected,
  never queued.

Both are plain process-local mappings behind a small interface so they can
be swapped for a shared store if the process is ever scaled out.
"""

import asyncio
import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple
import structlog

logger = structlog.get_logger()


def event_key(
    signature: Optional[str],
    actor: str,
    mint: str,
    side: str,
    amount: float
) -> str:
    """Dedup key for one (event, mint, side); synthesized when there is no signature."""
    if signature:
        return f"{signature}:{mint}:{side}"
    return f"{actor}:{mint}:{side}:{round(amount * 1e6)}"


class EventDedupCache:
    """Key -> first-seen time, expiring after a fixed TTL."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def is_duplicate(self, key: str) -> bool:
        first_seen = self._seen.get(key)
        return first_seen is not None and self._clock() - first_seen <= self.ttl

    def check_and_mark(self, key: str) -> bool:
        """
        Record `key` and report whether it had already been seen.

        Returns:
            True if the key is a duplicate (caller should skip the event)
        """
        if self.is_duplicate(key):
            return True
        self._seen.pop(key, None)
        self._seen[key] = self._clock()
        return False

    def sweep(self) -> int:
        """Evict expired keys. Returns the number removed."""
        now = self._clock()
        removed = 0
        # Insertion order == first-seen order, so stop at the first live key
        while self._seen:
            key, first_seen = next(iter(self._seen.items()))
            if now - first_seen <= self.ttl:
                break
            del self._seen[key]
            removed += 1
        return removed


class BuyGuard:
    """
    Per-mint mutual exclusion with an explicit expiry.

    Each hold is identified by the token `acquire` returns; releasing with a
    stale token (the hold expired and was taken by someone else) is a no-op.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._locks: Dict[str, Tuple[float, str]] = {}  # mint -> (expires_at, token)

    def is_held(self, mint: str) -> bool:
        lock = self._locks.get(mint)
        return lock is not None and self._clock() < lock[0]

    def acquire(self, mint: str, duration_seconds: float) -> Optional[str]:
        """Take the lock for `mint`. Fails fast with None if it is already held."""
        if self.is_held(mint):
            return None
        token = uuid.uuid4().hex
        self._locks[mint] = (self._clock() + duration_seconds, token)
        return token

    def release(self, mint: str, token: str) -> bool:
        """Drop the hold if `token` still owns it. Idempotent."""
        lock = self._locks.get(mint)
        if lock is None or lock[1] != token:
            return False
        del self._locks[mint]
        return True

    def sweep(self) -> int:
        now = self._clock()
        expired = [mint for mint, (expires_at, _) in self._locks.items() if now >= expires_at]
        for mint in expired:
            del self._locks[mint]
        return len(expired)


async def run_sweeper(*guards, interval_seconds: float = 60.0) -> None:
    """Periodically evict expired entries from the given caches/guards."""
    while True:
        await asyncio.sleep(interval_seconds)
        for guard in guards:
            try:
                removed = guard.sweep()
            except Exception as e:
                logger.error("sweep_error", guard=type(guard).__name__, error=str(e))
                continue
            if removed:
                logger.debug("sweep_removed", guard=type(guard).__name__, removed=removed)
