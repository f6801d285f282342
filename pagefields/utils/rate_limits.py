from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterResult:
    allowed: bool
    remaining: int
    reset_at: int
    limit: int
    window: int


class CounterStore:
    """Fixed window counters with TTL, shared by every request worker.

    Backed by a ``limits`` storage, so ``memory://`` gives an in-process,
    thread-safe store and ``redis://`` shares counters across processes.
    Constructed once in the app factory and passed by reference.
    """

    def __init__(self, storage: Storage | str = "memory://") -> None:
        if isinstance(storage, str):
            storage = storage_from_string(storage)
        self.storage = storage
        self._limiter = FixedWindowRateLimiter(storage)

    def increment_and_check(
        self, rule_name: str, scope_key: str, limit: int, window: int
    ) -> CounterResult:
        """Count one hit against ``rule_name``/``scope_key`` and report quota."""
        item = RateLimitItemPerSecond(limit, window, namespace="PAGEFIELDS")
        identifiers = (rule_name, scope_key)
        allowed = self._limiter.hit(item, *identifiers)
        stats = self._limiter.get_window_stats(item, *identifiers)
        reset_at = int(stats.reset_time) if stats.reset_time else int(time.time()) + window
        return CounterResult(
            allowed=allowed,
            remaining=0 if not allowed else max(int(stats.remaining), 0),
            reset_at=reset_at,
            limit=limit,
            window=window,
        )

    def reset(self) -> None:
        """Drop every counter (used by tests; production relies on TTL expiry)."""
        try:
            self.storage.reset()
        except NotImplementedError:  # pragma: no cover - backend specific
            logger.warning("Counter storage %s does not support reset", self.storage)
