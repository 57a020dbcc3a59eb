from __future__ import annotations

import threading
import time
from typing import Callable, Dict

from lexgate.logging import get_logger
from lexgate.service.errors import ErrorKind, ServiceError

logger = get_logger(__name__)

# Float slack so a refill of exactly one token is not lost to rounding
_EPSILON = 1e-9


class _TokenBucket:
    __slots__ = ("capacity", "rate", "tokens", "updated_at", "last_seen", "_lock")

    def __init__(self, capacity: int, rate: float, now: float) -> None:
        self.capacity = float(capacity)
        self.rate = rate
        self.tokens = float(capacity)
        self.updated_at = now
        self.last_seen = now
        self._lock = threading.Lock()

    def take(self, now: float) -> bool:
        with self._lock:
            elapsed = max(0.0, now - self.updated_at)
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.updated_at = now
            self.last_seen = now
            if self.tokens + _EPSILON >= 1.0:
                self.tokens = max(0.0, self.tokens - 1.0)
                return True
            return False


class RateLimiter:
    """In-process token bucket per client key (normally the client IP).

    Lookups of an existing bucket take no limiter-wide lock; creating one
    takes the lock and re-checks so concurrent first requests from the same
    client share a single bucket. The map is bounded at ``max_clients`` by
    evicting the least recently seen tenth when full.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        enabled: bool = True,
        max_clients: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate
        self.burst = burst
        self.enabled = enabled
        self.max_clients = max_clients
        self._clock = clock
        self._buckets: Dict[str, _TokenBucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def _bucket(self, key: str) -> _TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None:
                return bucket
            if len(self._buckets) >= self.max_clients:
                self._evict_locked()
            bucket = _TokenBucket(self.burst, self.rate, self._clock())
            self._buckets[key] = bucket
            return bucket

    def _evict_locked(self) -> None:
        evict_count = max(1, self.max_clients // 10)
        idle_first = sorted(self._buckets.items(), key=lambda item: item[1].last_seen)
        for key, _ in idle_first[:evict_count]:
            self._buckets.pop(key, None)
        logger.info("rate_limiter_evicted", evicted=evict_count, remaining=len(self._buckets))

    def allow(self, key: str) -> bool:
        if not self.enabled:
            return True
        return self._bucket(key).take(self._clock())

    def check(self, key: str) -> None:
        if not self.allow(key):
            raise ServiceError(ErrorKind.RATE_LIMITED)
