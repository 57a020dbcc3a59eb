from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Async Redis wrapper implementing the TTL session-store contract.

    Single commands are atomic on the server. The compound policies built on
    top (bounded counters, read-and-delete) run as Lua scripts so concurrent
    requests never observe a half-applied update.
    """

    # INCR, and set the window TTL only when the counter was just created
    _INCR_WITH_TTL_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""

    # Bounded increment of one integer field inside a JSON document
    _INCR_JSON_FIELD_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
local ok, doc = false, nil
if raw then
    ok, doc = pcall(cjson.decode, raw)
end
if not ok or type(doc) ~= 'table' then
    doc = cjson.decode(ARGV[4])
end
local field = ARGV[1]
local limit = tonumber(ARGV[2])
local current = tonumber(doc[field]) or 0
if current >= limit then
    return {0, current}
end
current = current + 1
doc[field] = current
for k, v in pairs(cjson.decode(ARGV[5])) do
    doc[k] = v
end
redis.call('SET', KEYS[1], cjson.encode(doc), 'EX', ARGV[3])
return {1, current}
"""

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Any = None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``.

        Uses GETDEL (Redis 6.2+) with a Lua fallback for older servers.
        """
        try:
            return await self.client.getdel(key)
        except (AttributeError, aioredis.ResponseError):
            return await self.client.eval(self._GETDEL_SCRIPT, 1, key)

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        result = await self.client.eval(self._INCR_WITH_TTL_SCRIPT, 1, key, ttl_seconds)
        return int(result)

    async def incr_json_field_bounded(
        self,
        key: str,
        field: str,
        limit: int,
        ttl_seconds: int,
        defaults: Dict[str, Any],
        updates: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, int]:
        """Increment ``field`` of the JSON document at ``key`` unless it is at ``limit``.

        A missing or undecodable document starts from ``defaults``. On
        acceptance ``updates`` are merged into the stored document.

        Returns ``(accepted, value)``; when rejected the document is left
        untouched and ``value`` is the current count.
        """
        result = await self.client.eval(
            self._INCR_JSON_FIELD_SCRIPT,
            1,
            key,
            field,
            limit,
            ttl_seconds,
            json.dumps(defaults),
            json.dumps(updates or {}),
        )
        return (bool(int(result[0])), int(result[1]))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures.

    This lets :class:`RedisCache` drive either client with ``await``.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def ping(self) -> bool:
        return self._sync.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        return self._sync.set(key, value, ex=ex, nx=nx)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return self._sync.expire(key, ttl)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def eval(self, script: str, numkeys: int, *args: Any) -> Any:
        return self._sync.eval(script, numkeys, *args)

    def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """Redis cache backed by a synchronous client, for use in tests.

    Avoids event loop binding issues in pytest while still exposing the
    async contract.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        super().__init__(redis_url, client=_SyncClientAdapter(self._sync_client))

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def getdel(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.getdel(key)
        except (AttributeError, aioredis.ResponseError):
            return self._sync_client.eval(self._GETDEL_SCRIPT, 1, key)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()


class MemoryCache:
    """In-process stand-in for Redis with the same async contract.

    Used when Redis is unavailable in test or dev mode. Every operation holds
    one lock, so compound primitives are atomic within the process. The
    clock is injectable so TTL windows can be exercised without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (str(value), self._deadline(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (str(value), self._deadline(ttl_seconds))
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    def _incr_locked(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            value, expires_at = 0, None
        else:
            try:
                value = int(entry[0])
            except ValueError as exc:
                raise ValueError(f"value at {key!r} is not an integer") from exc
            expires_at = entry[1]
        value += 1
        # INCR keeps any existing TTL
        self._data[key] = (str(value), expires_at)
        return value

    async def incr(self, key: str) -> int:
        with self._lock:
            return self._incr_locked(key)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._deadline(ttl_seconds))
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, or ``None`` if missing or persistent."""
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._clock()

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            value = self._incr_locked(key)
            if value == 1:
                self._data[key] = (str(value), self._deadline(ttl_seconds))
            return value

    async def incr_json_field_bounded(
        self,
        key: str,
        field: str,
        limit: int,
        ttl_seconds: int,
        defaults: Dict[str, Any],
        updates: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, int]:
        with self._lock:
            entry = self._live(key)
            doc = None
            if entry:
                try:
                    doc = json.loads(entry[0])
                except ValueError:
                    doc = None
            if not isinstance(doc, dict):
                doc = dict(defaults)
            try:
                current = int(doc.get(field) or 0)
            except (TypeError, ValueError):
                current = 0
            if current >= limit:
                return (False, current)
            current += 1
            doc[field] = current
            doc.update(updates or {})
            self._data[key] = (json.dumps(doc), self._deadline(ttl_seconds))
            return (True, current)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
