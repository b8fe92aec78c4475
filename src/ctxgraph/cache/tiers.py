"""Key/value tiers used by the context cache.

Both tiers store serialized strings with a per-key TTL. Failures surface
as CacheError; the context cache decides whether to log or propagate.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable

from ctxgraph.exceptions import CacheError

logger = logging.getLogger("ctxgraph.cache")


class CacheTier(ABC):
    """A string-valued TTL cache.

    Backend errors may propagate; ContextCache guards every call.
    """

    name: str = "tier"

    @abstractmethod
    def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def size(self) -> int | None:
        """Number of live entries, or None when the backend can't tell cheaply."""
        return None


class MemoryCache(CacheTier):
    """Thread-safe in-process cache with TTL and LRU eviction.

    Args:
        max_entries: Least-recently-used entries are evicted beyond this.
        clock: Seconds source, injectable for tests.
    """

    name = "local"

    def __init__(
        self,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            value, expires = item
            if self._clock() >= expires:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def size(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for _, exp in self._entries.values() if now < exp)


class RedisSharedCache(CacheTier):
    """Redis-backed shared tier.

    Pass either a ready client (anything with redis-py's get/set/delete/scan_iter)
    or a URL, in which case the client is created lazily.
    """

    name = "shared"

    def __init__(
        self,
        redis_url: str | None = None,
        client=None,
        prefix: str = "artifact:context:",
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("RedisSharedCache needs a client or a redis_url")
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import redis

            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> str | None:
        try:
            value = self.client.get(self._key(key))
        except Exception as e:
            raise CacheError(f"Redis get failed: {e}") from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))
        except Exception as e:
            raise CacheError(f"Redis set failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except Exception as e:
            raise CacheError(f"Redis delete failed: {e}") from e

    def size(self) -> int | None:
        try:
            return sum(1 for _ in self.client.scan_iter(match=f"{self.prefix}*"))
        except Exception as e:
            logger.warning("Could not count shared cache keys: %s", e)
            return None
