from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis


class CacheAdapter(Protocol):
    """Key/value store with per-entry expiry.

    Each adapter owns one key namespace and one default TTL, so the token
    blacklist and the unverified OTP sessions can expire independently.
    """

    expiry_seconds: Optional[int]

    async def get(self, key: str) -> Optional[str]: ...

    async def put(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def invalidate(self, key: str) -> None: ...


class RedisCache:
    """Shared Redis connection used by every Redis-backed cache adapter."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def adapter(
        self, *, prefix: str = "", expiry_seconds: Optional[int] = None
    ) -> "RedisCacheAdapter":
        return RedisCacheAdapter(self.client, prefix=prefix, expiry_seconds=expiry_seconds)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class RedisCacheAdapter:
    """CacheAdapter over a redis-py asyncio client."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        prefix: str = "",
        expiry_seconds: Optional[int] = None,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.expiry_seconds = expiry_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def put(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.expiry_seconds
        if ttl is not None:
            # Redis rejects zero/negative expiries
            ttl = max(1, int(ttl))
        await self.client.set(self._key(key), value, ex=ttl)

    async def invalidate(self, key: str) -> None:
        await self.client.delete(self._key(key))


class MemoryCacheAdapter:
    """Process-local CacheAdapter used in tests and single-node development.

    Expiry is evaluated lazily against a monotonic clock; expired entries
    read as absent and are dropped on access.
    """

    def __init__(
        self,
        *,
        prefix: str = "",
        expiry_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.prefix = prefix
        self.expiry_seconds = expiry_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        full_key = self._key(key)
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                self._entries.pop(full_key, None)
                return None
            return value

    async def put(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.expiry_seconds
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._entries[self._key(key)] = (value, expires_at)

    async def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(self._key(key), None)

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, (_, expires_at) in self._entries.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                self._entries.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
