"""Best-effort cache mapping delivery identifiers to their delivery time.

The cache is an optimisation for lookups by delivery id. It never
originates or corrects message status: the repository stays the source
of truth and a cache miss is never an error.
"""

from __future__ import annotations

import time
from typing import Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .models import CacheError

DEFAULT_TTL_SECONDS = 24 * 3600


class MetadataCache(Protocol):
    async def put(self, delivery_id: str, timestamp: int) -> None:
        ...

    async def get(self, delivery_id: str) -> Optional[int]:
        ...

    async def close(self) -> None:
        ...


class RedisMetadataCache:
    """Store ``message:<delivery_id> -> epoch seconds`` in Redis with an expiry."""

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS, key_prefix: str = "message"):
        self.redis = redis
        self.ttl_seconds = int(ttl_seconds)
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(
        cls,
        host: str,
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> "RedisMetadataCache":
        client = Redis(host=host, port=int(port), password=password or None, db=int(db), decode_responses=True)
        return cls(client, ttl_seconds=ttl_seconds)

    def _make_key(self, delivery_id: str) -> str:
        return f"{self.key_prefix}:{delivery_id}"

    async def put(self, delivery_id: str, timestamp: int) -> None:
        try:
            await self.redis.set(self._make_key(delivery_id), int(timestamp), ex=self.ttl_seconds)
        except RedisError as exc:
            raise CacheError(f"Redis SET failed for {delivery_id}: {exc}") from exc

    async def get(self, delivery_id: str) -> Optional[int]:
        try:
            value = await self.redis.get(self._make_key(delivery_id))
        except RedisError as exc:
            raise CacheError(f"Redis GET failed for {delivery_id}: {exc}") from exc
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    async def close(self) -> None:
        await self.redis.aclose()


class MemoryMetadataCache:
    """In-process cache with the same contract, used when Redis is not configured."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock=time.time):
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}

    def _evict_expired(self, now: float) -> None:
        # With a fixed TTL, insertion order is expiry order.
        while self._entries:
            key, (_, expires_at) = next(iter(self._entries.items()))
            if expires_at > now:
                return
            del self._entries[key]

    async def put(self, delivery_id: str, timestamp: int) -> None:
        now = self._clock()
        self._evict_expired(now)
        self._entries.pop(delivery_id, None)
        self._entries[delivery_id] = (int(timestamp), now + self.ttl_seconds)

    async def get(self, delivery_id: str) -> Optional[int]:
        entry = self._entries.get(delivery_id)
        if entry is None:
            return None
        timestamp, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(delivery_id, None)
            return None
        return timestamp

    async def close(self) -> None:
        self._entries.clear()
