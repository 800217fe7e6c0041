"""
Two-tier cache for search responses.

Read path: process-local LRU, then the distributed tier (Redis). A
distributed hit is copied into the local tier. Writes go to both tiers.
Values are JSON-compatible dicts and are copied on the way in and out, so
callers never share a cached object.
"""

from __future__ import annotations

import copy
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError
import logging

logger = logging.getLogger(__name__)

TIER_MEMORY = "memory"
TIER_DISTRIBUTED = "distributed"


class InMemoryLRUCache:
    """Size-bounded LRU with per-entry expiry."""

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: "OrderedDict[str, Tuple[float, Dict[str, Any]]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                del self._items[key]
                return None
            self._items.move_to_end(key)
            return copy.deepcopy(value)

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else min(self.ttl_seconds, ttl_seconds)
        with self._lock:
            self._items[key] = (self._clock() + ttl, copy.deepcopy(value))
            self._items.move_to_end(key)
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class RedisCacheTier:
    """
    Distributed tier on Redis.

    Each value is stored with SETEX inside an envelope carrying its own
    expiry; an envelope found past its expiry is deleted on lookup. Redis
    errors are logged and treated as a miss (reads) or a no-op (writes).
    """

    def __init__(self, client: Any, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._client.get(key)
            if not raw:
                return None
            envelope = json.loads(raw)
            if envelope["expires_at"] <= self._clock():
                await self._client.delete(key)
                return None
            return envelope["value"]
        except (RedisError, OSError) as e:
            logger.warning(f"Distributed cache read failed for {key}: {e}")
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding malformed cache entry {key}: {e}")
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        envelope = {"expires_at": self._clock() + ttl_seconds, "value": value}
        try:
            await self._client.setex(key, int(max(1, ttl_seconds)), json.dumps(envelope, ensure_ascii=True))
        except (RedisError, OSError) as e:
            logger.warning(f"Distributed cache write failed for {key}: {e}")

    async def close(self) -> None:
        close = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if close is not None:
            await close()


class MultiTierCache:

    def __init__(self, local: InMemoryLRUCache, distributed: Optional[RedisCacheTier] = None) -> None:
        self.local = local
        self.distributed = distributed

    @property
    def has_distributed_tier(self) -> bool:
        return self.distributed is not None

    async def get_with_source(self, key: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        value = self.local.get(key)
        if value is not None:
            return value, TIER_MEMORY

        if self.distributed is not None:
            value = await self.distributed.get(key)
            if value is not None:
                self.local.set(key, value)
                return copy.deepcopy(value), TIER_DISTRIBUTED

        return None, None

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value, _ = await self.get_with_source(key)
        return value

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self.local.set(key, value, ttl_seconds)
        if self.distributed is not None:
            await self.distributed.set(key, value, ttl_seconds)

    async def close(self) -> None:
        if self.distributed is not None:
            await self.distributed.close()


def create_redis_client(url: Optional[str]):
    """Redis client for the distributed tier, or None when no URL is configured."""
    if not url:
        return None
    return redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )


def build_cache(
    redis_url: Optional[str],
    local_max_entries: int = 1000,
    local_ttl_seconds: float = 60,
) -> MultiTierCache:
    client = create_redis_client(redis_url)
    distributed = RedisCacheTier(client) if client is not None else None
    if distributed is None:
        logger.info("REDIS_URL not set; search cache is process-local only")
    return MultiTierCache(
        InMemoryLRUCache(max_entries=local_max_entries, ttl_seconds=local_ttl_seconds),
        distributed,
    )
