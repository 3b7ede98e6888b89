"""
Rate-Shopping Response Cache

Purpose:
- Avoids re-querying every carrier for an identical route/weight/payment mode
- Cache key: MD5 of pickup pincode + delivery pincode + billable weight + payment mode,
  plus an optional fingerprint of the remaining request context
- TTL: 5 minutes (configurable via RATE_CACHE_TTL_SECONDS)
- Max size: 1000 entries (LRU eviction)

Entries are stored as serialised JSON text, so every hit for a key returns
the same bytes. When Redis is configured the entry is mirrored there so
several worker processes share it; Redis failures fall back to the local
LRU with a warning.

Usage:
    from multicarrier.core.rate_cache import rate_cache

    key = rate_cache.make_key("110001", "400001", 1.1, "prepaid")
    cached = await rate_cache.get(key)
    if cached is None:
        payload = json.dumps(response)
        await rate_cache.set(key, payload)
"""
import hashlib
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from multicarrier.core.config import settings
from multicarrier.core.redis_client import get_redis

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "shipping:rates:"


class RateCache:
    """
    LRU cache with TTL for rate-shopping responses.

    Safe for single-threaded async usage. Concurrent fills of the same key
    are last-writer-wins; entries are pure functions of the key.

    Attributes:
        ttl_seconds: Time-to-live for cache entries (default: 300)
        max_size: Maximum cache entries before LRU eviction (default: 1000)
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        max_size: int = 1000,
        redis_getter: Optional[Callable[[], Awaitable[Any]]] = get_redis,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._redis_getter = redis_getter
        self._cache: OrderedDict[str, Tuple[float, str]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def make_key(
        pickup_pincode: str,
        delivery_pincode: str,
        billable_weight: float,
        payment_mode: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Deterministic cache key for a rate-shopping request.

        `context` carries the request fields the response also depends on
        (order value, customer type, COD amount, ...); requests that differ
        only there must not share an entry.
        """
        key_string = (
            f"shipping_rates_{pickup_pincode or 'default'}_{delivery_pincode or ''}"
            f"_{billable_weight}_{payment_mode or 'prepaid'}"
        )
        if context:
            key_string += "_" + json.dumps(context, sort_keys=True, default=str)
        return hashlib.md5(key_string.encode()).hexdigest()

    async def _redis(self):
        if self._redis_getter is None:
            return None
        return await self._redis_getter()

    async def get(self, key: str) -> Optional[str]:
        """
        Get a cached payload if still valid.

        Checks the local LRU first, then Redis (populating the LRU on a hit
        with the entry's remaining Redis TTL, not a fresh one).
        """
        entry = self._cache.get(key)
        if entry is not None:
            stored_at, payload = entry
            if time.time() - stored_at <= self.ttl_seconds:
                self._cache.move_to_end(key)
                self._hits += 1
                logger.debug(f"[RATE_CACHE] Hit: {key}")
                return payload
            del self._cache[key]
            logger.debug(f"[RATE_CACHE] Expired: {key}")

        client = await self._redis()
        if client is not None:
            redis_key = f"{REDIS_KEY_PREFIX}{key}"
            remaining = None
            try:
                payload = await client.get(redis_key)
                if payload is not None:
                    remaining = await client.ttl(redis_key)
            except Exception as e:
                logger.warning(f"[RATE_CACHE] Redis read failed for {key}: {e}")
                payload = None
            if payload is not None:
                self._store_local(key, payload, stored_at=self._stored_at_from_ttl(remaining))
                self._hits += 1
                logger.debug(f"[RATE_CACHE] Redis hit: {key}")
                return payload

        self._misses += 1
        return None

    async def set(self, key: str, payload: str) -> None:
        """Cache a serialised payload locally and in Redis when available."""
        self._store_local(key, payload)

        client = await self._redis()
        if client is not None:
            try:
                await client.setex(f"{REDIS_KEY_PREFIX}{key}", self.ttl_seconds, payload)
            except Exception as e:
                logger.warning(f"[RATE_CACHE] Redis write failed for {key}: {e}")

    def _stored_at_from_ttl(self, remaining: Any) -> float:
        """Back-date a Redis entry so it expires locally when it expires in Redis."""
        now = time.time()
        if not isinstance(remaining, int) or isinstance(remaining, bool) or remaining == -1:
            # -1: no expiry set on the Redis key
            return now
        if remaining <= 0:
            return now - self.ttl_seconds
        return now - max(0, self.ttl_seconds - remaining)

    def _store_local(self, key: str, payload: str, stored_at: Optional[float] = None) -> None:
        if key in self._cache:
            del self._cache[key]
        while len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
            self._evictions += 1
            logger.debug("[RATE_CACHE] Evicted oldest entry (capacity)")
        self._cache[key] = (time.time() if stored_at is None else stored_at, payload)

    async def invalidate(self, key: str) -> bool:
        """Drop a single entry. Returns True if a local entry was removed."""
        removed = self._cache.pop(key, None) is not None
        client = await self._redis()
        if client is not None:
            try:
                await client.delete(f"{REDIS_KEY_PREFIX}{key}")
            except Exception as e:
                logger.warning(f"[RATE_CACHE] Redis delete failed for {key}: {e}")
        return removed

    def clear(self) -> None:
        """Clear all locally cached entries."""
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"[RATE_CACHE] Cleared {count} entries")

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "size": len(self._cache),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "evictions": self._evictions,
        }


rate_cache = RateCache(
    ttl_seconds=settings.RATE_CACHE_TTL_SECONDS,
    max_size=settings.RATE_CACHE_MAX_SIZE,
)
