import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


class CacheService:
    """
    Time-bounded cache with request coalescing.

    Values must be JSON-friendly. Storage is an in-process dict unless a
    redis URL is given. The in-flight map is always local to the process;
    all access happens on the event loop thread, so no lock is needed.
    """

    def __init__(self, redis_url: Optional[str] = None, default_ttl: int = 300):
        self.redis = redis.from_url(redis_url, decode_responses=True) if redis_url else None
        self.default_ttl = default_ttl  # 5 minutes
        self._memory: Dict[str, Tuple[Optional[float], Any]] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    async def get(self, key: str) -> Optional[Any]:
        """Get cached value, None on miss or expiry"""
        if self.redis is None:
            entry = self._memory.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._memory[key]
                return None
            return value
        try:
            value = await self.redis.get(key)
            if value is not None:
                return json.loads(value)
            return None
        except Exception as e:
            # Fail gracefully - cache miss is better than crash
            logger.warning(f"Cache get error for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = -1) -> bool:
        """Set cached value; ttl=None never expires, the default uses default_ttl"""
        if ttl == -1:
            ttl = self.default_ttl
        if self.redis is None:
            self._evict_expired()
            expires_at = None if ttl is None else time.monotonic() + ttl
            self._memory[key] = (expires_at, value)
            return True
        try:
            payload = json.dumps(value)
            if ttl is None:
                await self.redis.set(key, payload)
            else:
                await self.redis.setex(key, ttl, payload)
            return True
        except Exception as e:
            logger.warning(f"Cache set error for {key}: {e}")
            return False

    async def get_or_fetch(
        self,
        key: str,
        fetch: FetchFn,
        ttl: Optional[int] = -1,
        should_cache: Callable[[Any], bool] = lambda value: value is not None,
    ) -> Any:
        """
        Return the cached value for key, or run fetch once for all
        concurrent callers of the same key. Every waiter gets the same
        result or the same exception.
        """
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(key, fetch, ttl, should_cache))
            self._inflight[key] = pending
            pending.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(pending)

    async def _load(self, key: str, fetch: FetchFn, ttl: Optional[int], should_cache: Callable[[Any], bool]) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await fetch()
        if should_cache(value):
            await self.set(key, value, ttl)
        return value

    def _forget(self, key: str, done: asyncio.Future) -> None:
        if self._inflight.get(key) is done:
            del self._inflight[key]
        if not done.cancelled():
            # Mark the exception retrieved; waiters already re-raise it
            done.exception()

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, (expires_at, _) in self._memory.items() if expires_at is not None and expires_at <= now]
        for k in expired:
            del self._memory[k]

    async def close(self):
        """Close Redis connection"""
        if self.redis is not None:
            await self.redis.aclose()


def cache_key(namespace: str, *parts: Any) -> str:
    """Canonical cache key from request arguments"""
    return ":".join([namespace, *(str(p) for p in parts)])
