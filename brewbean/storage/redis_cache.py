from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


def fixed_window(window_seconds: int, now: float) -> Tuple[int, int]:
    """Return the current fixed-window index and seconds until it rolls over."""
    window_index = int(now // window_seconds)
    reset_after = max(1, int((window_index + 1) * window_seconds - now))
    return window_index, reset_after


class RedisCache:
    """Thin Redis wrapper for shared fixed-window rate limits."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._injected = client is not None

    @staticmethod
    def _normalize_rate_key(key: str, window_index: int) -> str:
        """Hash the subject so user input cannot collide with another key's layout."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}:{window_index}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared rate limits."""
        if self._injected:
            return
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        now: Optional[float] = None,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Count a hit against the current window and report whether it is allowed.

        INCR and EXPIRE run in one MULTI/EXEC so every worker sharing the
        Redis instance sees the same counter.
        """

        window_index, reset_after = fixed_window(
            window_seconds, time.time() if now is None else now
        )
        safe_key = self._normalize_rate_key(key, window_index)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(safe_key)
            pipe.expire(safe_key, window_seconds + 1)
            count, _ = await pipe.execute()

        allowed = int(count) <= limit
        remaining = max(0, limit - int(count))
        if return_remaining:
            return (allowed, remaining, reset_after)
        return allowed

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so callers await it the same
    way as RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        now: Optional[float] = None,
    ) -> Union[bool, Tuple[bool, int, int]]:
        window_index, reset_after = fixed_window(
            window_seconds, time.time() if now is None else now
        )
        safe_key = RedisCache._normalize_rate_key(key, window_index)
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(safe_key)
        pipe.expire(safe_key, window_seconds + 1)
        count, _ = pipe.execute()

        allowed = int(count) <= limit
        remaining = max(0, limit - int(count))
        if return_remaining:
            return (allowed, remaining, reset_after)
        return allowed

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
