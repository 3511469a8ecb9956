from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

from brewbean.config import Settings, get_settings, reset_settings_cache
from brewbean.logging import get_logger
from brewbean.service.auth import AuthService
from brewbean.service.email import EmailService
from brewbean.storage.memory import MemoryStore
from brewbean.storage.postgres import PostgresStore
from brewbean.storage.redis_cache import RedisCache, SyncRedisCache, fixed_window

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password of a connection URL, e.g. ``redis://:***@cache:6379/0``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        return "***url_parse_error***"
    if not password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return parsed._replace(netloc=f"{parsed.username or ''}:***@{host}").geturl()


def _build_store(settings: Settings):
    ledger_retention = timedelta(days=settings.remember_me_ttl_days)
    if settings.use_memory_store:
        return MemoryStore(
            fs_root=settings.shared_fs_root, ledger_retention=ledger_retention
        )
    return PostgresStore(settings.database_url, ledger_retention=ledger_retention)


def _connect_cache(settings: Settings):
    """Return a verified Redis limiter, or None where the in-process fallback is allowed."""
    redis_error: Exception | None = None
    if settings.redis_url:
        # The sync client keeps tests off the TestClient event loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for shared rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=f"Running without Redis under {mode}; rate limits are per-process only.",
        mode=mode,
    )
    return None


class Runtime:
    """Store, rate limiter, mailer and AuthService shared by every request."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _connect_cache(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.auth = AuthService(self.store, self.settings, self.email)
        # (key, window index) -> (hits, window end), used only without Redis
        self._local_rate_limits: Dict[Tuple[str, int], Tuple[int, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            test_mode=self.settings.test_mode,
        )

    async def close(self) -> None:
        """Release the Redis and Postgres connection pools."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            await asyncio.to_thread(close_store)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Count one request against a fixed window, in Redis when available.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )

    now = time.time()
    window_index, reset_seconds = fixed_window(window_seconds, now)
    async with runtime._local_rate_limit_lock:
        # Drop every counter whose window has closed, for any key
        stale = [k for k, (_, ends) in runtime._local_rate_limits.items() if ends <= now]
        for k in stale:
            del runtime._local_rate_limits[k]
        count = runtime._local_rate_limits.get((key, window_index), (0, 0.0))[0] + 1
        runtime._local_rate_limits[(key, window_index)] = (count, now + reset_seconds)
    allowed = count <= limit
    remaining = max(0, limit - count)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
