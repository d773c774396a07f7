from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from chatauth.config import get_settings, reset_settings_cache
from chatauth.logging import get_logger
from chatauth.service.auth import AuthService
from chatauth.service.sessions import SessionManager
from chatauth.storage.memory import MemoryStore
from chatauth.storage.models import RateLimitDecision
from chatauth.storage.postgres import PostgresStore
from chatauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """Hide the password of a database or Redis URL before it is logged."""
    if not url:
        return url
    parts = urlsplit(url)
    if parts.password is None:
        return url
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return urlunsplit(parts._replace(netloc=f"{user}:***@{hostinfo}"))


class RateLimiter(Protocol):
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision: ...


class LocalRateLimiter:
    """Per-process token bucket with the same contract as the Redis script.

    Only used when Redis is absent in test or dev mode, so limits are not
    shared between workers.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        refill_per_second = limit / window_seconds
        async with self._lock:
            now = self.clock()
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_per_second)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._buckets[key] = (tokens, now)
        reset_seconds = 0 if allowed else math.ceil((1 - tokens) * window_seconds / limit)
        return RateLimitDecision(allowed, int(tokens), reset_seconds)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_redact_dsn(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise

        self.cache: Optional[RedisCache] = self._connect_cache()
        self.rate_limiter: RateLimiter = self.cache or LocalRateLimiter()
        self.sessions = SessionManager(self.store, self.settings)
        self.auth = AuthService(self.store, self.sessions, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            rate_limiter="redis" if self.cache else "local",
            session_lifetime_seconds=self.settings.session_lifetime_seconds,
            session_renewal_window_seconds=self.settings.session_renewal_window_seconds,
            session_store_failure_mode=self.settings.session_store_failure_mode.value,
        )

    def _connect_cache(self) -> Optional[RedisCache]:
        """Return a verified Redis client, or None where running without Redis is allowed."""
        redis_url = self.settings.redis_url
        error: Optional[Exception] = None
        if redis_url:
            cache = RedisCache(redis_url)
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                error = exc

        if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is required for sign-in rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_redact_dsn(redis_url),
            reason=str(error) if error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def startup(self) -> None:
        await self.store.open()
        logger.info("runtime_store_opened")

    async def close(self) -> None:
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> RateLimitDecision:
    """Take one attempt for ``key``; a non-positive ``limit`` disables the check."""
    if limit <= 0:
        return RateLimitDecision(True, 0, 0)
    return await runtime.rate_limiter.check_rate_limit(key, limit, window_seconds)


__all__ = [
    "LocalRateLimiter",
    "Runtime",
    "get_runtime",
    "reset_runtime_for_tests",
    "check_rate_limit",
]
