from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkeep.config import get_settings, reset_settings_cache
from authkeep.logging import get_logger
from authkeep.service.auth import AuthService
from authkeep.service.email import EmailService
from authkeep.service.errors import RateLimitedError
from authkeep.service.passwords import PasswordHasher
from authkeep.service.tokens import AccessTokenCodec
from authkeep.storage.memory import MemoryStore
from authkeep.storage.memory_cache import MemoryCache
from authkeep.storage.postgres import PostgresStore
from authkeep.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide stores and services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._build_cache()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            verification_ttl_minutes=self.settings.email_verification_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            hasher=PasswordHasher(self.settings.password_hash_cost),
            codec=AccessTokenCodec(self.settings.jwt_secret, issuer=self.settings.jwt_issuer),
            email_service=self.email,
        )

    def _build_cache(self) -> RedisCache | MemoryCache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        allow_fallback = not self.settings.is_production and (
            self.settings.test_mode
            or self.settings.allow_redis_fallback_dev
            or not self.settings.redis_url
        )
        if not allow_fallback:
            raise RuntimeError(
                "Redis is required for refresh, reset and verification tokens; "
                "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "development",
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        if runtime is not None and isinstance(runtime.cache, MemoryCache):
            asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> None:
    """Raise ``RateLimitedError`` once ``key`` exceeds ``limit`` per window."""
    if limit <= 0:
        return
    if not await runtime.cache.check_rate_limit(key, limit, window_seconds):
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError("too many requests, please retry later")
