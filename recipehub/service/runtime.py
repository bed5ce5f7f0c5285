from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from recipehub.config import Settings, get_settings, reset_settings_cache
from recipehub.logging import get_logger
from recipehub.service.auth import AuthService
from recipehub.service.credentials import UserCredentials
from recipehub.service.email import EmailService
from recipehub.service.recovery import AccountRecoveryService
from recipehub.service.single_use import SingleUseTokenStore
from recipehub.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TokenCodec,
    parse_duration,
)
from recipehub.storage.memory import MemoryStore
from recipehub.storage.models import TokenPurpose, utcnow
from recipehub.storage.postgres import PostgresStore
from recipehub.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_codecs(settings: Settings) -> tuple[TokenCodec, TokenCodec]:
    access = TokenCodec(
        settings.jwt_access_secret,
        parse_duration(settings.jwt_access_ttl),
        issuer=settings.jwt_issuer,
        token_type=ACCESS_TOKEN,
    )
    refresh = TokenCodec(
        settings.jwt_refresh_secret,
        parse_duration(settings.jwt_refresh_ttl),
        issuer=settings.jwt_issuer,
        token_type=REFRESH_TOKEN,
    )
    return access, refresh


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # TestClient spins a loop per request; keep the client synchronous there
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for auth rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.credentials = UserCredentials(self.store)
        self.access_codec, self.refresh_codec = build_codecs(self.settings)
        self.auth = AuthService(self.credentials, self.access_codec, self.refresh_codec)
        self.tokens = SingleUseTokenStore(
            self.store,
            ttls={
                TokenPurpose.PASSWORD_RESET: timedelta(
                    minutes=self.settings.password_reset_ttl_minutes
                ),
                TokenPurpose.EMAIL_VERIFICATION: timedelta(
                    minutes=self.settings.email_verification_ttl_minutes
                ),
            },
        )
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
        if not self.email.is_configured:
            logger.info("email_not_configured", mode="log_only")
        self.recovery = AccountRecoveryService(
            self.credentials,
            self.tokens,
            self.email,
            expose_dev_tokens=self.settings.expose_dev_tokens,
        )

        self._local_rate_limits: dict[str, tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis when available and in-process otherwise.

    Returns ``allowed`` or, with ``return_remaining``, a tuple of
    ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = 0 if allowed else max(1, int((cost - tokens) / refill_rate))
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
