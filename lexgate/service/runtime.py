from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from lexgate.config import Settings, get_settings, reset_settings_cache
from lexgate.logging import get_logger
from lexgate.service.access import AccessGate
from lexgate.service.auth import CredentialGate
from lexgate.service.email import LogEmailSender, build_email_sender
from lexgate.service.guest import GuestThrottle
from lexgate.service.passwords import PasswordVault
from lexgate.service.quota import QuotaGovernor
from lexgate.service.rate_limit import RateLimiter
from lexgate.service.tokens import TokenCodec
from lexgate.service.verification import LogSmsSender, VerificationCodeManager
from lexgate.storage.memory import MemoryStore
from lexgate.storage.postgres import PostgresStore
from lexgate.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds and owns every component; the single place wiring happens."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
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
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        # Raises on a missing or short key, so the app never starts serving
        self.tokens = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.vault = PasswordVault(
            self.settings.password_hash_cost,
            memory_cost_kib=self.settings.password_hash_memory_kib,
            parallelism=self.settings.password_hash_parallelism,
        )

        dev_mode = self.settings.test_mode or self.settings.allow_redis_fallback_dev
        if self.settings.test_mode:
            self.email = LogEmailSender(record=True)
        else:
            self.email = build_email_sender(self.settings, allow_log_fallback=dev_mode)
        self.sms = LogSmsSender() if dev_mode else None
        self.verification = VerificationCodeManager(
            self.cache,
            self.email,
            sms_sender=self.sms,
            code_length=self.settings.verification_code_length,
            code_ttl_seconds=self.settings.verification_code_ttl_seconds,
            resend_seconds=self.settings.verification_resend_seconds,
            max_attempts=self.settings.verification_max_attempts,
        )
        self.auth = CredentialGate(
            self.store,
            self.cache,
            self.tokens,
            self.vault,
            verification=self.verification,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            max_login_attempts=self.settings.max_login_attempts,
            lockout_seconds=self.settings.lockout_minutes * 60,
            default_token_quota=self.settings.default_token_quota,
        )
        self.access = AccessGate(self.tokens, self.cache)
        self.guest = GuestThrottle(
            self.cache,
            max_chats=self.settings.guest_max_chats,
            session_ttl_seconds=self.settings.guest_session_ttl_hours * 3600,
        )
        self.quota = QuotaGovernor(self.store)
        self.rate_limiter = RateLimiter(
            self.settings.rate_limit_rate,
            self.settings.rate_limit_burst,
            enabled=self.settings.rate_limit_enabled,
            max_clients=self.settings.rate_limit_max_clients,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            email_sender=type(self.email).__name__,
            sms_enabled=self.sms is not None,
            rate_limit_enabled=self.settings.rate_limit_enabled,
        )

    def _build_cache(self):
        cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens, lockout counters and verification codes; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; session state is "
                "in-process only and not shared across workers."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        """Release Redis and Postgres pools."""
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path once built, and a locked
    re-check so only one Runtime is ever constructed.
    """
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
        if runtime is not None:
            # Sync and in-memory caches close without awaiting network I/O
            if isinstance(runtime.cache, (SyncRedisCache, MemoryCache)):
                try:
                    asyncio.run(runtime.cache.close())
                except RuntimeError:
                    logger.warning("runtime_reset_close_skipped", reason="event_loop_running")
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
