from __future__ import annotations

import asyncio
import math
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.accounts import AccountService
from warden.service.admin import AdminService
from warden.service.email import EmailService
from warden.service.guard import AuthorizationGuard
from warden.service.passwords import PasswordHasher
from warden.service.tokens import ACCESS, REFRESH, TokenSigner
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    try:
        if settings.use_memory_store:
            return MemoryStore(fs_root=settings.shared_fs_root)
        return PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            use_memory_store=settings.use_memory_store,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise


def _build_cache(settings: Settings) -> Union[RedisCache, SyncRedisCache, None]:
    """Connect the rate-limit cache, or decide whether running without it is allowed.

    Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV a missing or unreachable
    Redis is fatal; otherwise buckets fall back to process memory.
    """
    failure: Optional[Exception] = None
    if settings.redis_url:
        # Sync client in test mode so nothing binds to a per-test loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        reason=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class LocalTokenBuckets:
    """In-process token buckets used when Redis is unavailable.

    Same refill arithmetic as the Redis script, on the monotonic clock.
    """

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        capacity = float(limit)
        refill_rate = capacity / float(window_seconds)
        now = time.monotonic()
        with self._lock:
            tokens, stamp = self._buckets.get(key, (capacity, now))
            tokens = min(capacity, tokens + max(0.0, now - stamp) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        if allowed:
            return True, max(0, int(tokens)), 0
        return False, max(0, int(tokens)), max(1, math.ceil((cost - tokens) / refill_rate))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        self.store = _build_store(settings)
        logger.info("runtime_store_initialized", store_type=store_type)
        self.cache = _build_cache(settings)

        self.hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)
        self.access_signer = TokenSigner(
            settings.jwt_secret,
            timedelta(minutes=settings.access_token_ttl_minutes),
            token_type=ACCESS,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=leeway,
        )
        self.refresh_signer = TokenSigner(
            settings.jwt_refresh_secret,
            timedelta(minutes=settings.refresh_token_ttl_minutes),
            token_type=REFRESH,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=leeway,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
            verification_ttl_minutes=settings.verification_token_ttl_minutes,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.access_signer,
            self.refresh_signer,
            self.email,
            verification_ttl=timedelta(minutes=settings.verification_token_ttl_minutes),
            reset_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
        )
        self.admin = AdminService(self.store)
        self.guard = AuthorizationGuard(self.store, self.access_signer)

        self.local_buckets = LocalTokenBuckets()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            environment=settings.environment.value,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two concurrent builds.
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.close())
            except (RedisError, OSError, RuntimeError) as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Consume from the token bucket for ``key``, in Redis when available.

    Returns ``(allowed, remaining, retry_after_seconds)``. A non-positive
    ``limit`` disables the check.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    return runtime.local_buckets.take(key, limit, window_seconds, cost)


__all__ = ["LocalTokenBuckets", "Runtime", "check_rate_limit", "get_runtime", "reset_runtime_for_tests"]
