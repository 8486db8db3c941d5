from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

from coursegate.config import Settings, get_settings, reset_settings_cache
from coursegate.logging import get_logger
from coursegate.service.auth import AuthService
from coursegate.service.email import EmailService
from coursegate.service.sessions import SessionRegistry
from coursegate.service.verification import VerificationCodeRegistry
from coursegate.storage.ephemeral import EphemeralStore, MemoryEphemeralStore
from coursegate.storage.memory import MemoryStore
from coursegate.storage.postgres import PostgresStore
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return parsed._replace(netloc=f"{parsed.username or ''}:***@{host}").geturl()
    except ValueError:
        return "***url_parse_error***"


class LocalRateLimiter:
    """In-process token buckets used when no Redis cache is configured.

    The critical section never awaits, so a thread lock is safe across event loops.
    """

    def __init__(self) -> None:
        # key -> (tokens, last_seen, capacity, refill_per_second)
        self._buckets: Dict[str, Tuple[float, float, float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        now = time.monotonic()
        refill_per_second = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_seen = self._buckets.get(key, (float(limit), now))[:2]
            tokens = min(float(limit), tokens + max(0.0, now - last_seen) * refill_per_second)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now, float(limit), refill_per_second)
        wait = 0 if allowed else int((cost - tokens) / refill_per_second) + 1
        return allowed, int(tokens), wait

    def prune(self) -> int:
        """Forget buckets that have refilled to capacity; returns how many were dropped."""
        now = time.monotonic()
        with self._lock:
            full = [
                key
                for key, (tokens, last_seen, capacity, rate) in self._buckets.items()
                if tokens + (now - last_seen) * rate >= capacity
            ]
            for key in full:
                del self._buckets[key]
        return len(full)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._build_store(self.settings)
        self.cache: Optional[RedisCache] = self._connect_cache(self.settings)
        self.ephemeral: EphemeralStore = self.cache if self.cache is not None else MemoryEphemeralStore()
        self.rate_limiter = LocalRateLimiter()

        s = self.settings
        self.email = EmailService(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            smtp_timeout=s.smtp_timeout_seconds,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
            base_url=s.app_base_url,
            code_ttl_minutes=s.two_factor_code_ttl_minutes,
            reset_ttl_minutes=s.password_reset_ttl_minutes,
        )
        self.sessions = SessionRegistry(
            self.store,
            max_sessions=s.max_sessions_per_user,
            max_age_days=s.session_max_age_days,
        )
        self.verification = VerificationCodeRegistry(
            self.ephemeral,
            self.email,
            code_ttl_seconds=s.two_factor_code_ttl_minutes * 60,
            max_attempts=s.two_factor_max_attempts,
            resend_interval_seconds=s.two_factor_resend_interval_seconds,
            dispatch_timeout_seconds=s.email_dispatch_timeout_seconds,
            retention_seconds=s.verification_sweep_interval_seconds,
        )
        self.auth = AuthService(self.store, self.sessions, self.verification, self.ephemeral, self.email, s)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            session_liveness=s.enforce_session_liveness,
        )

    @staticmethod
    def _build_store(settings: Settings):
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            if settings.use_memory_store:
                store = MemoryStore(fs_root=settings.data_root, persist=settings.memory_store_persist)
            else:
                store = PostgresStore(settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    @staticmethod
    def _connect_cache(settings: Settings) -> Optional[RedisCache]:
        if not settings.redis_url:
            return None
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            # A lone instance can keep codes in process; several cannot share them
            if not (settings.test_mode or settings.allow_redis_fallback_dev):
                raise RuntimeError(
                    "Redis is configured but unreachable; pending codes and reset tokens "
                    "would not be shared. Start Redis or set ALLOW_REDIS_FALLBACK_DEV=true."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
                message="Running without Redis; verification codes and rate limits are in-process only.",
            )
            return None

    async def close(self) -> None:
        await self.ephemeral.close()
        close_store = getattr(self.store, "close", None)
        if close_store:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                try:
                    asyncio.get_running_loop().create_task(previous.cache.close())
                except RuntimeError:
                    asyncio.run(previous.cache.close())
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def sweep_ephemeral_state(rt: Runtime) -> Tuple[int, int]:
    """Drop expired verification codes and any other lapsed ephemeral entries."""
    codes = await rt.verification.sweep()
    purged = await rt.ephemeral.purge_expired()
    buckets = rt.rate_limiter.prune()
    if buckets:
        logger.debug("rate_limit_buckets_pruned", count=buckets)
    return codes, purged


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Apply a token bucket to ``key``, in Redis when configured.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window; zero or less disables the check
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
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
    allowed, remaining, reset_seconds = runtime.rate_limiter.take(key, limit, window_seconds, cost)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
