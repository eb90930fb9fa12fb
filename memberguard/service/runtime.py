from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from memberguard.config import get_settings, reset_settings_cache
from memberguard.logging import get_logger
from memberguard.service.audit import AuditRecorder
from memberguard.service.auth import MembershipService
from memberguard.service.captcha import CaptchaVerifier
from memberguard.service.email import EmailService
from memberguard.service.guarded_store import TimedStore
from memberguard.service.lockout import LockoutGuard
from memberguard.service.passwords import PasswordPolicyEngine
from memberguard.service.pipeline import (
    PasswordExpiryCheck,
    PolicyPipeline,
    SessionCheck,
    TwoFactorCheck,
)
from memberguard.service.sessions import SessionAuthority
from memberguard.service.two_factor import TwoFactorEngine
from memberguard.storage.memory import MemoryStore
from memberguard.storage.models import utcnow
from memberguard.storage.postgres import PostgresStore
from memberguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

LOCAL_RATE_LIMIT_MAX_KEYS = 4096


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None):
        self.settings = get_settings()
        self.policy = self.settings.security_policy()
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            backing_store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.data_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    encryption_key=self.settings.data_encryption_key,
                    statement_timeout=self.policy.store_timeout_seconds,
                )
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
        self.store = TimedStore(backing_store, self.policy.store_timeout_seconds)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for auth rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are in-memory only.",
                mode=fallback_mode,
            )

        self.audit = AuditRecorder(self.store, self.settings.auth_secret, clock=self.clock)
        self.passwords = PasswordPolicyEngine(self.store, self.policy, clock=self.clock)
        self.lockout = LockoutGuard(self.store, self.policy, clock=self.clock)
        self.sessions = SessionAuthority(self.store, self.audit, clock=self.clock)
        self.two_factor = TwoFactorEngine(
            self.store, self.lockout, self.policy, clock=self.clock
        )
        self.pipeline = PolicyPipeline(
            [
                SessionCheck(self.sessions, self.audit),
                TwoFactorCheck(),
                PasswordExpiryCheck(self.passwords),
            ]
        )
        self.captcha = CaptchaVerifier(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.membership = MembershipService(
            self.store,
            self.settings,
            self.policy,
            passwords=self.passwords,
            lockout=self.lockout,
            sessions=self.sessions,
            two_factor=self.two_factor,
            audit=self.audit,
            captcha=self.captcha,
            email=self.email,
            clock=self.clock,
        )
        # key -> (tokens, last refill, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            captcha_configured=self.captcha.is_configured,
            lockout_threshold=self.policy.lockout_threshold,
            session_seconds=int(self.policy.session_lifetime.total_seconds()),
        )

    def close(self) -> None:
        self.store.shutdown(wait=False)
        close_backing = getattr(self.store.inner, "close", None)
        if callable(close_backing):
            close_backing()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Optional[Callable[[], datetime]] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    ``clock`` replaces the wall clock for every component, so tests can step
    past lockout windows and password ages without sleeping.
    """

    global runtime

    with _runtime_lock:
        if runtime is not None:
            if runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime


def _prune_local_rate_limits(
    buckets: Dict[str, Tuple[float, datetime, datetime]], now: datetime
) -> None:
    """Drop buckets that have refilled, then the stalest ones past the cap."""

    for key in [k for k, (_, _, full_at) in buckets.items() if full_at <= now]:
        del buckets[key]
    overflow = len(buckets) - LOCAL_RATE_LIMIT_MAX_KEYS
    if overflow > 0:
        stalest = sorted(buckets, key=lambda k: buckets[k][1])[:overflow]
        for key in stalest:
            del buckets[key]


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce rate limits even when Redis is unavailable.

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
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        if len(runtime._local_rate_limits) > LOCAL_RATE_LIMIT_MAX_KEYS:
            _prune_local_rate_limits(runtime._local_rate_limits, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
