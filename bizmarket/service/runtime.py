from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from bizmarket.config import Settings, get_settings, reset_settings_cache
from bizmarket.logging import get_logger
from bizmarket.service.accounts import AccountService
from bizmarket.service.email import EmailService
from bizmarket.service.login_guard import LoginGuard
from bizmarket.service.passwords import PasswordService
from bizmarket.service.rate_limit import RateLimiter, rules_from_settings
from bizmarket.service.sessions import SessionManager
from bizmarket.storage.memory import MemoryStore
from bizmarket.storage.postgres import PostgresStore
from bizmarket.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_UNSET: Any = object()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Every collaborator is passed explicitly to the services that use it;
    tests substitute ``store``, ``cache`` or ``clock`` through the constructor.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Any = _UNSET,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = store if store is not None else self._build_store()
        self.cache = self._build_cache() if cache is _UNSET else cache

        s = self.settings
        self.passwords = PasswordService()
        self.sessions = SessionManager(
            self.store,
            self.cache,
            ttl_minutes=s.session_ttl_minutes,
            user_agent_max_length=s.user_agent_max_length,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(self.cache, rules_from_settings(s))
        self.login_guard = LoginGuard(
            self.store,
            self.sessions,
            self.rate_limiter,
            self.passwords,
            max_attempts=s.max_login_attempts,
            lockout_seconds=s.lockout_window_seconds,
        )
        self.email = EmailService(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
            base_url=s.app_base_url,
        )
        self.accounts = AccountService(
            self.store,
            self.sessions,
            self.passwords,
            mailer=self.email,
            reset_ttl_minutes=s.password_reset_ttl_minutes,
            verification_ttl_hours=s.email_verification_ttl_hours,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            session_ttl_minutes=s.session_ttl_minutes,
        )

    def _build_store(self) -> Any:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore()
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.db_timeout_seconds,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
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
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        redis_url = self.settings.redis_url
        if not redis_url:
            logger.warning(
                "redis_disabled",
                message="REDIS_URL unset; sessions are durable-only and rate limits are not enforced",
            )
            return None
        cache = RedisCache(redis_url, operation_timeout=self.settings.cache_timeout_seconds)
        try:
            cache.verify_connection()
        except Exception as exc:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(redis_url),
                error=str(exc),
                message=(
                    "Running without Redis; sessions are durable-only and rate limits fail open."
                ),
            )
            return None
        return cache

    async def close(self) -> None:
        await self.login_guard.drain()
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


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


def reset_runtime_for_tests(**overrides: Any) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    ``overrides`` are forwarded to ``Runtime`` (``store``, ``cache``, ``clock``).
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime
