from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from bizmarket.logging import get_logger
from bizmarket.service.errors import RateLimitedError
from bizmarket.storage.errors import CacheUnavailable
from bizmarket.storage.redis_cache import RedisCache

logger = get_logger(__name__)

LOGIN = "login"
SIGNUP = "signup"
FORGOT_PASSWORD = "forgot_password"
CONTACT = "contact"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int = 0
    retry_after: int = 0


def rules_from_settings(settings: Any) -> Dict[str, RateLimitRule]:
    """Per-action thresholds. Login and signup are keyed by client IP,
    password reset and contact forms by email address."""
    return {
        LOGIN: RateLimitRule(settings.rate_limit_login_per_minute, 60),
        SIGNUP: RateLimitRule(settings.rate_limit_signup_per_hour, 3600),
        FORGOT_PASSWORD: RateLimitRule(settings.rate_limit_forgot_password_per_hour, 3600),
        CONTACT: RateLimitRule(settings.rate_limit_contact_per_hour, 3600),
    }


class RateLimiter:
    """Fixed-window counters stored in the volatile cache.

    Fails open: with no cache configured, or when the cache errors or times
    out, every request is allowed. Each fail-open decision caused by a cache
    error is logged at warning level.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        rules: Optional[Mapping[str, RateLimitRule]] = None,
    ) -> None:
        self.cache = cache
        self.rules: Dict[str, RateLimitRule] = dict(rules or {})
        if cache is None:
            logger.warning("rate_limiter_disabled", reason="no cache configured")

    @staticmethod
    def key(action: str, subject: str) -> str:
        return RedisCache.counter_key(f"rate_limit:{action}", subject)

    def _fail_open(self, operation: str, exc: Exception) -> None:
        logger.warning("rate_limit_fail_open", operation=operation, error=str(exc))

    async def check(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        if self.cache is None:
            return RateDecision(allowed=True)
        try:
            count = await self.cache.get_counter(key)
            if count >= limit:
                ttl = await self.cache.counter_ttl(key)
                return RateDecision(allowed=False, count=count, retry_after=ttl or window_seconds)
            # Check-then-increment may overshoot by the number of racing callers
            count, _ = await self.cache.increment_counter(key, window_seconds)
        except CacheUnavailable as exc:
            self._fail_open("check", exc)
            return RateDecision(allowed=True)
        return RateDecision(allowed=True, count=count)

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        return (await self.check(key, limit, window_seconds)).allowed

    async def enforce(self, action: str, subject: str) -> None:
        """Raise ``RateLimitedError`` when ``subject`` is over the ``action`` threshold."""
        rule = self.rules[action]
        decision = await self.check(self.key(action, subject), rule.limit, rule.window_seconds)
        if not decision.allowed:
            logger.info("rate_limited", action=action, count=decision.count)
            raise RateLimitedError(
                "too many requests, please try again later",
                retry_after=decision.retry_after,
                detail={"retry_after": decision.retry_after},
            )

    async def current(self, key: str) -> int:
        """Read a counter without touching it; 0 when the cache is unavailable."""
        if self.cache is None:
            return 0
        try:
            return await self.cache.get_counter(key)
        except CacheUnavailable as exc:
            self._fail_open("current", exc)
            return 0

    async def hit(self, key: str, window_seconds: int) -> int:
        """Count one event unconditionally; 0 when the cache is unavailable."""
        if self.cache is None:
            return 0
        try:
            count, _ = await self.cache.increment_counter(key, window_seconds)
        except CacheUnavailable as exc:
            self._fail_open("hit", exc)
            return 0
        return count

    async def retry_after(self, key: str, default: int) -> int:
        if self.cache is None:
            return default
        try:
            return await self.cache.counter_ttl(key) or default
        except CacheUnavailable:
            return default
