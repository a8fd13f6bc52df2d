from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Coroutine, Optional, Set

from bizmarket.logging import email_fingerprint, get_logger
from bizmarket.service.errors import (
    AccountLockedError,
    AccountUnverifiedError,
    InvalidCredentialsError,
)
from bizmarket.service.passwords import PasswordService
from bizmarket.service.rate_limit import RateLimiter
from bizmarket.service.sessions import SessionManager
from bizmarket.storage.errors import StoreUnavailable
from bizmarket.storage.models import Session, User
from bizmarket.storage.redis_cache import RedisCache

logger = get_logger(__name__)

FAILED_LOGIN_NAMESPACE = "failed_login"


@dataclass
class LoginResult:
    user: User
    session: Session


class LoginGuard:
    """Runs one login attempt: lookup, activation, lockout, password, session.

    Unknown emails are handled exactly like wrong passwords: a decoy hash is
    verified, a failure is counted, and the same error is raised. The failed
    counter lives in a fixed window of ``lockout_seconds``; while it is at or
    over ``max_attempts`` every attempt for that email is refused, including
    ones with the correct password. Success does not reset the counter.
    """

    def __init__(
        self,
        store: Any,
        sessions: SessionManager,
        limiter: RateLimiter,
        passwords: PasswordService,
        *,
        max_attempts: int = 5,
        lockout_seconds: int = 15 * 60,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.limiter = limiter
        self.passwords = passwords
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._background: Set[asyncio.Task] = set()

    @staticmethod
    def failed_key(email: str) -> str:
        return RedisCache.counter_key(FAILED_LOGIN_NAMESPACE, email)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        email = email.strip().lower()
        email_fp = email_fingerprint(email)
        failed_key = self.failed_key(email)

        user: Optional[User] = await asyncio.to_thread(self.store.get_user_by_email, email)

        if user is not None and not user.is_active:
            logger.info("login_rejected", reason="unverified", email_fp=email_fp)
            raise AccountUnverifiedError()

        failures = await self.limiter.current(failed_key)
        if failures >= self.max_attempts:
            retry_after = await self.limiter.retry_after(failed_key, self.lockout_seconds)
            logger.warning("login_rejected", reason="locked", email_fp=email_fp, failures=failures)
            raise AccountLockedError(retry_after=retry_after)

        if user is None:
            await asyncio.to_thread(self.passwords.verify_decoy, password)
            verified = False
        else:
            verified = await asyncio.to_thread(self.passwords.verify, user.password_hash, password)

        if not verified:
            failures = await self.limiter.hit(failed_key, self.lockout_seconds)
            logger.info(
                "login_rejected", reason="invalid_credentials", email_fp=email_fp, failures=failures
            )
            raise InvalidCredentialsError()

        session = await self.sessions.create(user.id, ip_address, user_agent)
        self._schedule(self._update_last_login(user.id, session.created_at))
        if self.passwords.needs_rehash(user.password_hash):
            self._schedule(self._rehash_password(user.id, password))
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, session=session)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _update_last_login(self, user_id: str, at: datetime) -> None:
        try:
            await asyncio.to_thread(self.store.update_last_login, user_id, at)
        except StoreUnavailable as exc:
            logger.warning("last_login_update_failed", user_id=user_id, error=str(exc))

    async def _rehash_password(self, user_id: str, password: str) -> None:
        """Re-hash with the current Argon2 parameters after a verified login."""
        new_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            await asyncio.to_thread(self.store.update_password_hash, user_id, new_hash)
        except StoreUnavailable as exc:
            logger.warning("password_rehash_failed", user_id=user_id, error=str(exc))
            return
        logger.info("password_rehashed", user_id=user_id)

    async def drain(self) -> None:
        """Wait for outstanding best-effort writes (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
