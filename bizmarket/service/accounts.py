from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from bizmarket.logging import email_fingerprint, get_logger
from bizmarket.service.email import EmailService
from bizmarket.service.errors import ConflictError, NotFoundError, ValidationError
from bizmarket.service.passwords import PasswordService, validate_password_strength
from bizmarket.service.sessions import BulkRevocation, SessionManager
from bizmarket.storage.errors import ConstraintViolation
from bizmarket.storage.models import User

logger = get_logger(__name__)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class SignupResult:
    user: User
    verification_token: str


class AccountService:
    """Account lifecycle around the login path: signup, verification, password reset."""

    def __init__(
        self,
        store: Any,
        sessions: SessionManager,
        passwords: PasswordService,
        *,
        mailer: Optional[EmailService] = None,
        reset_ttl_minutes: int = 30,
        verification_ttl_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.passwords = passwords
        self.mailer = mailer or EmailService()
        self.reset_ttl = timedelta(minutes=reset_ttl_minutes)
        self.verification_ttl = timedelta(hours=verification_ttl_hours)
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _check_password(password: str) -> None:
        problem = validate_password_strength(password)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})

    async def _send(self, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        delivered = await asyncio.to_thread(send, *args, **kwargs)
        if not delivered:
            logger.warning("account_email_not_delivered", kind=send.__name__)

    async def signup(
        self, email: str, password: str, *, first_name: str = "", last_name: str = ""
    ) -> SignupResult:
        """Create an inactive account and send its verification link."""
        self._check_password(password)
        token = secrets.token_urlsafe(32)
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                email,
                password_hash,
                first_name=first_name,
                last_name=last_name,
                is_active=False,
                email_verification_token=token,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        logger.info("account_created", user_id=user.id, email_fp=email_fingerprint(user.email))
        await self._send(self.mailer.send_email_verification, user.email, token)
        return SignupResult(user=user, verification_token=token)

    async def verify_email(self, token: str) -> User:
        if not token:
            raise ValidationError("invalid or expired verification token")
        created_after = self._now() - self.verification_ttl
        user = await asyncio.to_thread(
            self.store.activate_user_by_token, token, created_after=created_after
        )
        if user is None:
            raise ValidationError("invalid or expired verification token")
        logger.info("account_verified", user_id=user.id)
        return user

    async def activate(self, user_id: str) -> User:
        """Administrative activation, bypassing the email link."""
        user = await asyncio.to_thread(self.store.activate_user, user_id)
        if user is None:
            raise NotFoundError("user not found")
        logger.info("account_activated", user_id=user.id)
        return user

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a single-use reset token, or None for unknown emails.

        Callers must answer identically in both cases. Only the SHA-256 of
        the token is stored; any earlier outstanding token is superseded.
        """
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if user is None:
            logger.info("password_reset_unknown_email", email_fp=email_fingerprint(email))
            return None
        token = secrets.token_urlsafe(32)
        await asyncio.to_thread(
            self.store.create_reset_token,
            user.id,
            hash_reset_token(token),
            self._now() + self.reset_ttl,
        )
        logger.info("password_reset_requested", user_id=user.id)
        await self._send(
            self.mailer.send_password_reset,
            user.email,
            token,
            ttl_minutes=int(self.reset_ttl.total_seconds() // 60),
        )
        return token

    async def reset_password(self, token: str, new_password: str) -> BulkRevocation:
        """Set a new password and revoke every session the user had."""
        self._check_password(new_password)
        user_id = await asyncio.to_thread(
            self.store.consume_reset_token, hash_reset_token(token or ""), self._now()
        )
        if user_id is None:
            raise ValidationError("invalid or expired reset token")
        password_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        await asyncio.to_thread(self.store.update_password_hash, user_id, password_hash)
        report = await self.sessions.revoke_all(user_id)
        logger.info(
            "password_reset_completed",
            user_id=user_id,
            sessions_revoked=report.revoked,
            revocation_complete=report.complete,
        )
        return report
