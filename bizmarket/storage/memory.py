from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from bizmarket.logging import get_logger
from bizmarket.storage.errors import ConstraintViolation
from bizmarket.storage.models import PasswordResetToken, Session, User, utcnow


class MemoryStore:
    """In-process durable-store stand-in for tests and local development.

    Mirrors the PostgresStore contract, including the expiry filters on
    session reads, so the session manager behaves identically on either.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock for all data operations; nested acquisition from helpers is allowed
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # user / credentials
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = False,
        email_verification_token: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                email_verification_token=email_verification_token,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def activate_user(self, user_id: str, *, verified_at: Optional[datetime] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = True
            user.email_verification_token = None
            user.email_verified_at = user.email_verified_at or verified_at or utcnow()
            return replace(user)

    def activate_user_by_token(
        self, token: str, *, created_after: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verification_token and u.email_verification_token == token
                ),
                None,
            )
            if not user:
                return None
            if created_after and user.created_at <= created_after:
                return None
            return self.activate_user(user.id)

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            return True

    # sessions
    def insert_session(self, session: Session) -> None:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.token in self.sessions:
                raise ConstraintViolation("session token already exists", {"field": "session_id"})
            self.sessions[session.token] = session

    def get_active_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            if session is None or session.expires_at <= now:
                return None
            return session

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                s for s in self.sessions.values() if s.user_id == user_id and s.expires_at > now
            ]
        return sorted(active, key=lambda s: s.created_at, reverse=True)

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(token, None) is not None

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [token for token, s in self.sessions.items() if s.expires_at <= now]
            for token in stale:
                self.sessions.pop(token, None)
        return len(stale)

    # password reset
    def create_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            # A new request supersedes any outstanding token for the user
            for key in [k for k, t in self.reset_tokens.items() if t.user_id == user_id]:
                self.reset_tokens.pop(key, None)
            record = PasswordResetToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.reset_tokens[token_hash] = record
            return replace(record)

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            if record is None or not record.is_usable(now):
                return None
            record.used_at = now
            return record.user_id
