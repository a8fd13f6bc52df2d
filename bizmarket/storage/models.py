from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = False
    email_verification_token: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Session:
    """An issued login session. Immutable once created; never extended."""

    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: str = ""
    user_agent: str = ""

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return self.used_at is None and now < self.expires_at
