from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bizmarket.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing with a decoy verification for unknown accounts."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both paths pay
        # the same hashing cost.
        self._decoy_hash = self._hasher.hash("decoy-password-not-a-credential")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        """Constant-time check of ``password`` against an argon2 hash."""
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_decoy(self, password: str) -> None:
        self.verify(self._decoy_hash, password)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


def validate_password_strength(password: str) -> Optional[str]:
    """Return a human-readable problem with ``password`` or None when acceptable."""
    if len(password) < 8:
        return "password must be at least 8 characters"
    if len(password) > 128:
        return "password must be at most 128 characters"
    checks = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    if sum(checks) < 3:
        return (
            "password must contain at least 3 of: uppercase, lowercase, digit, special character"
        )
    return None
