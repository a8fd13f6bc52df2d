from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - account_unverified (403)
    - not_found (404)
    - conflict (409)
    - rate_limited / account_locked (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.retry_after = retry_after


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BotDetectedError(ValidationError):
    """Anti-bot heuristic tripped. The message never says which one."""

    def __init__(self, reason: str = "") -> None:
        super().__init__("invalid request")
        # Kept for logs only; never rendered to the client
        self.reason = reason


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidSessionError(AuthenticationError):
    """Session token missing, malformed, revoked or expired."""

    def __init__(self) -> None:
        super().__init__("authentication required")


class AccountUnverifiedError(ServiceError):
    """Account exists but has not completed email verification (403)."""
    status_code = 403
    error_code = "account_unverified"

    def __init__(self) -> None:
        super().__init__("account not verified")


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class AccountLockedError(ServiceError):
    """Too many failed logins; the lock lapses with the counter window (429)."""
    status_code = 429
    error_code = "account_locked"

    def __init__(self, retry_after: Optional[int] = None) -> None:
        super().__init__(
            "account temporarily locked due to too many failed login attempts",
            retry_after=retry_after,
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A required backing store is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "service unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


REVOCATION_RETRY_AFTER_SECONDS = 5


class PartialRevocationError(ServiceUnavailableError):
    """One storage tier dropped the session, the other did not.

    The session may still authenticate from the surviving copy, so callers
    report this as a failure and the client retries.
    ``failed_tier`` is ``"cache"`` or ``"durable"``.
    """

    def __init__(self, failed_tier: str, *, token_fp: str = "-") -> None:
        super().__init__(
            "session revocation incomplete",
            detail={"failed_tier": failed_tier},
            retry_after=REVOCATION_RETRY_AFTER_SECONDS,
        )
        self.failed_tier = failed_tier
        self.token_fp = token_fp


__all__ = [
    "ServiceError",
    "ValidationError",
    "BotDetectedError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidSessionError",
    "AccountUnverifiedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
    "ServiceUnavailableError",
    "PartialRevocationError",
]
