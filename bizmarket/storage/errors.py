from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The durable store could not be reached or did not answer in time.

    Callers must fail closed: a request that needs the durable tier is treated
    as unauthenticated rather than guessed at.
    """

    def __init__(self, operation: str, reason: str = ""):
        super().__init__(f"durable store unavailable during {operation}")
        self.operation = operation
        self.reason = reason


class CacheUnavailable(Exception):
    """The volatile cache could not be reached, timed out, or replied garbage."""

    def __init__(self, operation: str, reason: str = ""):
        super().__init__(f"cache unavailable during {operation}")
        self.operation = operation
        self.reason = reason


__all__ = ["ConstraintViolation", "StoreUnavailable", "CacheUnavailable"]
