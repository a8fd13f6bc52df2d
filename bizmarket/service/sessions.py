from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from bizmarket.logging import get_logger, token_fingerprint
from bizmarket.service.errors import PartialRevocationError
from bizmarket.storage.errors import CacheUnavailable, StoreUnavailable
from bizmarket.storage.models import Session

logger = get_logger(__name__)

TOKEN_BYTES = 32
CACHE_REVOKE_ATTEMPTS = 2
_TOKEN_RE = re.compile(r"[0-9a-f]{%d}" % (TOKEN_BYTES * 2))


def generate_session_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded (64 chars)."""
    return secrets.token_hex(TOKEN_BYTES)


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and _TOKEN_RE.fullmatch(token) is not None


@dataclass
class BulkRevocation:
    """Outcome of revoking every active session of one user."""

    user_id: str
    total: int = 0
    revoked: int = 0
    failures: List[dict] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures


class SessionManager:
    """Issues, validates, lists and destroys sessions across both tiers.

    The durable store is the source of truth for whether a session exists.
    The cache is an optional accelerator: writes to it are best-effort, reads
    from it are re-validated against the stored expiry, and any cache failure
    falls back to the durable store. Durable failures fail closed.
    """

    def __init__(
        self,
        store: Any,
        cache: Any = None,
        *,
        ttl_minutes: int = 24 * 60,
        user_agent_max_length: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
        token_factory: Callable[[], str] = generate_session_token,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = timedelta(minutes=ttl_minutes)
        self.user_agent_max_length = user_agent_max_length
        self._clock = clock
        self._token_factory = token_factory

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _durable(self, fn: Callable[..., Any], *args: Any) -> Any:
        # Store drivers are blocking; run them off the event loop so requests
        # for unrelated sessions are not serialized.
        return await asyncio.to_thread(fn, *args)

    async def create(
        self, user_id: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> Session:
        now = self._now()
        session = Session(
            token=self._token_factory(),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.ttl,
            ip_address=ip_address or "",
            user_agent=(user_agent or "")[: self.user_agent_max_length],
        )
        token_fp = token_fingerprint(session.token)

        try:
            await self._durable(self.store.insert_session, session)
        except StoreUnavailable:
            logger.error("session_create_failed", user_id=user_id, token_fp=token_fp)
            raise

        if self.cache is not None:
            try:
                await self.cache.cache_session(session, now=now)
            except CacheUnavailable as exc:
                logger.warning(
                    "session_cache_write_failed",
                    token_fp=token_fp,
                    error=str(exc),
                )

        logger.info("session_created", user_id=user_id, token_fp=token_fp)
        return session

    async def get(self, token: Optional[str]) -> Optional[Session]:
        """Return the live session for ``token`` or None.

        Not-found and expired collapse into None. An expired record found in
        the cache is torn down in both tiers before returning. Raises
        ``StoreUnavailable`` when the durable fallback cannot be consulted.
        """
        if not is_well_formed_token(token):
            return None
        now = self._now()

        if self.cache is not None:
            cached: Optional[Session] = None
            try:
                cached = await self.cache.get_session(token)
            except CacheUnavailable as exc:
                logger.warning(
                    "session_cache_read_failed",
                    token_fp=token_fingerprint(token),
                    error=str(exc),
                )
            if cached is not None:
                if cached.is_valid(now):
                    return cached
                await self._expire_lazily(token)
                return None

        return await self._durable(self.store.get_active_session, token, now)

    async def _expire_lazily(self, token: str) -> None:
        token_fp = token_fingerprint(token)
        logger.info("session_expired_cleanup", token_fp=token_fp)
        try:
            await self.revoke(token)
        except (PartialRevocationError, StoreUnavailable) as exc:
            # Expiry filters still reject the session on every later read
            logger.warning("session_expired_cleanup_failed", token_fp=token_fp, error=str(exc))

    async def revoke(self, token: str) -> None:
        """Delete ``token`` from both tiers, attempting each regardless of the other.

        The cache delete is retried once. Raises ``StoreUnavailable`` when
        neither tier could be cleaned and ``PartialRevocationError`` when
        exactly one could.
        """
        token_fp = token_fingerprint(token)
        durable_error: Optional[StoreUnavailable] = None
        cache_error: Optional[CacheUnavailable] = None

        try:
            await self._durable(self.store.delete_session, token)
        except StoreUnavailable as exc:
            durable_error = exc

        if self.cache is not None:
            for attempt in range(1, CACHE_REVOKE_ATTEMPTS + 1):
                try:
                    await self.cache.revoke_session(token)
                except CacheUnavailable as exc:
                    cache_error = exc
                    logger.warning(
                        "session_cache_revoke_failed",
                        token_fp=token_fp,
                        attempt=attempt,
                        error=str(exc),
                    )
                    continue
                cache_error = None
                break

        if durable_error is not None and (cache_error is not None or self.cache is None):
            logger.error("session_revoke_failed", token_fp=token_fp, error=str(durable_error))
            raise durable_error
        if durable_error is not None:
            logger.warning("session_revoke_partial", token_fp=token_fp, failed_tier="durable")
            raise PartialRevocationError("durable", token_fp=token_fp)
        if cache_error is not None:
            logger.warning(
                "session_revoke_partial",
                token_fp=token_fp,
                failed_tier="cache",
                error=str(cache_error),
            )
            raise PartialRevocationError("cache", token_fp=token_fp)

        logger.info("session_revoked", token_fp=token_fp)

    async def list_active(self, user_id: str) -> List[Session]:
        # Always durable: the cache has no per-user index
        return await self._durable(self.store.list_active_sessions, user_id, self._now())

    async def revoke_all(self, user_id: str) -> BulkRevocation:
        """Revoke every active session of ``user_id``; individual failures do not stop the batch."""
        sessions = await self.list_active(user_id)
        report = BulkRevocation(user_id=user_id, total=len(sessions))
        for session in sessions:
            token_fp = token_fingerprint(session.token)
            try:
                await self.revoke(session.token)
            except PartialRevocationError as exc:
                # A surviving copy in either tier still authenticates
                report.failures.append({"token_fp": token_fp, "failed_tier": exc.failed_tier})
                continue
            except StoreUnavailable:
                report.failures.append({"token_fp": token_fp, "failed_tier": "both"})
                continue
            report.revoked += 1

        log = logger.warning if report.failures else logger.info
        log(
            "sessions_bulk_revoked",
            user_id=user_id,
            total=report.total,
            revoked=report.revoked,
            failed=len(report.failures),
        )
        return report

    async def cleanup(self) -> int:
        """Delete expired durable rows; the cache expires its own keys."""
        removed = await self._durable(self.store.delete_expired_sessions, self._now())
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed
