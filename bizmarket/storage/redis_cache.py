from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from bizmarket.logging import get_logger, token_fingerprint
from bizmarket.storage.errors import CacheUnavailable
from bizmarket.storage.models import Session

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"
_SESSION_FIELDS = ("user_id", "ip_address", "user_agent", "created_at", "expires_at")


def session_key(token: str) -> str:
    return f"{SESSION_KEY_PREFIX}{token}"


def _to_epoch(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return repr(value.timestamp())


def _from_epoch(raw: str) -> datetime:
    return datetime.fromtimestamp(float(raw), tz=timezone.utc)


def session_to_fields(session: Session) -> Dict[str, str]:
    """Serialize a session into the flat hash stored under ``session:<token>``."""
    return {
        "user_id": session.user_id,
        "ip_address": session.ip_address or "",
        "user_agent": session.user_agent or "",
        "created_at": _to_epoch(session.created_at),
        "expires_at": _to_epoch(session.expires_at),
    }


def session_from_fields(token: str, fields: Dict[str, Any]) -> Optional[Session]:
    """Parse a cached hash back into a Session.

    Returns None for records that are missing fields or carry unparseable
    timestamps; such records are treated as cache misses.
    """
    if not fields:
        return None
    try:
        user_id = fields["user_id"]
        expires_at = _from_epoch(fields["expires_at"])
        created_at = _from_epoch(fields.get("created_at") or fields["expires_at"])
    except (KeyError, TypeError, ValueError, OverflowError):
        return None
    if not user_id:
        return None
    return Session(
        token=token,
        user_id=str(user_id),
        created_at=created_at,
        expires_at=expires_at,
        ip_address=fields.get("ip_address") or "",
        user_agent=fields.get("user_agent") or "",
    )


class RedisCache:
    """Thin Redis wrapper for the session mirror and fixed-window counters.

    Every command is bounded by ``operation_timeout``; connection failures,
    timeouts and protocol errors surface as ``CacheUnavailable`` so callers can
    fall back to the durable store.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Fixed-window counter: INCR and arm the expiry in one atomic step. A key
    # that somehow lost its TTL is re-armed so it cannot count forever.
    _INCR_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], window)
  return {current, window}
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {current, ttl}
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        if client is None and not redis_url:
            raise ValueError("RedisCache requires a redis_url or a client")
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=operation_timeout,
                socket_connect_timeout=operation_timeout,
            )
        self.client = client
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Compute a Redis TTL from an absolute expiry, clamped to at least 1s."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - current).total_seconds()))

    @staticmethod
    def counter_key(namespace: str, subject: str) -> str:
        """Build a counter key with the subject hashed.

        Hashing keeps delimiter characters in emails or IPv6 addresses from
        colliding with other namespaces and keeps raw emails out of Redis.
        """

        digest = hashlib.sha256(subject.strip().lower().encode("utf-8")).hexdigest()
        return f"{namespace}:{digest}"

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise CacheUnavailable(operation, "timeout") from exc
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(operation, str(exc)) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    async def cache_session(self, session: Session, *, now: Optional[datetime] = None) -> None:
        ttl = self._ttl_seconds(session.expires_at, now)
        key = session_key(session.token)

        async def _write() -> None:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=session_to_fields(session))
                pipe.expire(key, ttl)
                await pipe.execute()

        await self._run("cache_session", _write())

    async def get_session(self, token: str) -> Optional[Session]:
        fields = await self._run("get_session", self.client.hgetall(session_key(token)))
        if not fields:
            return None
        session = session_from_fields(token, fields)
        if session is None:
            logger.warning(
                "session_cache_record_malformed",
                token_fp=token_fingerprint(token),
                fields=sorted(fields.keys()),
            )
        return session

    async def revoke_session(self, token: str) -> bool:
        deleted = await self._run("revoke_session", self.client.delete(session_key(token)))
        return bool(deleted)

    async def get_counter(self, key: str) -> int:
        raw = await self._run("get_counter", self.client.get(key))
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise CacheUnavailable("get_counter", "non-integer counter") from exc

    async def increment_counter(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment a fixed-window counter; returns ``(count, ttl_seconds)``."""

        count, ttl = await self._run(
            "increment_counter",
            self._incr_window(keys=[key], args=[max(1, int(window_seconds))]),
        )
        return int(count), int(ttl)

    async def counter_ttl(self, key: str) -> int:
        ttl = await self._run("counter_ttl", self.client.ttl(key))
        return max(0, int(ttl))

    async def close(self) -> None:
        close = getattr(self.client, "aclose", None) or self.client.close
        await close()


__all__ = [
    "RedisCache",
    "SESSION_KEY_PREFIX",
    "session_key",
    "session_from_fields",
    "session_to_fields",
]
