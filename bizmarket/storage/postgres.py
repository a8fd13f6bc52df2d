from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from bizmarket.logging import get_logger
from bizmarket.storage.errors import ConstraintViolation, StoreUnavailable
from bizmarket.storage.models import PasswordResetToken, Session, User

_USER_COLUMNS = (
    "id, email, password_hash, first_name, last_name, is_active, "
    "email_verification_token, email_verified_at, last_login_at, created_at"
)
_SESSION_COLUMNS = "session_id, user_id, ip_address, user_agent, created_at, expires_at"


class PostgresStore:
    """Durable store backed by Postgres via a psycopg connection pool.

    Every call borrows a pooled connection with a bounded wait and runs under
    a server-side ``statement_timeout``. Connectivity problems surface as
    ``StoreUnavailable``.
    """

    REQUIRED_TABLES = ("users", "user_sessions", "password_reset_tokens")

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 10.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", operation=operation)
            raise StoreUnavailable(operation, "pool timeout") from exc
        except psycopg.OperationalError as exc:
            # Includes QueryCanceled raised by statement_timeout
            self.logger.error("postgres_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, str(exc)) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect("verify_schema") as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect("ping") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            is_active=bool(row.get("is_active")),
            email_verification_token=row.get("email_verification_token"),
            email_verified_at=row.get("email_verified_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            token=row["session_id"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address") or "",
            user_agent=row.get("user_agent") or "",
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, password_hash, first_name, last_name,
                                       is_active, email_verification_token)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        first_name,
                        last_name,
                        is_active,
                        email_verification_token,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def activate_user(self, user_id: str, *, verified_at: Optional[datetime] = None) -> Optional[User]:
        with self._connect("activate_user") as conn:
            row = conn.execute(
                f"""
                UPDATE users
                   SET is_active = TRUE,
                       email_verification_token = NULL,
                       email_verified_at = COALESCE(email_verified_at, %s, now()),
                       updated_at = now()
                 WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (verified_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def activate_user_by_token(
        self, token: str, *, created_after: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect("activate_user_by_token") as conn:
            row = conn.execute(
                f"""
                UPDATE users
                   SET is_active = TRUE,
                       email_verification_token = NULL,
                       email_verified_at = COALESCE(email_verified_at, now()),
                       updated_at = now()
                 WHERE email_verification_token = %s
                   AND (%s::timestamptz IS NULL OR created_at > %s::timestamptz)
                RETURNING {_USER_COLUMNS}
                """,
                (token, created_after, created_after),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect("update_last_login") as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s, updated_at = now() WHERE id = %s",
                (at, user_id),
            )

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect("update_password_hash") as conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    # sessions
    def insert_session(self, session: Session) -> None:
        try:
            with self._connect("insert_session") as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (id, session_id, user_id, ip_address, user_agent,
                                               created_at, updated_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        str(uuid.uuid4()),
                        session.token,
                        session.user_id,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "session_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})

    def get_active_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._connect("get_active_session") as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_sessions
                 WHERE session_id = %s AND expires_at > %s
                """,
                (token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect("list_active_sessions") as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_sessions
                 WHERE user_id = %s AND expires_at > %s
                 ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session(self, token: str) -> bool:
        with self._connect("delete_session") as conn:
            cur = conn.execute("DELETE FROM user_sessions WHERE session_id = %s", (token,))
            return cur.rowcount > 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect("delete_expired_sessions") as conn:
            cur = conn.execute("DELETE FROM user_sessions WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # password reset
    def create_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        record_id = str(uuid.uuid4())
        try:
            with self._connect("create_reset_token") as conn:
                conn.execute(
                    "DELETE FROM password_reset_tokens WHERE user_id = %s", (user_id,)
                )
                row = conn.execute(
                    """
                    INSERT INTO password_reset_tokens (id, user_id, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (record_id, user_id, token_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return PasswordResetToken(
            id=record_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=row["created_at"],
        )

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._connect("consume_reset_token") as conn:
            row = conn.execute(
                """
                UPDATE password_reset_tokens
                   SET used_at = %s
                 WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                RETURNING user_id
                """,
                (now, token_hash, now),
            ).fetchone()
        return str(row["user_id"]) if row else None
