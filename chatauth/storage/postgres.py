from __future__ import annotations

import contextlib
from datetime import datetime
from typing import AsyncIterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from chatauth.logging import get_logger
from chatauth.storage.errors import ConstraintViolation, StoreUnavailable
from chatauth.storage.models import Identity, Session, SessionRecord, User, as_utc, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        lookup_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_auth_session_user_id ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_auth_session_expires_at ON auth_session (expires_at)",
)

# Failures that mean "the backend is not answering", as opposed to a bad query
_UNAVAILABLE_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout)


class PostgresStore:
    """Postgres-backed users and sessions over an async connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        try:
            await self.pool.open(wait=True, timeout=self.timeout)
        except _UNAVAILABLE_ERRORS as exc:
            self.logger.error("postgres_open_failed", error=str(exc))
            raise StoreUnavailable("session store unavailable", operation="open") from exc
        await self._ensure_schema()

    async def close(self) -> None:
        await self.pool.close()

    async def ping(self) -> None:
        async with self._connect("ping") as conn:
            await conn.execute("SELECT 1")

    @contextlib.asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            self.logger.warning(
                "postgres_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(
                "session store unavailable", operation=operation
            ) from exc

    async def _ensure_schema(self) -> None:
        """Create the user, credential and session tables if they are missing."""

        async with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    async def create_user(
        self, email: str, password_hash: str, password_algo: str
    ) -> User:
        """Insert the user and its credential in one transaction.

        The pool commits when the block exits cleanly and rolls back otherwise,
        so a failed credential insert leaves no user row behind.
        """
        user = User.new(email)
        try:
            async with self._connect("create_user") as conn:
                await conn.execute(
                    "INSERT INTO app_user (id, email, created_at) VALUES (%s, %s, %s)",
                    (user.id, user.email, user.created_at),
                )
                await conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user.id, password_hash, password_algo, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connect("get_user") as conn:
            cur = await conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connect("get_user_by_email") as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            )
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            async with self._connect("save_password") as conn:
                await conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    async def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        async with self._connect("get_password_record") as conn:
            cur = await conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    async def put(self, session: Session) -> None:
        try:
            async with self._connect("put") as conn:
                await conn.execute(
                    """
                    INSERT INTO auth_session (lookup_id, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (lookup_id) DO UPDATE
                    SET user_id = EXCLUDED.user_id,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at
                    """,
                    (
                        session.lookup_id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})

    async def get(self, lookup_id: str) -> Optional[SessionRecord]:
        async with self._connect("get") as conn:
            cur = await conn.execute(
                """
                SELECT s.lookup_id, s.user_id, s.created_at, s.expires_at, u.email
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                WHERE s.lookup_id = %s
                """,
                (lookup_id,),
            )
            row = await cur.fetchone()
        if not row:
            return None
        sess = Session(
            lookup_id=row["lookup_id"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )
        return SessionRecord(
            session=sess,
            identity=Identity(user_id=sess.user_id, email=row["email"]),
        )

    async def update_expiry(self, lookup_id: str, new_expires_at: datetime) -> None:
        new_expires_at = as_utc(new_expires_at)
        async with self._connect("update_expiry") as conn:
            # the guard keeps expiry monotonic under concurrent renewals
            await conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE lookup_id = %s AND expires_at < %s",
                (new_expires_at, lookup_id, new_expires_at),
            )

    async def delete(self, lookup_id: str) -> None:
        async with self._connect("delete") as conn:
            await conn.execute(
                "DELETE FROM auth_session WHERE lookup_id = %s", (lookup_id,)
            )

    async def purge_expired(self, now: datetime) -> int:
        async with self._connect("purge_expired") as conn:
            cur = await conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (as_utc(now),)
            )
            purged = max(cur.rowcount, 0)
        if purged:
            self.logger.info("postgres_sessions_purged", count=purged)
        return purged
