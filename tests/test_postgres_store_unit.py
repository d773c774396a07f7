import contextlib
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from chatauth.storage.errors import ConstraintViolation, StoreUnavailable
from chatauth.storage.models import Session
from chatauth.storage.postgres import PostgresStore

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    async def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    async def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.execute_error is not None and len(self.pool.executed) >= self.pool.fail_at:
            raise self.pool.execute_error
        return self.pool.cursor


class FakePool:
    """Stands in for AsyncConnectionPool; records statements instead of running them.

    Like the real pool, a connection block commits on clean exit and rolls
    back when it raises.
    """

    def __init__(self, *, connect_error=None, execute_error=None, fail_at=1, cursor=None):
        self.connect_error = connect_error
        self.execute_error = execute_error
        self.fail_at = fail_at
        self.cursor = cursor or FakeCursor()
        self.executed = []
        self.outcomes = []

    @contextlib.asynccontextmanager
    async def connection(self):
        if self.connect_error is not None:
            raise self.connect_error
        try:
            yield FakeConnection(self)
        except BaseException:
            self.outcomes.append("rollback")
            raise
        self.outcomes.append("commit")


class RecordingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **kwargs):
        self.events.append(("info", event, kwargs))

    def warning(self, event, **kwargs):
        self.events.append(("warning", event, kwargs))

    def error(self, event, **kwargs):
        self.events.append(("error", event, kwargs))


def _store(pool: FakePool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.timeout = 1.0
    store.logger = RecordingLogger()
    store.pool = pool
    return store


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc",
    [psycopg.OperationalError("server closed"), psycopg.InterfaceError("closed"), PoolTimeout("timeout")],
)
async def test_connection_failures_become_store_unavailable(exc):
    store = _store(FakePool(connect_error=exc))

    with pytest.raises(StoreUnavailable) as info:
        await store.get("abc")

    assert info.value.operation == "get"
    assert store.logger.events[0][1] == "postgres_unavailable"


@pytest.mark.asyncio
async def test_query_failure_mid_connection_becomes_store_unavailable():
    store = _store(FakePool(execute_error=psycopg.OperationalError("terminating connection")))

    with pytest.raises(StoreUnavailable) as info:
        await store.delete("abc")

    assert info.value.operation == "delete"


@pytest.mark.asyncio
async def test_duplicate_email_is_constraint_violation():
    store = _store(FakePool(execute_error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as info:
        await store.create_user("alice@example.com", "hash", "argon2id")

    assert info.value.detail == {"field": "email"}
    assert store.pool.outcomes == ["rollback"]


@pytest.mark.asyncio
async def test_create_user_writes_user_and_credential_together():
    pool = FakePool()
    store = _store(pool)

    user = await store.create_user("alice@example.com", "hash", "argon2id")

    assert [sql.split(" (")[0] for sql, _ in pool.executed] == [
        "INSERT INTO app_user",
        "INSERT INTO user_auth_credential",
    ]
    assert pool.executed[1][1] == (user.id, "hash", "argon2id", user.created_at)
    assert pool.outcomes == ["commit"]


@pytest.mark.asyncio
async def test_credential_insert_failure_rolls_back_user():
    pool = FakePool(execute_error=psycopg.OperationalError("connection lost"), fail_at=2)
    store = _store(pool)

    with pytest.raises(StoreUnavailable) as info:
        await store.create_user("alice@example.com", "hash", "argon2id")

    assert info.value.operation == "create_user"
    assert len(pool.executed) == 2
    assert pool.outcomes == ["rollback"]


@pytest.mark.asyncio
async def test_session_for_missing_user_is_constraint_violation():
    store = _store(FakePool(execute_error=errors.ForeignKeyViolation("fk")))
    session = Session(lookup_id="abc", user_id="ghost", expires_at=T0, created_at=T0)

    with pytest.raises(ConstraintViolation):
        await store.put(session)


@pytest.mark.asyncio
async def test_get_joins_identity():
    row = {
        "lookup_id": "abc",
        "user_id": "u1",
        "created_at": T0,
        "expires_at": T0 + timedelta(days=30),
        "email": "alice@example.com",
    }
    pool = FakePool(cursor=FakeCursor(row=row))
    store = _store(pool)

    record = await store.get("abc")

    assert record.identity.user_id == "u1"
    assert record.identity.email == "alice@example.com"
    assert record.expires_at == T0 + timedelta(days=30)
    assert "JOIN app_user" in pool.executed[0][0]
    assert pool.executed[0][1] == ("abc",)


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    store = _store(FakePool(cursor=FakeCursor(row=None)))
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_update_expiry_only_moves_forward():
    pool = FakePool()
    store = _store(pool)
    new_expiry = T0 + timedelta(days=30)

    await store.update_expiry("abc", new_expiry)

    sql, params = pool.executed[0]
    assert sql.endswith("WHERE lookup_id = %s AND expires_at < %s")
    assert params == (new_expiry, "abc", new_expiry)


@pytest.mark.asyncio
async def test_purge_expired_reports_rowcount():
    pool = FakePool(cursor=FakeCursor(rowcount=3))
    store = _store(pool)

    assert await store.purge_expired(T0) == 3
    assert pool.executed[0] == ("DELETE FROM auth_session WHERE expires_at <= %s", (T0,))
    assert store.logger.events == [("info", "postgres_sessions_purged", {"count": 3})]


@pytest.mark.asyncio
async def test_purge_expired_unknown_rowcount():
    store = _store(FakePool(cursor=FakeCursor(rowcount=-1)))
    assert await store.purge_expired(T0) == 0


@pytest.mark.asyncio
async def test_ensure_schema_runs_each_statement():
    pool = FakePool()
    store = _store(pool)

    await store._ensure_schema()

    statements = [sql for sql, _ in pool.executed]
    assert any("CREATE TABLE IF NOT EXISTS auth_session" in sql for sql in statements)
    assert any("ix_auth_session_expires_at" in sql for sql in statements)
