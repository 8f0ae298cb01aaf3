from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from sessionforge.logging import get_logger
from sessionforge.storage.errors import ConstraintViolation, StoreUnavailable
from sessionforge.storage.models import RevokeReason, TokenStatus
from sessionforge.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TTL = timedelta(days=14)
ROOT_LOCK = "SELECT 1 FROM refresh_token WHERE id = %s FOR UPDATE"


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays canned result rows in order and records every statement."""

    def __init__(self, results=None, raises=None):
        self.results = list(results or [])
        self.raises = raises
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        rows = self.results.pop(0) if self.results else []
        return FakeResult(rows)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


class FailingPool:
    def __init__(self, exc):
        self.exc = exc

    @contextmanager
    def connection(self):
        raise self.exc
        yield  # pragma: no cover


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger(__name__)
    store.pool = pool
    return store


def _token_row(token_id, **overrides):
    row = {
        "id": token_id,
        "principal_id": "11111111-1111-1111-1111-111111111111",
        "issued_at": NOW,
        "expires_at": NOW + TTL,
        "root_id": token_id,
        "parent_id": None,
        "replaced_by": None,
        "revoked_at": None,
        "revoked_reason": None,
    }
    row.update(overrides)
    return row


def test_unconfigured_pool_is_never_touched():
    store = _store(DummyPool())
    row = _token_row("t0", revoked_at=NOW, revoked_reason="logout")
    token = store._token_from_row(row)
    assert token.revoked_reason is RevokeReason.LOGOUT
    assert token.principal_id == row["principal_id"]


@pytest.mark.parametrize(
    "exc", [errors.OperationalError("connection refused"), PoolTimeout("pool exhausted")]
)
def test_unreachable_database_raises_store_unavailable(exc):
    store = _store(FailingPool(exc))
    with pytest.raises(StoreUnavailable):
        store.get_principal("anything")


def test_duplicate_login_maps_to_constraint_violation():
    store = _store(FakePool(FakeConnection(raises=errors.UniqueViolation("duplicate key"))))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_principal("alice@example.com", "hash", ["Manager"])
    assert exc_info.value.detail == {"field": "login"}


def test_create_principal_writes_both_tables():
    conn = FakeConnection()
    principal = _store(FakePool(conn)).create_principal("Alice@Example.com", "hash", ["Manager"])

    assert principal.login == "alice@example.com"
    assert "INSERT INTO principal (" in conn.statements[0][0]
    assert "INSERT INTO principal_credential" in conn.statements[1][0]
    assert conn.statements[1][1] == (principal.id, "hash")


def test_rotate_locks_chain_root_then_row():
    conn = FakeConnection(
        results=[[{"root_id": "t0"}], [], [_token_row("t1", root_id="t0", parent_id="t0")], [], []]
    )
    rotation = _store(FakePool(conn)).rotate_refresh_token(
        "t1", replacement_id="t2", now=NOW, ttl=TTL
    )

    assert rotation.status is TokenStatus.ACTIVE
    assert rotation.replacement.parent_id == "t1"
    assert rotation.replacement.root_id == "t0"
    assert rotation.replacement.expires_at == NOW + TTL
    lookup, root_lock, select, insert, update = conn.statements
    assert lookup == ("SELECT root_id FROM refresh_token WHERE id = %s", ("t1",))
    assert root_lock == (ROOT_LOCK, ("t0",))
    assert select[0].endswith("FOR UPDATE")
    assert select[1] == ("t1",)
    assert insert[0].startswith("INSERT INTO refresh_token")
    assert update[0].startswith("UPDATE refresh_token")
    assert update[1] == (NOW, "rotated", "t2", "t1")


def test_rotate_revoked_token_issues_nothing():
    conn = FakeConnection(
        results=[
            [{"root_id": "t0"}],
            [],
            [_token_row("t0", revoked_at=NOW, revoked_reason="rotated", replaced_by="t1")],
        ]
    )
    rotation = _store(FakePool(conn)).rotate_refresh_token(
        "t0", replacement_id="t2", now=NOW, ttl=TTL
    )
    assert rotation.status is TokenStatus.REVOKED
    assert rotation.replacement is None
    assert len(conn.statements) == 3


def test_rotate_missing_token():
    conn = FakeConnection(results=[[]])
    rotation = _store(FakePool(conn)).rotate_refresh_token(
        "nope", replacement_id="t1", now=NOW, ttl=TTL
    )
    assert rotation.status is TokenStatus.NOT_FOUND
    assert len(conn.statements) == 1


def test_revoke_chain_locks_root_and_revokes_by_root_id():
    conn = FakeConnection(results=[[{"root_id": "t0"}], [], [{"id": "t2"}, {"id": "t3"}]])
    assert _store(FakePool(conn)).revoke_refresh_chain("t1", NOW) == 2

    assert conn.statements[1] == (ROOT_LOCK, ("t0",))
    sql, params = conn.statements[2]
    assert sql.startswith("UPDATE refresh_token")
    assert "WHERE root_id = %s AND revoked_at IS NULL" in sql
    assert params == (NOW, "reuse_detected", "t0")


def test_revoke_chain_unknown_token():
    conn = FakeConnection(results=[[]])
    assert _store(FakePool(conn)).revoke_refresh_chain("ghost", NOW) == 0
    assert len(conn.statements) == 1


def test_discard_restores_parent_only_when_linked():
    conn = FakeConnection(
        results=[[{"root_id": "t0"}], [], [{"parent_id": "t0", "revoked_at": None}], []]
    )
    _store(FakePool(conn)).discard_refresh_token("t1")
    assert conn.statements[1] == (ROOT_LOCK, ("t0",))
    assert conn.statements[2][0].startswith("DELETE FROM refresh_token")
    assert conn.statements[2][0].endswith("RETURNING parent_id, revoked_at")
    assert conn.statements[3][1] == ("t0", "t1")

    login_token = FakeConnection(
        results=[[{"root_id": "t0"}], [], [{"parent_id": None, "revoked_at": None}]]
    )
    _store(FakePool(login_token)).discard_refresh_token("t0")
    assert len(login_token.statements) == 3


def test_discard_of_revoked_replacement_leaves_parent_revoked():
    conn = FakeConnection(
        results=[[{"root_id": "t0"}], [], [{"parent_id": "t0", "revoked_at": NOW}]]
    )
    _store(FakePool(conn)).discard_refresh_token("t1")
    assert len(conn.statements) == 3
    assert not any(sql.startswith("UPDATE") for sql, _ in conn.statements)


def test_purge_keeps_roots_of_live_chains():
    conn = FakeConnection(results=[[{"id": "t1"}]])
    assert _store(FakePool(conn)).purge_expired_refresh_tokens(NOW) == 1
    sql, params = conn.statements[0]
    assert "NOT EXISTS" in sql
    assert "c.root_id = t.id" in sql
    assert params == (NOW, NOW)


def test_verify_connection_runs_probe():
    conn = FakeConnection(results=[[{"?column?": 1}]])
    _store(FakePool(conn)).verify_connection()
    assert conn.statements == [("SELECT 1", None)]
