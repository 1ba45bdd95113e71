from contextlib import contextmanager
from datetime import datetime

import pytest
from psycopg import errors

from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import SessionState
from authledger.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = FakePool(*responses)
    return store


NOW = datetime(2024, 1, 1, 12, 0, 0)


def test_create_user_returns_normalized_row():
    store = _store(
        FakeResult([{"id": 7, "email": "alice@x.io", "password_hash": "h", "created_at": NOW}])
    )

    user = store.create_user(" Alice@X.io", "h")

    assert user.id == 7
    assert user.created_at == NOW
    _, params = store.pool.conn.statements[0]
    assert params == ("alice@x.io", "h")


def test_unique_violation_on_email_maps_to_constraint_violation():
    store = _store(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("alice@x.io", "h")
    assert excinfo.value.field == "email"


def test_unique_violation_on_token_maps_to_token_field():
    store = _store(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_session(1, "digest")
    assert excinfo.value.field == "token_hash"


def test_foreign_key_violation_maps_to_user_field():
    store = _store(errors.ForeignKeyViolation("no user"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_session(99, "digest")
    assert excinfo.value.field == "user_id"


def test_get_user_by_email_queries_lowercased():
    store = _store(FakeResult([]))

    assert store.get_user_by_email("ALICE@x.io") is None
    sql, params = store.pool.conn.statements[0]
    assert "lower(email)" in sql
    assert params == ("alice@x.io",)


def test_session_row_mapping():
    row = {"id": 3, "user_id": 7, "token_hash": "d", "state": "expired", "created_at": NOW}
    store = _store(FakeResult([row]))

    session = store.get_session_by_token("d", 7)

    assert session.id == 3
    assert session.state == SessionState.EXPIRED
    assert store.pool.conn.statements[0][1] == ("d", 7)


def test_set_session_state_is_conditional():
    store = _store(FakeResult(rowcount=0))

    store.set_session_state(3, SessionState.EXPIRED)

    sql, params = store.pool.conn.statements[0]
    assert "state <> %s" in sql
    assert params == ("expired", 3, "expired")


def test_update_password_hash_for_missing_user():
    store = _store(FakeResult(rowcount=0))

    with pytest.raises(ConstraintViolation):
        store.update_password_hash(5, "h")


def test_revoke_counts_rows():
    store = _store(FakeResult(rowcount=1), FakeResult(rowcount=3))

    assert store.revoke_session(1) is True
    assert store.revoke_user_sessions(7) == 3


def test_missing_schema_is_reported():
    store = _store(FakeResult([{"oid": "app_user"}]), FakeResult([{"oid": None}]))

    with pytest.raises(RuntimeError, match="auth_session"):
        store._verify_required_schema()
