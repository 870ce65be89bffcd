import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from warden.storage.errors import ConstraintViolation
from warden.storage.postgres import PostgresStore, _escape_like

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and answers each with the next queued result."""

    def __init__(self, results=None, raises=None):
        self.statements = []
        self.results = list(results or [])
        self.raises = raises

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else FakeCursor([])


def _store(conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "name": "Bob",
        "email": "bob@example.com",
        "password_hash": "hash",
        "is_verified": True,
        "roles": ["user"],
        "email_verification_token_hash": None,
        "email_verification_expires_at": None,
        "password_reset_token_hash": None,
        "password_reset_expires_at": None,
        "last_login_at": None,
        "created_at": datetime(2026, 1, 1),
        "updated_at": datetime(2026, 1, 1),
    }
    row.update(overrides)
    return row


def test_row_to_account_makes_timestamps_aware():
    account = PostgresStore._row_to_account(_row())
    assert account.created_at.tzinfo is timezone.utc
    assert isinstance(account.id, str)


def test_unique_violation_maps_to_constraint_violation():
    store = _store(FakeConnection(raises=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("Bob", "bob@example.com", "hash")
    assert excinfo.value.field == "email"


def test_consume_verification_is_a_single_conditional_update():
    row = _row(is_verified=True)
    conn = FakeConnection(results=[FakeCursor([row])])
    account = _store(conn).consume_verification_token("vh", NOW)

    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE account")
    assert "email_verification_expires_at > %s" in sql
    assert sql.endswith("RETURNING *")
    assert params == (NOW, "vh", NOW)
    assert account.is_verified is True


def test_consume_reset_returns_none_when_no_row_matches():
    conn = FakeConnection(results=[FakeCursor([])])
    assert _store(conn).consume_reset_token("rh", NOW, "new-hash") is None
    assert "password_reset_expires_at > %s" in conn.statements[0][0]


def test_list_accounts_escapes_search_pattern():
    conn = FakeConnection(results=[FakeCursor([{"total": 1}]), FakeCursor([_row()])])
    total, accounts = _store(conn).list_accounts(search="50%_off", offset=10, limit=5)

    assert total == 1
    assert len(accounts) == 1
    count_sql, count_params = conn.statements[0]
    assert "ILIKE" in count_sql
    assert count_params == ("%50\\%\\_off%", "%50\\%\\_off%")
    assert conn.statements[1][1][-2:] == (5, 10)


def test_malformed_ids_never_reach_the_database():
    store = _store(FakeConnection(raises=AssertionError("no query expected")))
    assert store.get_account("not-a-uuid") is None
    assert store.update_roles("not-a-uuid", ["user"]) is None
    assert store.delete_account("not-a-uuid") is False


def test_escape_like_handles_backslash_first():
    assert _escape_like("a\\b%") == "a\\\\b\\%"


def test_delete_reports_rowcount():
    conn = FakeConnection(results=[FakeCursor([], rowcount=1)])
    assert _store(conn).delete_account(str(uuid.uuid4())) is True
    assert conn.statements[0][0] == "DELETE FROM account WHERE id = %s"


def test_expiry_columns_round_trip():
    expires = NOW + timedelta(hours=1)
    account = PostgresStore._row_to_account(
        _row(email_verification_token_hash="vh", email_verification_expires_at=expires)
    )
    assert account.email_verification_expires_at == expires
