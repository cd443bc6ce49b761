import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import OperationalError, errors

from authkeep.logging import get_logger
from authkeep.storage.errors import ConstraintViolation, StoreUnavailable
from authkeep.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, result=None, error=None):
        self.result = result or FakeResult()
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.result


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger(__name__)
    return store


def _row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "a@example.com",
        "password_hash": "$argon2id$hash",
        "name": "A",
        "email_verified": False,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_create_user_returns_inserted_row():
    row = _row()
    conn = FakeConnection(FakeResult(row))
    store = _store(FakePool(conn))

    user = store.create_user("a@example.com", "$argon2id$hash", "A")

    assert user.id == str(row["id"])
    assert user.email == "a@example.com"
    sql, params = conn.statements[0]
    assert sql.startswith("INSERT INTO users")
    assert params[1:] == ("a@example.com", "$argon2id$hash", "A")


def test_duplicate_email_maps_to_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    store = _store(FakePool(conn))

    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("a@example.com", "hash", "A")
    assert exc.value.detail == {"field": "email"}


def test_get_user_with_non_uuid_skips_database():
    store = _store(DummyPool())

    assert store.get_user("not-a-uuid") is None


def test_get_user_by_email_missing_row():
    store = _store(FakePool(FakeConnection(FakeResult(None))))

    assert store.get_user_by_email("nobody@example.com") is None


def test_mark_email_verified_returns_updated_user():
    row = _row(email_verified=True)
    store = _store(FakePool(FakeConnection(FakeResult(row))))

    user = store.mark_email_verified("a@example.com")

    assert user is not None
    assert user.email_verified is True


@pytest.mark.parametrize("rowcount,expected", [(1, True), (0, False)])
def test_update_password_reports_whether_a_row_changed(rowcount, expected):
    conn = FakeConnection(FakeResult(rowcount=rowcount))
    store = _store(FakePool(conn))

    assert store.update_password_by_email("a@example.com", "new-hash") is expected
    assert conn.statements[0][1] == ("new-hash", "a@example.com")


def test_operational_errors_map_to_store_unavailable():
    store = _store(FakePool(error=OperationalError("connection refused")))

    with pytest.raises(StoreUnavailable) as exc:
        store.verify_connection()
    assert exc.value.store == "postgres"
