from unittest.mock import MagicMock

import psycopg

from gatehouse.storage.directory import hash_password
from gatehouse.storage.models import Principal
from gatehouse.storage.postgres import PostgresDirectory


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    """Records statements and answers each with a canned row."""

    def __init__(self, rows):
        self.rows = list(rows)
        self.executed = []
        self.commits = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return FakeCursor(self.rows.pop(0) if self.rows else None)

    def commit(self):
        self.commits += 1


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


class BrokenPool:
    def connection(self):
        raise psycopg.OperationalError("connection refused")


def _directory(pool) -> PostgresDirectory:
    directory: PostgresDirectory = PostgresDirectory.__new__(PostgresDirectory)
    directory.dsn = "postgresql://unit-test"
    directory.logger = MagicMock()
    directory.pool = pool
    return directory


READER_ROW = {
    "id": 42,
    "email": "reader@example.com",
    "role": "editor",
    "is_active": True,
    "display_name": "Rea Der",
}


def test_find_by_identifier_normalizes_and_maps_row():
    conn = FakeConnection([READER_ROW])
    directory = _directory(FakePool(conn))

    principal = directory.find_by_identifier("  Reader@Example.COM ")

    assert principal == Principal(
        id="42", email="reader@example.com", role="editor", display_name="Rea Der"
    )
    sql, params = conn.executed[0]
    assert "lower(email) = %s" in sql
    assert params == ("reader@example.com",)


def test_missing_user_returns_none():
    directory = _directory(FakePool(FakeConnection([None])))
    assert directory.get_by_id("nope") is None


def test_null_role_defaults_to_user():
    row = dict(READER_ROW, role=None, is_active=False)
    principal = _directory(FakePool(FakeConnection([row]))).get_by_id("42")
    assert principal.role == "user"
    assert principal.is_active is False


def test_verify_password_against_stored_hash():
    stored = {"password_hash": hash_password("Corr3ct#Horse")}
    principal = Principal(id="42", email="reader@example.com")

    ok = _directory(FakePool(FakeConnection([stored]))).verify_password(
        principal, "Corr3ct#Horse"
    )
    bad = _directory(FakePool(FakeConnection([stored]))).verify_password(
        principal, "wrong"
    )
    missing = _directory(FakePool(FakeConnection([None]))).verify_password(
        principal, "Corr3ct#Horse"
    )

    assert ok is True
    assert bad is False
    assert missing is False


def test_create_user_commits():
    conn = FakeConnection([dict(READER_ROW, role="admin")])
    directory = _directory(FakePool(conn))

    principal = directory.create_user("Reader@Example.com", "hash", role="admin")

    assert principal.role == "admin"
    assert conn.commits == 1
    _, params = conn.executed[0]
    assert params == ("reader@example.com", "hash", "admin", None)


def test_update_role_commits():
    conn = FakeConnection([])
    _directory(FakePool(conn)).update_role("42", "journalist")
    assert conn.executed[0][1] == ("journalist", "42")
    assert conn.commits == 1


def test_ping_reports_failure_without_raising():
    directory = _directory(BrokenPool())
    assert directory.ping() is False
    directory.logger.warning.assert_called_once()


def test_ping_ok():
    assert _directory(FakePool(FakeConnection([{"?column?": 1}]))).ping() is True
