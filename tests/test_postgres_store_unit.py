from contextlib import contextmanager

import psycopg
import pytest
from psycopg import errors, sql

from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records executed statements and replays queued results in order."""

    def __init__(self):
        self.executed = []
        self.results = []
        self.raise_on_execute = None

    def execute(self, query, params=None):
        self.executed.append((query, params))
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        if self.results:
            return self.results.pop(0)
        return FakeCursor()


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn or FakeConnection()
        self.error = error
        self.closed = False

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn

    def close(self):
        self.closed = True


def _store(pool):
    return PostgresStore("postgresql://unit-test", pool=pool, ensure_schema=False)


def test_schema_is_created_on_startup():
    pool = FakePool()
    PostgresStore("postgresql://unit-test", pool=pool)
    statements = " ".join(q for q, _ in pool.conn.executed)
    for table in ("principal", "role", "permission", "principal_role", "role_permission"):
        assert f"CREATE TABLE IF NOT EXISTS {table} " in statements


def test_connectivity_failure_maps_to_store_unavailable():
    store = _store(FakePool(error=psycopg.OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_principal("p-1")
    assert excinfo.value.backend == "postgres"


def test_unique_violation_maps_to_constraint_violation():
    pool = FakePool()
    pool.conn.raise_on_execute = errors.UniqueViolation(
        'duplicate key value violates unique constraint "principal_username_key"'
    )
    store = _store(pool)
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_principal("ada@example.com", "ada", "digest")
    assert excinfo.value.detail == {"field": "username"}


def test_create_principal_normalizes_email():
    pool = FakePool()
    pool.conn.results.append(
        FakeCursor(
            rows=[
                {
                    "id": "p-1",
                    "email": "ada@example.com",
                    "username": "ada",
                    "password_hash": "digest",
                    "status": "active",
                    "created_at": None,
                    "deleted_at": None,
                }
            ]
        )
    )
    store = _store(pool)
    principal = store.create_principal("  ADA@Example.com ", "ada", "digest")
    _, params = pool.conn.executed[0]
    assert params[1] == "ada@example.com"
    assert principal.id == "p-1"
    assert principal.is_active


def test_owned_row_finder_binds_values_and_quotes_identifiers():
    pool = FakePool()
    store = _store(pool)
    finder = store.owned_row_finder("documents", owner_field="created_by")

    pool.conn.results.append(FakeCursor(rows=[{"?column?": 1}]))
    assert finder("doc-1", "p-1") is True

    query, params = pool.conn.executed[-1]
    assert params == ("doc-1", "p-1")
    assert isinstance(query, sql.Composed)
    identifiers = [
        part.strings for part in query.seq if isinstance(part, sql.Identifier)
    ]
    assert ("documents",) in identifiers

    assert finder("doc-2'; DROP TABLE documents; --", "p-1") is False
    _, params = pool.conn.executed[-1]
    assert params[0] == "doc-2'; DROP TABLE documents; --"


def test_delete_system_role_rejected():
    pool = FakePool()
    pool.conn.results.append(
        FakeCursor(rows=[{"id": "r-1", "code": "admin", "name": "Administrator", "is_system": True}])
    )
    store = _store(pool)
    with pytest.raises(ConstraintViolation):
        store.delete_role("r-1")
    assert not any("DELETE" in str(q) for q, _ in pool.conn.executed)


def test_system_settings_round_trip_through_rows():
    pool = FakePool()
    pool.conn.results.append(
        FakeCursor(rows=[{"key": "jwt_access_expires_in", "value": "5m"}])
    )
    store = _store(pool)
    assert store.get_system_settings() == {"jwt_access_expires_in": "5m"}


def test_close_closes_pool():
    pool = FakePool()
    _store(pool).close()
    assert pool.closed
