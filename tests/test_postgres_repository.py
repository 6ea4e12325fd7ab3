from datetime import datetime, timezone
import importlib

import psycopg2
import pytest


postgres_repository = importlib.import_module("src.eventstore.postgres_repository")
PostgresEventStore = postgres_repository.PostgresEventStore
IngestOutcome = importlib.import_module("src.eventstore.models").IngestOutcome
errors = importlib.import_module("src.eventstore.errors")

LOGIN_AT = datetime(2026, 2, 13, 20, 0, tzinfo=timezone.utc)
DAY_START = datetime(2026, 2, 13, tzinfo=timezone.utc)
DAY_END = datetime(2026, 2, 14, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, fetch_one_rows=None):
        self.fetch_one_rows = fetch_one_rows or []
        self.executed = []
        self.closed = False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        if self.fetch_one_rows:
            return self.fetch_one_rows.pop(0)
        return None

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, cursor):
        self.cursor_obj = cursor
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        return self.cursor_obj

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class ExplodingCursor(FakeCursor):
    def execute(self, sql, params=None):
        raise psycopg2.OperationalError("server closed the connection unexpectedly")


def test_ingest_uses_conflict_free_insert_and_reports_created():
    cursor = FakeCursor(fetch_one_rows=[(1,)])
    conn = FakeConnection(cursor)
    store = PostgresEventStore(connection_factory=lambda: conn)

    outcome = store.ingest("tenant1", "e1", "login", LOGIN_AT, {"b": 2, "a": 1})

    sql, params = cursor.executed[0]
    assert "INSERT INTO events" in sql
    assert "ON CONFLICT (tenant_id, event_id) DO NOTHING" in sql
    assert "RETURNING 1" in sql
    assert params == ("tenant1", "e1", "login", LOGIN_AT, '{"a":1,"b":2}')
    assert outcome is IngestOutcome.CREATED
    assert conn.committed is True
    assert cursor.closed is True and conn.closed is True


def test_ingest_reports_duplicate_when_insert_returns_no_row():
    existing = ("login", LOGIN_AT, {"a": 1}, LOGIN_AT)
    cursor = FakeCursor(fetch_one_rows=[None, existing])
    conn = FakeConnection(cursor)
    store = PostgresEventStore(connection_factory=lambda: conn)

    outcome = store.ingest("tenant1", "e1", "login", LOGIN_AT, {"a": 1})

    assert outcome is IngestOutcome.DUPLICATE
    assert len(cursor.executed) == 2
    assert "WHERE tenant_id = %s AND event_id = %s" in cursor.executed[1][0]
    assert cursor.executed[1][1] == ("tenant1", "e1")


def test_ingest_logs_when_duplicate_payload_differs(caplog):
    existing = ("login", LOGIN_AT, {"a": 1}, LOGIN_AT)
    cursor = FakeCursor(fetch_one_rows=[None, existing])
    store = PostgresEventStore(connection_factory=lambda: FakeConnection(cursor))

    with caplog.at_level("WARNING"):
        store.ingest("tenant1", "e1", "login", LOGIN_AT, {"a": 2})

    assert "differs in attributes" in caplog.text


def test_ingest_wraps_database_errors_and_rolls_back():
    conn = FakeConnection(ExplodingCursor())
    store = PostgresEventStore(connection_factory=lambda: conn)

    with pytest.raises(errors.IngestError) as excinfo:
        store.ingest("tenant1", "e1", "login", LOGIN_AT)

    assert isinstance(excinfo.value.__cause__, psycopg2.OperationalError)
    assert conn.rolled_back is True
    assert conn.committed is False
    assert conn.closed is True


def test_ingest_reports_unreachable_database_as_ingest_failure():
    def refuse():
        raise psycopg2.OperationalError("could not connect to server")

    store = PostgresEventStore(connection_factory=refuse)

    with pytest.raises(errors.IngestError):
        store.ingest("tenant1", "e1", "login", LOGIN_AT)


def test_ingest_validates_before_connecting():
    def fail_if_called():
        raise AssertionError("connected before validation")

    store = PostgresEventStore(connection_factory=fail_if_called)

    with pytest.raises(errors.ValidationError):
        store.ingest("tenant1", "", "login", LOGIN_AT)


def test_count_queries_half_open_window_for_tenant():
    cursor = FakeCursor(fetch_one_rows=[(7,)])
    store = PostgresEventStore(connection_factory=lambda: FakeConnection(cursor))

    count = store.count("tenant1", "login", DAY_START, DAY_END)

    sql, params = cursor.executed[0]
    assert "SELECT COUNT(*)" in sql
    assert "occurred_at >= %s" in sql
    assert "occurred_at < %s" in sql
    assert params == ("tenant1", "login", DAY_START, DAY_END)
    assert count == 7


def test_count_failure_is_never_reported_as_zero():
    store = PostgresEventStore(connection_factory=lambda: FakeConnection(ExplodingCursor()))

    with pytest.raises(errors.QueryError):
        store.count("tenant1", "login", DAY_START, DAY_END)


def test_get_event_maps_row_to_record():
    row = ("login", LOGIN_AT, {"plan": "pro"}, DAY_END)
    cursor = FakeCursor(fetch_one_rows=[row])
    store = PostgresEventStore(connection_factory=lambda: FakeConnection(cursor))

    record = store.get_event("tenant1", "e1")

    assert record.tenant_id == "tenant1"
    assert record.event_name == "login"
    assert record.attributes == {"plan": "pro"}
    assert record.ingested_at == DAY_END


def test_ensure_schema_executes_idempotent_ddl():
    cursor = FakeCursor()
    conn = FakeConnection(cursor)
    store = PostgresEventStore(connection_factory=lambda: conn)

    store.ensure_schema()

    sql = cursor.executed[0][0]
    assert "CREATE TABLE IF NOT EXISTS events" in sql
    assert "CREATE INDEX IF NOT EXISTS" in sql
    assert conn.committed is True


def test_store_requires_dsn_without_connection_factory():
    store = PostgresEventStore()

    with pytest.raises(ValueError):
        store.ping()
