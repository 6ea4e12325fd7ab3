import logging
import sqlite3
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from .encoding import decode_attributes, encode_attributes, format_timestamp, parse_timestamp
from .errors import DurabilityError, IngestError, QueryError
from .models import EventRecord, IngestOutcome, payload_drift
from .schema import SQLITE_SCHEMA
from .validation import ensure_utc, require_text, validate_window

LOGGER = logging.getLogger(__name__)

SQLITE_URL_PREFIX = "sqlite:///"


def sqlite_path_from_url(url: str) -> str:
    """Map ``sqlite:///events.db`` to ``events.db`` and ``sqlite:////tmp/e.db`` to ``/tmp/e.db``."""
    if not url.startswith(SQLITE_URL_PREFIX):
        raise ValueError(f"not a sqlite url: {url!r}")
    path = url[len(SQLITE_URL_PREFIX):]
    if not path:
        raise ValueError("sqlite url must include a database path")
    return path


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqliteEventStore:
    """Event store on a SQLite file.

    Every operation opens its own connection, so the store can be shared
    between threads; SQLite serializes writers and the primary key decides
    which of two racing inserts wins.
    """

    def __init__(
        self,
        path: Union[str, Path],
        busy_timeout_seconds: float = 30.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if str(path) in {"", ":memory:"}:
            raise ValueError("SqliteEventStore requires a database file path")
        self.path = Path(path)
        self._busy_timeout_seconds = busy_timeout_seconds
        self._now = now

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path), timeout=self._busy_timeout_seconds)

    @contextmanager
    def _transaction(
        self, action: str, error_type: type[DurabilityError]
    ) -> Iterator[sqlite3.Connection]:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._connect()
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            if conn is not None:
                try:
                    conn.rollback()
                except sqlite3.Error:
                    LOGGER.exception("%s rollback failed", action)
            LOGGER.error("%s failed: %s", action, exc)
            raise error_type(f"{action} failed: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def ensure_schema(self) -> None:
        with self._transaction("ensure schema", DurabilityError) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SQLITE_SCHEMA)
        LOGGER.info("sqlite events schema ensured at %s", self.path)

    def ping(self) -> None:
        with self._transaction("ping", QueryError) as conn:
            conn.execute("SELECT 1").fetchone()

    def ingest(
        self,
        tenant_id: str,
        event_id: str,
        event_name: str,
        occurred_at: datetime,
        attributes: Optional[Mapping[str, object]] = None,
    ) -> IngestOutcome:
        require_text(tenant_id, "tenant_id")
        require_text(event_id, "event_id")
        require_text(event_name, "event_name")
        occurred_utc = ensure_utc(occurred_at, "occurred_at")
        attributes_json = encode_attributes(attributes or {})

        with self._transaction("insert event", IngestError) as conn:
            cursor = conn.execute(
                """
                INSERT INTO events(
                    tenant_id, event_id, event_name, occurred_at, attributes, ingested_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, event_id) DO NOTHING
                """,
                (
                    tenant_id,
                    event_id,
                    event_name,
                    format_timestamp(occurred_utc),
                    attributes_json,
                    format_timestamp(self._now()),
                ),
            )
            if cursor.rowcount == 1:
                LOGGER.debug("created event tenant=%s event_id=%s", tenant_id, event_id)
                return IngestOutcome.CREATED

            existing = self._select_event(conn, tenant_id, event_id)

        if existing is not None:
            drift = payload_drift(
                existing, event_name, occurred_utc, decode_attributes(attributes_json)
            )
            if drift:
                LOGGER.warning(
                    "duplicate event tenant=%s event_id=%s differs in %s; submission discarded",
                    tenant_id,
                    event_id,
                    ",".join(drift),
                )
        return IngestOutcome.DUPLICATE

    def count(
        self, tenant_id: str, event_name: str, start: datetime, end: datetime
    ) -> int:
        require_text(tenant_id, "tenant_id")
        require_text(event_name, "event_name")
        start_utc, end_utc = validate_window(start, end)

        with self._transaction("count events", QueryError) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*)
                FROM events
                WHERE tenant_id = ?
                  AND event_name = ?
                  AND occurred_at >= ?
                  AND occurred_at < ?
                """,
                (tenant_id, event_name, format_timestamp(start_utc), format_timestamp(end_utc)),
            ).fetchone()

        if row is None:
            raise QueryError("count events failed: no result row")
        return int(row[0])

    def get_event(self, tenant_id: str, event_id: str) -> Optional[EventRecord]:
        with self._transaction("read event", QueryError) as conn:
            return self._select_event(conn, tenant_id, event_id)

    def close(self) -> None:
        return None

    @staticmethod
    def _select_event(
        conn: sqlite3.Connection, tenant_id: str, event_id: str
    ) -> Optional[EventRecord]:
        row = conn.execute(
            """
            SELECT event_name, occurred_at, attributes, ingested_at
            FROM events
            WHERE tenant_id = ? AND event_id = ?
            """,
            (tenant_id, event_id),
        ).fetchone()
        if row is None:
            return None
        return EventRecord(
            tenant_id=tenant_id,
            event_id=event_id,
            event_name=str(row[0]),
            occurred_at=parse_timestamp(row[1]),
            ingested_at=parse_timestamp(row[3]),
            attributes=decode_attributes(row[2]),
        )
