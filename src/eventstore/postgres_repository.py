import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Protocol, cast

import psycopg2

from .encoding import decode_attributes, encode_attributes, parse_timestamp
from .errors import DurabilityError, IngestError, QueryError
from .models import EventRecord, IngestOutcome, payload_drift
from .schema import POSTGRES_SCHEMA
from .validation import ensure_utc, require_text, validate_window

LOGGER = logging.getLogger(__name__)


class CursorProtocol(Protocol):
    def execute(self, sql: str, params: tuple[object, ...]) -> None: ...

    def fetchone(self) -> Optional[tuple[object, ...]]: ...

    def close(self) -> None: ...


class ConnectionProtocol(Protocol):
    def cursor(self) -> CursorProtocol: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close(self) -> None: ...


class PostgresEventStore:
    def __init__(
        self,
        dsn: str = "",
        connection_factory: Optional[Callable[[], ConnectionProtocol]] = None,
        connect_timeout: int = 10,
    ) -> None:
        self._dsn: str = dsn
        self._connection_factory: Optional[Callable[[], ConnectionProtocol]] = (
            connection_factory
        )
        self._connect_timeout = connect_timeout

    def _connect(self) -> ConnectionProtocol:
        if self._connection_factory is not None:
            return self._connection_factory()
        if not self._dsn:
            raise ValueError("dsn is required when no connection_factory is provided")
        return cast(
            ConnectionProtocol,
            cast(object, psycopg2.connect(self._dsn, connect_timeout=self._connect_timeout)),
        )

    @contextmanager
    def _transaction(
        self, action: str, error_type: type[DurabilityError]
    ) -> Iterator[CursorProtocol]:
        try:
            conn = self._connect()
        except psycopg2.Error as exc:
            LOGGER.error("%s failed: database unreachable: %s", action, exc)
            raise error_type(f"{action} failed: {exc}") from exc

        cursor: Optional[CursorProtocol] = None
        try:
            cursor = conn.cursor()
            yield cursor
            conn.commit()
        except psycopg2.Error as exc:
            try:
                conn.rollback()
            except psycopg2.Error:
                LOGGER.exception("%s rollback failed", action)
            LOGGER.error("%s failed: %s", action, exc)
            raise error_type(f"{action} failed: {exc}") from exc
        finally:
            if cursor is not None:
                cursor.close()
            conn.close()

    def ensure_schema(self) -> None:
        """Create the events table and its count index. Safe to run repeatedly."""
        with self._transaction("ensure schema", DurabilityError) as cursor:
            cursor.execute(POSTGRES_SCHEMA, ())
        LOGGER.info("postgres events schema ensured")

    def ping(self) -> None:
        with self._transaction("ping", QueryError) as cursor:
            cursor.execute("SELECT 1", ())
            cursor.fetchone()

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

        with self._transaction("insert event", IngestError) as cursor:
            # RETURNING yields a row only when the insert happened; a conflict
            # on the primary key yields nothing.
            cursor.execute(
                """
                INSERT INTO events(tenant_id, event_id, event_name, occurred_at, attributes)
                VALUES (%s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (tenant_id, event_id) DO NOTHING
                RETURNING 1
                """,
                (tenant_id, event_id, event_name, occurred_utc, attributes_json),
            )
            if cursor.fetchone() is not None:
                LOGGER.debug("created event tenant=%s event_id=%s", tenant_id, event_id)
                return IngestOutcome.CREATED

            existing = self._select_event(cursor, tenant_id, event_id)

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

        with self._transaction("count events", QueryError) as cursor:
            cursor.execute(
                """
                SELECT COUNT(*)
                FROM events
                WHERE tenant_id = %s
                  AND event_name = %s
                  AND occurred_at >= %s
                  AND occurred_at < %s
                """,
                (tenant_id, event_name, start_utc, end_utc),
            )
            row = cursor.fetchone()

        if row is None:
            raise QueryError("count events failed: no result row")
        return int(cast(int, row[0]))

    def get_event(self, tenant_id: str, event_id: str) -> Optional[EventRecord]:
        with self._transaction("read event", QueryError) as cursor:
            return self._select_event(cursor, tenant_id, event_id)

    def close(self) -> None:
        return None

    @staticmethod
    def _select_event(
        cursor: CursorProtocol, tenant_id: str, event_id: str
    ) -> Optional[EventRecord]:
        cursor.execute(
            """
            SELECT event_name, occurred_at, attributes, ingested_at
            FROM events
            WHERE tenant_id = %s AND event_id = %s
            """,
            (tenant_id, event_id),
        )
        row = cursor.fetchone()
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
