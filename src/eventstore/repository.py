import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Optional

from .encoding import decode_attributes, encode_attributes
from .models import EventRecord, IngestOutcome, payload_drift
from .validation import ensure_utc, require_text, validate_window

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryEventStore:
    """Process-local event store.

    Insert-if-absent is a single ``dict.setdefault`` on the
    ``(tenant_id, event_id)`` key, which is atomic, so racing ingests of the
    same key observe exactly one ``created``.
    """

    def __init__(self, now: Callable[[], datetime] = _utcnow) -> None:
        self._now = now
        self._events: dict[tuple[str, str], EventRecord] = {}

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
        # Round-trip through the canonical encoding so stored attributes are
        # detached from the caller's objects and fail the same way as SQL stores.
        stored_attributes = decode_attributes(encode_attributes(attributes or {}))

        candidate = EventRecord(
            tenant_id=tenant_id,
            event_id=event_id,
            event_name=event_name,
            occurred_at=occurred_utc,
            ingested_at=self._now(),
            attributes=stored_attributes,
        )
        stored = self._events.setdefault((tenant_id, event_id), candidate)
        if stored is candidate:
            LOGGER.debug("created event tenant=%s event_id=%s", tenant_id, event_id)
            return IngestOutcome.CREATED

        drift = payload_drift(stored, event_name, occurred_utc, stored_attributes)
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
        return sum(
            1
            for record in list(self._events.values())
            if record.tenant_id == tenant_id
            and record.event_name == event_name
            and start_utc <= record.occurred_at < end_utc
        )

    def get_event(self, tenant_id: str, event_id: str) -> Optional[EventRecord]:
        return self._events.get((tenant_id, event_id))

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None
