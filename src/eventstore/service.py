import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Optional, Protocol
from uuid import uuid4

from .errors import DurabilityError, ValidationError
from .models import CountResult, EventRecord, IngestOutcome, IngestResult
from .tenant_resolver import TenantResolver
from .validation import normalize_attributes, parse_rfc3339, require_text, validate_window

LOGGER = logging.getLogger(__name__)


class EventStoreProtocol(Protocol):
    def ingest(
        self,
        tenant_id: str,
        event_id: str,
        event_name: str,
        occurred_at: datetime,
        attributes: Optional[Mapping[str, object]] = None,
    ) -> IngestOutcome: ...

    def count(
        self, tenant_id: str, event_name: str, start: datetime, end: datetime
    ) -> int: ...

    def get_event(self, tenant_id: str, event_id: str) -> Optional[EventRecord]: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


def _new_event_id() -> str:
    return str(uuid4())


class EventService:
    """Request-handling layer in front of an event store.

    Callers authenticate first and pass the resolved tenant id into every
    operation; raw input is validated before any storage call.
    """

    def __init__(
        self,
        resolver: TenantResolver,
        store: EventStoreProtocol,
        id_factory: Callable[[], str] = _new_event_id,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._id_factory = id_factory

    @property
    def store(self) -> EventStoreProtocol:
        return self._store

    def authenticate(self, credential: Optional[str]) -> str:
        return self._resolver.resolve(credential)

    def ingest_event(
        self,
        tenant_id: str,
        payload: Mapping[str, object],
        idempotency_key: Optional[str] = None,
    ) -> IngestResult:
        event_name = require_text(payload.get("event_name"), "event_name")
        occurred_at = parse_rfc3339(payload.get("timestamp"), "timestamp")
        raw_attributes = payload.get("properties")
        if raw_attributes is None:
            raw_attributes = payload.get("attributes")
        attributes = normalize_attributes(raw_attributes)

        # Header wins over payload; a generated id cannot dedupe client retries.
        event_id = idempotency_key or ""
        if not event_id:
            payload_event_id = payload.get("event_id") or ""
            if not isinstance(payload_event_id, str):
                raise ValidationError("event_id must be a string", field="event_id")
            event_id = payload_event_id
        if not event_id:
            event_id = self._id_factory()

        outcome = self._store.ingest(tenant_id, event_id, event_name, occurred_at, attributes)
        LOGGER.info(
            "ingested event tenant=%s event_id=%s name=%s outcome=%s",
            tenant_id,
            event_id,
            event_name,
            outcome.value,
        )
        return IngestResult(event_id=event_id, outcome=outcome)

    def count_events(
        self,
        tenant_id: str,
        event_name: Optional[str],
        from_raw: Optional[str],
        to_raw: Optional[str],
    ) -> CountResult:
        name = require_text(event_name, "event_name")
        start, end = validate_window(
            parse_rfc3339(from_raw, "from"), parse_rfc3339(to_raw, "to")
        )
        count = self._store.count(tenant_id, name, start, end)
        return CountResult(event_name=name, count=count)

    def ready(self) -> bool:
        try:
            self._store.ping()
        except DurabilityError:
            LOGGER.exception("event store is not ready")
            return False
        return True
