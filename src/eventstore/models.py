from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class IngestOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class EventRecord:
    tenant_id: str
    event_id: str
    event_name: str
    occurred_at: datetime
    ingested_at: datetime
    attributes: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    outcome: IngestOutcome

    @property
    def duplicate(self) -> bool:
        return self.outcome is IngestOutcome.DUPLICATE

    def to_dict(self) -> dict[str, object]:
        return {"event_id": self.event_id, "duplicate": self.duplicate}


@dataclass(frozen=True)
class CountResult:
    event_name: str
    count: int

    def to_dict(self) -> dict[str, object]:
        return {"event_name": self.event_name, "count": self.count}


def payload_drift(
    existing: EventRecord,
    event_name: str,
    occurred_at: datetime,
    attributes: dict[str, object],
) -> list[str]:
    """Return the fields in which a duplicate submission differs from the stored record."""
    drift: list[str] = []
    if existing.event_name != event_name:
        drift.append("event_name")
    if existing.occurred_at != occurred_at:
        drift.append("occurred_at")
    if existing.attributes != attributes:
        drift.append("attributes")
    return drift
