import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Optional

from .errors import ValidationError

_FRACTION = re.compile(r"\.(\d+)(?=[+-]\d{2}:\d{2}$)")


def require_text(value: object, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field_name} required", field=field_name)
    return value


def ensure_utc(value: object, field_name: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field_name} must be a datetime", field=field_name)
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(
            f"{field_name} must include timezone offset (e.g. +00:00)", field=field_name
        )
    return value.astimezone(timezone.utc)


def parse_rfc3339(raw: object, field_name: str) -> datetime:
    """Parse an RFC3339 timestamp string and normalize it to UTC.

    Both ``Z`` and numeric offsets are accepted; a date without a time part
    or a timestamp without an offset is rejected. Fractional seconds of any
    length are accepted and truncated to microseconds.
    """
    text = require_text(raw, field_name).strip()
    if len(text) < 20 or text[10] not in "Tt":
        raise ValidationError(f"{field_name} must be RFC3339", field=field_name)
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be RFC3339", field=field_name) from exc
    return ensure_utc(parsed, field_name)


def validate_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start_utc = ensure_utc(start, "from")
    end_utc = ensure_utc(end, "to")
    if not start_utc < end_utc:
        raise ValidationError("from must be < to", field="from")
    return start_utc, end_utc


def normalize_attributes(value: Optional[object]) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError("properties must be a JSON object", field="properties")
    return dict(value)
