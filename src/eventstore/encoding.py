import json
from collections.abc import Mapping
from datetime import datetime, timezone

from .errors import IngestError


def encode_attributes(attributes: Mapping[str, object]) -> str:
    if any(not isinstance(key, str) for key in attributes):
        raise IngestError("attributes keys must be strings")
    try:
        return json.dumps(
            dict(attributes), sort_keys=True, separators=(",", ":"), allow_nan=False
        )
    except (TypeError, ValueError) as exc:
        raise IngestError(f"attributes are not serializable: {exc}") from exc


def decode_attributes(raw: object) -> dict[str, object]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    decoded = json.loads(str(raw))
    if isinstance(decoded, dict):
        return decoded
    return {}


def format_timestamp(value: datetime) -> str:
    # Fixed width (four digit year, six digit fraction) so that lexical order
    # of stored strings equals time order.
    utc = value.astimezone(timezone.utc).replace(tzinfo=None)
    return utc.isoformat(timespec="microseconds") + "Z"


def parse_timestamp(raw: object) -> datetime:
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=timezone.utc)
        return raw.astimezone(timezone.utc)
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1]
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)
