from datetime import datetime, timedelta, timezone
import importlib

import pytest


validation = importlib.import_module("src.eventstore.validation")
encoding = importlib.import_module("src.eventstore.encoding")
errors = importlib.import_module("src.eventstore.errors")


def test_parse_rfc3339_normalizes_offsets_to_utc():
    parsed = validation.parse_rfc3339("2026-02-13T22:00:00+02:00", "timestamp")

    assert parsed == datetime(2026, 2, 13, 20, 0, tzinfo=timezone.utc)
    assert parsed.utcoffset() == timedelta(0)


def test_parse_rfc3339_accepts_zulu_suffix():
    parsed = validation.parse_rfc3339("2026-02-13T20:00:00Z", "timestamp")

    assert parsed == datetime(2026, 2, 13, 20, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "raw",
    ["", "2026-02-13", "2026-02-13T20:00:00", "13/02/2026 20:00", "not-a-timestamp-at-all", None, 42],
)
def test_parse_rfc3339_rejects_invalid_values(raw):
    with pytest.raises(errors.ValidationError) as excinfo:
        validation.parse_rfc3339(raw, "timestamp")

    assert excinfo.value.field == "timestamp"


def test_validate_window_requires_strictly_increasing_bounds():
    moment = datetime(2026, 2, 13, tzinfo=timezone.utc)

    with pytest.raises(errors.ValidationError):
        validation.validate_window(moment, moment)
    with pytest.raises(errors.ValidationError):
        validation.validate_window(moment, moment - timedelta(seconds=1))


def test_normalize_attributes_defaults_to_empty_mapping():
    assert validation.normalize_attributes(None) == {}

    with pytest.raises(errors.ValidationError):
        validation.normalize_attributes(["not", "a", "mapping"])


def test_encode_attributes_is_canonical():
    first = encoding.encode_attributes({"b": 1, "a": {"y": [1, 2], "x": None}})
    second = encoding.encode_attributes({"a": {"x": None, "y": [1, 2]}, "b": 1})

    assert first == second == '{"a":{"x":null,"y":[1,2]},"b":1}'


@pytest.mark.parametrize(
    "attributes",
    [{"when": datetime(2026, 1, 1)}, {"ratio": float("nan")}, {1: "numeric key"}],
)
def test_encode_attributes_rejects_values_without_canonical_form(attributes):
    with pytest.raises(errors.IngestError):
        encoding.encode_attributes(attributes)


def test_stored_timestamp_format_sorts_like_time():
    earlier = encoding.format_timestamp(datetime(2026, 2, 13, 9, 59, 59, 999999, tzinfo=timezone.utc))
    later = encoding.format_timestamp(datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc))

    assert earlier < later
    assert encoding.parse_timestamp(later) == datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)


def test_stored_timestamp_is_zero_padded_before_year_1000():
    ancient = encoding.format_timestamp(datetime(999, 1, 1, tzinfo=timezone.utc))
    recent = encoding.format_timestamp(datetime(2026, 2, 13, 20, 0, tzinfo=timezone.utc))

    assert ancient == "0999-01-01T00:00:00.000000Z"
    assert len(ancient) == len(recent)
    assert ancient < recent
    assert encoding.parse_timestamp(ancient) == datetime(999, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "raw, microsecond",
    [
        ("2026-02-13T20:00:00.5Z", 500000),
        ("2026-02-13T20:00:00.12Z", 120000),
        ("2026-02-13T20:00:00.123456789Z", 123456),
        ("2026-02-13T22:00:00.1+02:00", 100000),
    ],
)
def test_parse_rfc3339_accepts_any_fraction_length(raw, microsecond):
    parsed = validation.parse_rfc3339(raw, "timestamp")

    assert parsed == datetime(2026, 2, 13, 20, 0, 0, microsecond, tzinfo=timezone.utc)


def test_require_text_keeps_whitespace_only_values():
    assert validation.require_text("   ", "event_id") == "   "

    with pytest.raises(errors.ValidationError):
        validation.require_text("", "event_id")
