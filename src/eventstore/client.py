import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import uuid4

import requests

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

Timestamp = Union[datetime, str]


class ApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class SentEvent:
    event_id: str
    duplicate: bool


def _format_timestamp(value: Timestamp) -> str:
    if isinstance(value, str):
        return value
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("timestamp must be timezone-aware")
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class EventsApiClient:
    """Client for the events HTTP API with at-least-once delivery.

    ``send_event`` fixes one idempotency key per logical event and reuses it
    on every retry, so a timed-out request that actually landed is reported
    as a duplicate instead of being stored twice.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Optional[requests.Session] = None,
        max_retries: int = 2,
        timeout_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session or requests.Session()
        self._max_retries = max_retries
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._id_factory = id_factory

    def _request(
        self,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        json_body: Optional[Mapping[str, object]] = None,
    ) -> requests.Response:
        attempt = 0
        request_headers = {"X-API-Key": self._api_key, **dict(headers or {})}

        while True:
            try:
                response = self._session.request(
                    method,
                    f"{self._base_url}{path}",
                    headers=request_headers,
                    params=params,
                    json=json_body,
                    timeout=self._timeout_seconds,
                )
            except requests.RequestException as error:
                if attempt >= self._max_retries:
                    raise ApiError(f"{method} {path} failed: {error}") from error
                attempt += 1
                self._sleep(float(attempt))
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                attempt += 1
                self._sleep(float(attempt))
                continue

            if response.status_code >= 400:
                raise ApiError(
                    f"{method} {path} failed with status {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            return response

    def send_event(
        self,
        event_name: str,
        timestamp: Timestamp,
        properties: Optional[Mapping[str, object]] = None,
        event_id: Optional[str] = None,
    ) -> SentEvent:
        idempotency_key = event_id or self._id_factory()
        body: dict[str, object] = {
            "event_id": idempotency_key,
            "event_name": event_name,
            "timestamp": _format_timestamp(timestamp),
        }
        if properties:
            body["properties"] = dict(properties)

        response = self._request(
            "POST",
            "/events",
            headers={"Idempotency-Key": idempotency_key},
            json_body=body,
        )
        decoded = response.json()
        return SentEvent(
            event_id=str(decoded.get("event_id", idempotency_key)),
            duplicate=bool(decoded.get("duplicate", False)),
        )

    def count(self, event_name: str, start: Timestamp, end: Timestamp) -> int:
        response = self._request(
            "GET",
            "/metrics",
            params={
                "event_name": event_name,
                "from": _format_timestamp(start),
                "to": _format_timestamp(end),
            },
        )
        decoded = response.json()
        if not isinstance(decoded, dict) or "count" not in decoded:
            raise ApiError("metrics response has no count")
        return int(decoded["count"])

    def ready(self) -> bool:
        try:
            response = self._session.get(
                f"{self._base_url}/ready", timeout=self._timeout_seconds
            )
        except requests.RequestException:
            return False
        return response.status_code == 200
