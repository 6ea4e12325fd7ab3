import argparse
import json
import logging
from typing import Optional, Union

from .config import Settings, load_settings
from .errors import AuthenticationError, DurabilityError, ValidationError
from .postgres_repository import PostgresEventStore
from .repository import InMemoryEventStore
from .service import EventService
from .sqlite_repository import SQLITE_URL_PREFIX, SqliteEventStore, sqlite_path_from_url
from .tenant_resolver import TenantResolver

LOGGER = logging.getLogger(__name__)

EventStore = Union[PostgresEventStore, SqliteEventStore, InMemoryEventStore]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eventstore")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve")
    _ = serve.add_argument("--host")
    _ = serve.add_argument("--port", type=int)

    _ = subparsers.add_parser("init-schema")
    _ = subparsers.add_parser("ready")

    ingest = subparsers.add_parser("ingest")
    _ = ingest.add_argument("--api-key", required=True)
    _ = ingest.add_argument("--event-name", required=True)
    _ = ingest.add_argument("--timestamp", required=True)
    _ = ingest.add_argument("--event-id")
    _ = ingest.add_argument("--properties-json", default="{}")

    count = subparsers.add_parser("count")
    _ = count.add_argument("--api-key", required=True)
    _ = count.add_argument("--event-name", required=True)
    _ = count.add_argument("--from", dest="from_", required=True)
    _ = count.add_argument("--to", required=True)

    return parser


def build_event_store(database_url: str) -> EventStore:
    if not database_url:
        LOGGER.warning("DATABASE_URL is not set; events are kept in memory only")
        return InMemoryEventStore()
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresEventStore(dsn=database_url)
    if database_url.startswith(SQLITE_URL_PREFIX):
        return SqliteEventStore(sqlite_path_from_url(database_url))
    raise ValueError(f"unsupported DATABASE_URL scheme: {database_url.split(':', 1)[0]}")


def build_service(settings: Settings, store: Optional[EventStore] = None) -> EventService:
    return EventService(
        resolver=TenantResolver(settings.api_keys),
        store=store if store is not None else build_event_store(settings.database_url),
    )


def _parse_json_object(raw: str, field_name: str) -> dict[str, object]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{field_name} must be valid JSON: {exc.msg}", field=field_name) from exc
    if not isinstance(value, dict):
        raise ValidationError(f"{field_name} must be a JSON object", field=field_name)
    return value


def init_schema_command(settings: Settings) -> dict[str, object]:
    store = build_event_store(settings.database_url)
    if isinstance(store, InMemoryEventStore):
        raise ValueError("DATABASE_URL is required for init-schema")
    store.ensure_schema()
    return {"schema": "ok"}


def ingest_command(
    settings: Settings,
    api_key: str,
    event_name: str,
    timestamp: str,
    event_id: Optional[str] = None,
    properties_json: str = "{}",
) -> dict[str, object]:
    service = build_service(settings)
    tenant_id = service.authenticate(api_key)
    payload: dict[str, object] = {
        "event_id": event_id,
        "event_name": event_name,
        "timestamp": timestamp,
        "properties": _parse_json_object(properties_json, "properties_json"),
    }
    return service.ingest_event(tenant_id, payload).to_dict()


def count_command(
    settings: Settings, api_key: str, event_name: str, from_raw: str, to_raw: str
) -> dict[str, object]:
    service = build_service(settings)
    tenant_id = service.authenticate(api_key)
    return service.count_events(tenant_id, event_name, from_raw, to_raw).to_dict()


def ready_command(settings: Settings) -> dict[str, object]:
    service = build_service(settings)
    ready = service.ready()
    return {"status": "ready" if ready else "not_ready", "ok": ready}


def serve_command(settings: Settings, host: Optional[str] = None, port: Optional[int] = None) -> None:
    import uvicorn

    from .api import build_app

    store = build_event_store(settings.database_url)
    if not isinstance(store, InMemoryEventStore):
        store.ensure_schema()
    app = build_app(build_service(settings, store=store))
    LOGGER.info("server starting on %s:%s", host or settings.host, port or settings.port)
    uvicorn.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        if args.command == "serve":
            serve_command(settings, host=args.host, port=args.port)
            return 0

        if args.command == "init-schema":
            print(json.dumps(init_schema_command(settings)))
            return 0

        if args.command == "ready":
            result = ready_command(settings)
            print(json.dumps(result))
            return 0 if bool(result.get("ok")) else 2

        if args.command == "ingest":
            result = ingest_command(
                settings,
                api_key=args.api_key,
                event_name=args.event_name,
                timestamp=args.timestamp,
                event_id=args.event_id,
                properties_json=args.properties_json,
            )
            print(json.dumps(result))
            return 0

        if args.command == "count":
            result = count_command(
                settings,
                api_key=args.api_key,
                event_name=args.event_name,
                from_raw=args.from_,
                to_raw=args.to,
            )
            print(json.dumps(result))
            return 0
    except (ValidationError, AuthenticationError) as exc:
        print(json.dumps({"error": str(exc)}))
        return 1
    except DurabilityError as exc:
        print(json.dumps({"error": str(exc), "outcome": "unknown"}))
        return 2

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
