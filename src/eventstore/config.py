import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .tenant_resolver import parse_api_keys

DEV_API_KEYS: Mapping[str, str] = MappingProxyType({"tenant-key-123": "tenant1"})


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    api_keys: Mapping[str, str] = field(default_factory=lambda: DEV_API_KEYS)
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    database_url = (environ.get("DATABASE_URL") or environ.get("DB_URL") or "").strip()

    api_keys = parse_api_keys(environ.get("API_KEYS", ""))
    if not api_keys:
        api_keys = dict(DEV_API_KEYS)

    raw_port = environ.get("PORT", "8080").strip()
    try:
        port = int(raw_port)
    except ValueError as exc:
        raise ValueError(f"PORT must be an integer: {raw_port!r}") from exc

    return Settings(
        database_url=database_url,
        api_keys=MappingProxyType(api_keys),
        host=environ.get("HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=port,
        log_level=environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
