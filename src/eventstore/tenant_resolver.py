import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Optional

from .errors import AuthenticationError

LOGGER = logging.getLogger(__name__)


def parse_api_keys(raw: str) -> dict[str, str]:
    """Parse ``"tenant:key,tenant:key"`` into a credential -> tenant mapping."""
    keys: dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        tenant, sep, key = entry.partition(":")
        tenant = tenant.strip()
        key = key.strip()
        if not sep or not tenant or not key:
            raise ValueError('API_KEYS must be "tenant:key,tenant:key"')
        keys[key] = tenant
    return keys


class TenantResolver:
    def __init__(self, keys: Mapping[str, str]) -> None:
        self._keys: Mapping[str, str] = MappingProxyType(
            {key.strip(): tenant for key, tenant in keys.items() if key.strip() and tenant}
        )

    def __len__(self) -> int:
        return len(self._keys)

    def resolve(self, credential: Optional[str]) -> str:
        tenant_id = self._keys.get((credential or "").strip())
        if tenant_id is None:
            LOGGER.info("rejected request with unknown credential")
            raise AuthenticationError()
        return tenant_id
