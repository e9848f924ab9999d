"""
Persisted list of server connections.

Stored under the "mcp_connections" key as a list of {id, descriptor}
records. Two older layouts are still read: {id, config} records and a bare
list of configs without ids.
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from tether_mcp.config import OAuthClientSettings, ServerDescriptor
from tether_mcp.storage import CONNECTIONS_KEY, KeyValueStore
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

_LEGACY_FIELDS = {
    "authType": "auth",
    "maxReconnectAttempts": "max_reconnect_attempts",
    "oauthConfig": "oauth",
}

_LEGACY_OAUTH_FIELDS = {
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "authUrl": "authorization_endpoint",
    "tokenUrl": "token_endpoint",
}


class PersistedServer(BaseModel):
    id: str
    descriptor: ServerDescriptor


def _from_legacy(config: Dict[str, Any]) -> Dict[str, Any]:
    converted = {}
    for key, value in config.items():
        key = _LEGACY_FIELDS.get(key, key)
        if key == "oauth" and isinstance(value, dict):
            value = {
                _LEGACY_OAUTH_FIELDS.get(k, k): v
                for k, v in value.items()
                if _LEGACY_OAUTH_FIELDS.get(k, k) in OAuthClientSettings.model_fields
            }
        if key in ServerDescriptor.model_fields:
            converted[key] = value
    return converted


class ServerRegistry:
    """
    Reads and writes the persisted connection list.

    In-process servers are never written; they are recreated on every start.
    """

    def __init__(self, store: KeyValueStore, key: str = CONNECTIONS_KEY):
        self.store = store
        self.key = key

    async def load(self) -> List[PersistedServer]:
        data = await self.store.get(self.key)
        if not data:
            return []
        if not isinstance(data, list):
            logger.warning(f"Ignoring malformed {self.key} entry")
            return []

        records: List[PersistedServer] = []
        for item in data:
            record = self._parse(item)
            if record is not None:
                records.append(record)
        return records

    def _parse(self, item: Any) -> Optional[PersistedServer]:
        if not isinstance(item, dict):
            return None
        try:
            if "descriptor" in item:
                return PersistedServer.model_validate(item)
            if "config" in item:
                return PersistedServer(
                    id=item.get("id") or uuid.uuid4().hex,
                    descriptor=ServerDescriptor.model_validate(_from_legacy(item["config"])),
                )
            # Bare config without an id
            return PersistedServer(
                id=uuid.uuid4().hex,
                descriptor=ServerDescriptor.model_validate(_from_legacy(item)),
            )
        except ValidationError as e:
            logger.warning(f"Skipping unreadable persisted server: {e.errors()[0].get('msg')}")
            return None

    async def save(self, records: List[PersistedServer]) -> None:
        """Replace the stored list, leaving out in-process servers."""
        payload = [
            record.model_dump(mode="json", exclude_none=True)
            for record in records
            if not record.descriptor.is_local
        ]
        await self.store.set(self.key, payload)
