"""
Keyed blob storage used for persisted sessions, OAuth data and conversations.

Values are JSON-compatible. Every write replaces the whole record for a key,
so a reader never observes a partially updated value.
"""

import asyncio
import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils.logging import get_logger

logger = get_logger(__name__)

CONNECTIONS_KEY = "mcp_connections"
CONVERSATIONS_KEY = "conversations"


def token_key(session_id: str) -> str:
    return f"token:{session_id}"


def registration_key(server_identity: str) -> str:
    return f"registration:{server_identity}"


def oauth_state_key(session_id: str) -> str:
    return f"oauthState:{session_id}"


class KeyValueStore:
    """Base class for key-value stores."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the value stored under key, or None."""
        raise NotImplementedError("Subclasses must implement get()")

    async def set(self, key: str, value: Any) -> None:
        """Replace the value stored under key."""
        raise NotImplementedError("Subclasses must implement set()")

    async def delete(self, key: str) -> None:
        """Remove key if present."""
        raise NotImplementedError("Subclasses must implement delete()")

    async def keys(self, prefix: str = "") -> List[str]:
        """List keys, optionally filtered by prefix."""
        raise NotImplementedError("Subclasses must implement keys()")


class MemoryStore(KeyValueStore):
    """In-process store. Values are copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]


class JsonFileStore(KeyValueStore):
    """
    Store backed by a single JSON file with owner-only permissions.

    The file is rewritten through a temporary file and an atomic rename.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable store file {self._path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2))
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return self._read_all().get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._read_all()
            if key in data:
                del data[key]
                self._write_all(data)

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            return [key for key in self._read_all() if key.startswith(prefix)]


def create_store(backend: str, path: Optional[str] = None) -> KeyValueStore:
    """
    Create a store from StorageSettings values.

    Raises:
        ValueError: If the backend is not supported.
    """
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        if not path:
            raise ValueError("The file store needs a path")
        return JsonFileStore(path)
    raise ValueError(f"Unsupported storage backend: {backend}")
