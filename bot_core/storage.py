"""
Key/value storage with optimistic concurrency.

Items are JSON-like dicts. Every successful write stamps the stored copy with a
fresh ``eTag``; a write carrying a stale, non-wildcard ``eTag`` is refused.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from botbuilder.core import Storage
from pydantic import BaseModel

log = logging.getLogger(__name__)

ETAG_KEY = "eTag"
ETAG_WILDCARD = "*"


class StorageError(Exception):
    """Base class for storage failures."""
    pass


class ETagConflictError(StorageError):
    """Raised when a write carries an eTag that no longer matches the stored item."""

    def __init__(self, key: str):
        super().__init__(f'Storage: error writing "{key}" due to eTag conflict.')
        self.key = key


def to_store_item(value: Any) -> Dict[str, Any]:
    """Normalise a dict or pydantic model into a JSON-ready dict."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {
            k: (v.model_dump(mode="json", by_alias=True) if isinstance(v, BaseModel) else v)
            for k, v in value.items()
        }
    raise StorageError(f"Unsupported store item type: {type(value).__name__}")


def is_write_allowed(stored: Dict[str, Any], incoming: Dict[str, Any]) -> bool:
    """Conflict rule shared by every backend."""
    incoming_etag = incoming.get(ETAG_KEY)
    if not stored or not incoming_etag or incoming_etag == ETAG_WILDCARD:
        return True
    return incoming_etag == stored.get(ETAG_KEY)


class MemoryStorage(Storage):
    """
    In-process storage. Values are kept as JSON strings so callers never share
    references with what is stored.
    """

    def __init__(self, memory: Optional[Dict[str, str]] = None):
        super().__init__()
        self._memory: Dict[str, str] = memory if memory is not None else {}
        self._etag = 1

    async def read(self, keys: List[str]) -> Dict[str, Any]:
        if not keys:
            return {}

        data: Dict[str, Any] = {}
        for key in keys:
            item = self._memory.get(key)
            if item is not None:
                data[key] = json.loads(item)
        log.debug(f"MemoryStorage read {len(data)}/{len(keys)} keys")
        return data

    async def write(self, changes: Dict[str, Any]):
        if not changes:
            return

        for key, value in changes.items():
            new_item = to_store_item(value)
            old_item_str = self._memory.get(key)
            old_item = json.loads(old_item_str) if old_item_str else None
            if not is_write_allowed(old_item, new_item):
                log.warning(f"eTag conflict writing key '{key}'")
                raise ETagConflictError(key)
            self._save_item(key, new_item)

    async def delete(self, keys: List[str]):
        for key in keys or []:
            self._memory.pop(key, None)
        log.debug(f"MemoryStorage deleted keys: {keys}")

    def _save_item(self, key: str, item: Dict[str, Any]) -> None:
        clone = dict(item)
        clone[ETAG_KEY] = str(self._etag)
        self._etag += 1
        self._memory[key] = json.dumps(clone)
