"""
In-process KeyValueStore used for development and tests.

Values are deep-copied through JSON on the way in and out so callers can
never mutate stored state by reference, mirroring a real backend.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

from storage.base import KeyValueStore, VersionedValue
from storage.errors import StoreConflictError

logger = logging.getLogger(__name__)


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, int]] = {}
        # Last version of each deleted key; numbering resumes after it.
        self._retired: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[VersionedValue]:
        async with self._lock:
            entry = self._data.get(key)
        if entry is None:
            return None
        raw, version = entry
        return VersionedValue(value=json.loads(raw), version=version)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        raw = json.dumps(value)
        async with self._lock:
            current = self._data.get(key)
            current_version = current[1] if current else 0
            if expected_version is not None and expected_version != current_version:
                raise StoreConflictError(key, expected_version, current_version)
            base = current_version if current else self._retired.pop(key, 0)
            new_version = base + 1
            self._data[key] = (raw, new_version)
        return new_version

    async def delete(self, key: str, *, expected_version: Optional[int] = None) -> bool:
        async with self._lock:
            current = self._data.get(key)
            if current is None:
                if expected_version:
                    raise StoreConflictError(key, expected_version, 0)
                return False
            if expected_version is not None and expected_version != current[1]:
                raise StoreConflictError(key, expected_version, current[1])
            self._retire(key)
        return True

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for k in doomed:
                self._retire(k)
        logger.debug("Deleted %d keys with prefix %s", len(doomed), prefix)
        return len(doomed)

    def _retire(self, key: str) -> None:
        _, version = self._data.pop(key)
        self._retired[key] = version

    def keys(self) -> list[str]:
        """Snapshot of stored keys (test helper)."""
        return sorted(self._data)
