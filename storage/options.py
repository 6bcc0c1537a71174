"""
Options — global and per-user settings on top of a KeyValueStore.

Global keys are stored as-is.  User keys are namespaced as
``user:{owner_id}:{name}``; the owner is passed explicitly on every call
instead of being bound to the instance.
"""

from __future__ import annotations

from typing import Any, Optional

from storage.base import KeyValueStore, VersionedValue


class Options:
    """Site-wide options."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self, key: str, default: Any = None) -> Any:
        record = await self._store.get(key)
        return default if record is None else record.value

    async def get_versioned(self, key: str) -> Optional[VersionedValue]:
        return await self._store.get(key)

    async def set(self, key: str, value: Any, *, expected_version: Optional[int] = None) -> int:
        return await self._store.set(key, value, expected_version=expected_version)

    async def delete(self, key: str, *, expected_version: Optional[int] = None) -> bool:
        return await self._store.delete(key, expected_version=expected_version)

    async def has(self, key: str) -> bool:
        return await self._store.get(key) is not None


class UserOptions:
    """Options scoped to a single owner."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def key_for(owner_id: str, name: str) -> str:
        return f"user:{owner_id}:{name}"

    async def get(self, owner_id: str, name: str, default: Any = None) -> Any:
        record = await self._store.get(self.key_for(owner_id, name))
        return default if record is None else record.value

    async def set(self, owner_id: str, name: str, value: Any) -> int:
        return await self._store.set(self.key_for(owner_id, name), value)

    async def delete(self, owner_id: str, name: str) -> bool:
        return await self._store.delete(self.key_for(owner_id, name))

    async def delete_all(self, owner_id: str) -> int:
        """Drop every option belonging to ``owner_id``."""
        return await self._store.delete_prefix(f"user:{owner_id}:")
