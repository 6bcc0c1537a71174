"""
KeyValueStore — abstract persistence contract used by options and credentials.

Every record carries an integer ``version`` that starts at 1 and increments
on each write.  Writers that pass ``expected_version`` get compare-and-set
semantics: the write only happens if the stored version still matches,
otherwise ``StoreConflictError`` is raised.  ``expected_version=0`` means
"the key must not exist yet".

Versions never repeat for a key.  Deleting a record retires its version and
a later write to the same key continues numbering after it, so a version
read before a delete can never match a record created after it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class VersionedValue:
    value: Any
    version: int


class KeyValueStore(ABC):
    """Abstract async key/value store with optimistic concurrency."""

    @abstractmethod
    async def get(self, key: str) -> Optional[VersionedValue]:
        """Return the stored value and its version, or None if absent."""
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Write a JSON-serialisable value.

        Returns
        -------
        The new version number.

        Raises
        ------
        StoreConflictError   – ``expected_version`` did not match
        StoreUnavailableError – backend unreachable
        """
        ...

    @abstractmethod
    async def delete(self, key: str, *, expected_version: Optional[int] = None) -> bool:
        """
        Remove a key.  Returns True if something was deleted.

        With ``expected_version`` the delete only happens if the version
        still matches; a mismatch raises ``StoreConflictError``.
        """
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``.  Returns the count."""
        ...

    async def close(self) -> None:
        """Release backend resources (optional)."""
        return None
