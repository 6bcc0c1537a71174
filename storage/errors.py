"""
Store-layer exceptions.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for persistence failures."""


class StoreUnavailableError(StoreError):
    """The backing store cannot be reached.  Fatal for the current request."""


class StoreConflictError(StoreError):
    """A versioned write lost against a concurrent writer."""

    def __init__(self, key: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Version conflict on '{key}': expected {expected_version}, found {actual_version}"
        )
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
