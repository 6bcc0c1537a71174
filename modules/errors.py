"""
Module registry and settings errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List


class RegistryError(Exception):
    code = "registry_error"

    def __init__(self, slug: str, message: str) -> None:
        super().__init__(message)
        self.slug = slug
        self.message = message


class DuplicateSlug(RegistryError):
    code = "duplicate_slug"

    def __init__(self, slug: str) -> None:
        super().__init__(slug, f"Module '{slug}' is already registered")


class UnknownDependency(RegistryError):
    code = "unknown_dependency"

    def __init__(self, slug: str, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            slug, f"Module '{slug}' depends on unregistered module(s): {', '.join(self.missing)}"
        )


class InvalidDescriptor(RegistryError):
    code = "invalid_descriptor"


class ModuleNotFound(RegistryError):
    code = "module_not_found"

    def __init__(self, slug: str) -> None:
        super().__init__(slug, f"Module '{slug}' not found")


class ModuleInternal(RegistryError):
    code = "module_internal"

    def __init__(self, slug: str) -> None:
        super().__init__(slug, f"Module '{slug}' is internal and cannot be toggled")


class DependencyInactive(RegistryError):
    code = "dependency_inactive"

    def __init__(self, slug: str, inactive: Iterable[str]) -> None:
        self.inactive = sorted(inactive)
        super().__init__(
            slug,
            f"Module '{slug}' requires inactive module(s): {', '.join(self.inactive)}",
        )


class InsufficientScope(RegistryError):
    code = "insufficient_scope"

    def __init__(self, slug: str, missing_scopes: Iterable[str]) -> None:
        self.missing_scopes = sorted(missing_scopes)
        super().__init__(
            slug,
            f"Module '{slug}' needs scopes that were not granted: {', '.join(self.missing_scopes)}",
        )


class HasActiveDependants(RegistryError):
    code = "has_active_dependants"

    def __init__(self, slug: str, dependants: Iterable[str]) -> None:
        self.dependants = sorted(dependants)
        super().__init__(
            slug,
            f"Module '{slug}' has active dependants: {', '.join(self.dependants)}",
        )


class ModuleInactive(RegistryError):
    code = "module_inactive"

    def __init__(self, slug: str) -> None:
        super().__init__(slug, f"Module '{slug}' is not active")


class ModuleBusy(RegistryError):
    """The activation flag kept changing under every write attempt."""

    code = "module_busy"

    def __init__(self, slug: str) -> None:
        super().__init__(slug, f"Module '{slug}' is being changed concurrently; try again")


class DatapointNotFound(RegistryError):
    code = "datapoint_not_found"

    def __init__(self, slug: str, datapoint: str) -> None:
        self.datapoint = datapoint
        super().__init__(slug, f"Module '{slug}' has no datapoint '{datapoint}'")


class DataRequestError(RegistryError):
    """The upstream Google API answered a datapoint request with an error."""

    code = "data_request_failed"

    def __init__(self, slug: str, message: str, status_code: int = 502) -> None:
        super().__init__(slug, message)
        self.status_code = status_code


@dataclass(frozen=True)
class FieldError:
    field: str
    reason: str


class SettingsValidationError(Exception):
    """One or more settings fields were rejected.  Nothing was persisted."""

    code = "invalid_settings"

    def __init__(self, slug: str, errors: List[FieldError]) -> None:
        self.slug = slug
        self.errors = list(errors)
        self.message = f"Invalid settings for module '{slug}'"
        super().__init__(self.message)
