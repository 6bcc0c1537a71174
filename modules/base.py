"""
Module — abstract interface for every Google service integration.

Every service (Analytics, Search Console, …) subclasses this and declares
its identity, dependencies, required OAuth scopes and a settings model.
Instances are immutable metadata; whether a module is active lives in the
options store, not on the instance.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Type

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from modules.errors import DataRequestError, FieldError

logger = logging.getLogger(__name__)


class ModuleSettings(BaseModel):
    """Base for settings models: strict types, no unknown keys."""

    model_config = ConfigDict(extra="forbid", strict=True)


@dataclass(frozen=True)
class Datapoint:
    """A read-only upstream endpoint exposed by a module."""

    url: str
    method: str = "GET"


class Module(ABC):
    """Abstract base for all service modules."""

    settings_model: ClassVar[Type[ModuleSettings]] = ModuleSettings
    datapoints: ClassVar[Mapping[str, Datapoint]] = {}

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def slug(self) -> str:
        """Unique slug: 'analytics', 'search-console', …"""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable: 'Analytics', 'Search Console', …"""
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def dependencies(self) -> FrozenSet[str]:
        """Slugs that must be active before this module may activate."""
        return frozenset()

    @property
    def required_scopes(self) -> FrozenSet[str]:
        """OAuth scopes this module needs to be usable."""
        return frozenset()

    @property
    def is_internal(self) -> bool:
        """Internal modules are always active and never toggled by callers."""
        return False

    # ── Settings ────────────────────────────────────────────────────────

    def default_settings(self) -> Dict[str, Any]:
        return self.settings_model().model_dump(mode="json")

    def validate_settings(self, settings: Any) -> List[FieldError]:
        """
        Validate a full settings mapping.

        Returns a list of field-level errors; an empty list means valid.
        """
        if not isinstance(settings, dict):
            return [FieldError(field="", reason="Settings must be an object")]
        try:
            model = self.settings_model.model_validate(settings)
        except ValidationError as exc:
            return [
                FieldError(
                    field=".".join(str(loc) for loc in err["loc"]),
                    reason=err["msg"],
                )
                for err in exc.errors()
            ]
        return self.check_settings(model)

    def check_settings(self, settings: ModuleSettings) -> List[FieldError]:
        """Cross-field rules beyond the model's types (optional)."""
        return []

    # ── Data ────────────────────────────────────────────────────────────

    async def request_data(
        self,
        datapoint: str,
        access_token: str,
        params: Optional[Dict[str, Any]],
        client: httpx.AsyncClient,
    ) -> Any:
        """
        Call a datapoint with the owner's access token.

        The upstream body is returned as decoded JSON without interpretation.
        """
        point = self.datapoints[datapoint]
        try:
            resp = await client.request(
                point.method,
                point.url,
                params=params or None,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise DataRequestError(self.slug, f"{datapoint} timed out", 504) from exc
        except httpx.TransportError as exc:
            raise DataRequestError(self.slug, f"{datapoint} failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning(
                "Datapoint %s/%s returned HTTP %d", self.slug, datapoint, resp.status_code
            )
            raise DataRequestError(
                self.slug, f"{datapoint} returned HTTP {resp.status_code}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise DataRequestError(self.slug, f"{datapoint} returned a malformed body") from exc
