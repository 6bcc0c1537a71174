"""
SearchConsoleModule — search traffic and indexing data.
"""

from __future__ import annotations

from typing import FrozenSet, List, Optional

from modules.base import Datapoint, Module, ModuleSettings
from modules.errors import FieldError


class SearchConsoleSettings(ModuleSettings):
    property_id: Optional[str] = None


class SearchConsoleModule(Module):
    settings_model = SearchConsoleSettings
    datapoints = {
        "sites": Datapoint("https://www.googleapis.com/webmasters/v3/sites"),
    }

    @property
    def slug(self) -> str:
        return "search-console"

    @property
    def name(self) -> str:
        return "Search Console"

    @property
    def description(self) -> str:
        return "Google Search Console helps you understand how Google views your site."

    @property
    def required_scopes(self) -> FrozenSet[str]:
        return frozenset({"https://www.googleapis.com/auth/webmasters"})

    @property
    def is_internal(self) -> bool:
        return True

    def check_settings(self, settings: SearchConsoleSettings) -> List[FieldError]:
        prop = settings.property_id
        if prop is None:
            return []
        if prop.startswith(("http://", "https://", "sc-domain:")):
            return []
        return [FieldError("property_id", "Must be a URL-prefix or sc-domain: property")]
