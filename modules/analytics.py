"""
AnalyticsModule — Google Analytics account, property and view selection.
"""

from __future__ import annotations

from typing import FrozenSet, List, Optional

from pydantic import Field

from modules.base import Datapoint, Module, ModuleSettings
from modules.errors import FieldError


class AnalyticsSettings(ModuleSettings):
    account_id: Optional[str] = Field(default=None, pattern=r"^\d+$")
    property_id: Optional[str] = Field(default=None, pattern=r"^UA-\d+-\d+$")
    internal_web_property_id: Optional[str] = Field(default=None, pattern=r"^\d+$")
    profile_id: Optional[str] = Field(default=None, pattern=r"^\d+$")
    use_snippet: bool = True
    anonymize_ip: bool = True


class AnalyticsModule(Module):
    settings_model = AnalyticsSettings
    datapoints = {
        "accounts": Datapoint("https://www.googleapis.com/analytics/v3/management/accounts"),
        "goals": Datapoint(
            "https://www.googleapis.com/analytics/v3/management/accounts/~all/webproperties/~all/profiles/~all/goals"
        ),
    }

    @property
    def slug(self) -> str:
        return "analytics"

    @property
    def name(self) -> str:
        return "Analytics"

    @property
    def description(self) -> str:
        return "Get a deeper understanding of your customers."

    @property
    def required_scopes(self) -> FrozenSet[str]:
        return frozenset({"https://www.googleapis.com/auth/analytics.readonly"})

    def check_settings(self, settings: AnalyticsSettings) -> List[FieldError]:
        errors: List[FieldError] = []
        if settings.property_id and settings.account_id:
            # UA-<account>-<n>
            if settings.property_id.split("-")[1] != settings.account_id:
                errors.append(FieldError("property_id", "Property does not belong to the selected account"))
        if settings.profile_id and not settings.property_id:
            errors.append(FieldError("profile_id", "A view requires a property"))
        return errors
