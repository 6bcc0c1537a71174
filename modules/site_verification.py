"""
SiteVerificationModule — proves site ownership to Google.

Internal: always active, never shown as a toggle.
"""

from __future__ import annotations

from typing import FrozenSet, List, Optional

from pydantic import Field

from modules.base import Datapoint, Module, ModuleSettings
from modules.errors import FieldError


class SiteVerificationSettings(ModuleSettings):
    verified: bool = False
    method: Optional[str] = Field(default=None, pattern=r"^(META|FILE)$")


class SiteVerificationModule(Module):
    settings_model = SiteVerificationSettings
    datapoints = {
        "verified-sites": Datapoint("https://www.googleapis.com/siteVerification/v1/webResource"),
    }

    @property
    def slug(self) -> str:
        return "site-verification"

    @property
    def name(self) -> str:
        return "Site Verification"

    @property
    def description(self) -> str:
        return "Google Site Verification allows you to manage ownership of your site."

    @property
    def required_scopes(self) -> FrozenSet[str]:
        return frozenset({"https://www.googleapis.com/auth/siteverification"})

    @property
    def is_internal(self) -> bool:
        return True

    def check_settings(self, settings: SiteVerificationSettings) -> List[FieldError]:
        if settings.verified and not settings.method:
            return [FieldError("method", "A verification method is required once verified")]
        return []
