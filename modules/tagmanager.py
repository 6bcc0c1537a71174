"""
TagManagerModule — Tag Manager account and container selection.
"""

from __future__ import annotations

from typing import FrozenSet, List, Optional

from pydantic import Field

from modules.base import Datapoint, Module, ModuleSettings
from modules.errors import FieldError


class TagManagerSettings(ModuleSettings):
    account_id: Optional[str] = Field(default=None, pattern=r"^\d+$")
    container_id: Optional[str] = Field(default=None, pattern=r"^GTM-[A-Z0-9]+$")
    use_snippet: bool = True


class TagManagerModule(Module):
    settings_model = TagManagerSettings
    datapoints = {
        "accounts": Datapoint("https://www.googleapis.com/tagmanager/v2/accounts"),
    }

    @property
    def slug(self) -> str:
        return "tagmanager"

    @property
    def name(self) -> str:
        return "Tag Manager"

    @property
    def description(self) -> str:
        return "Tag Manager creates an easy to manage way to create tags on your site without updating code."

    @property
    def required_scopes(self) -> FrozenSet[str]:
        return frozenset({"https://www.googleapis.com/auth/tagmanager.readonly"})

    def check_settings(self, settings: TagManagerSettings) -> List[FieldError]:
        if settings.container_id and not settings.account_id:
            return [FieldError("account_id", "A container requires an account")]
        return []
