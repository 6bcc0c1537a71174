"""
OptimizeModule — A/B testing layered on Analytics.
"""

from __future__ import annotations

from typing import FrozenSet, Optional

from pydantic import Field

from modules.base import Module, ModuleSettings


class OptimizeSettings(ModuleSettings):
    optimize_id: Optional[str] = Field(default=None, pattern=r"^GTM-[A-Z0-9]+$")


class OptimizeModule(Module):
    settings_model = OptimizeSettings

    @property
    def slug(self) -> str:
        return "optimize"

    @property
    def name(self) -> str:
        return "Optimize"

    @property
    def description(self) -> str:
        return "Create free A/B tests that help you drive metric-based design solutions to your site."

    @property
    def dependencies(self) -> FrozenSet[str]:
        return frozenset({"analytics"})
