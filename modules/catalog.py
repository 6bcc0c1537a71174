"""
The closed set of modules shipped with the plugin.

Order matters: a module must appear after every module it depends on.
"""

from __future__ import annotations

from typing import List

from modules.analytics import AnalyticsModule
from modules.base import Module
from modules.optimize import OptimizeModule
from modules.search_console import SearchConsoleModule
from modules.site_verification import SiteVerificationModule
from modules.tagmanager import TagManagerModule


def build_modules() -> List[Module]:
    """Fresh instances of every known module — add new ones here."""
    return [
        SiteVerificationModule(),
        SearchConsoleModule(),
        AnalyticsModule(),
        OptimizeModule(),
        TagManagerModule(),
    ]
