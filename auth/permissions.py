"""
Permission checks delegated to the host.

The core never decides who may do what; it asks a ``PermissionCheck`` with
the caller and the action.  ``CapabilityPermissionCheck`` is the default:
an action is allowed when the caller carries the matching capability.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Protocol

from pydantic import BaseModel, Field


class Action(str, Enum):
    VIEW_DASHBOARD = "view_dashboard"
    AUTHENTICATE = "authenticate"
    SETUP = "setup"
    MANAGE_OPTIONS = "manage_options"


class Caller(BaseModel):
    user_id: str
    capabilities: FrozenSet[str] = Field(default_factory=frozenset)


class PermissionCheck(Protocol):
    def __call__(self, caller: Caller, action: Action) -> bool: ...


_DEFAULT_CAPABILITIES: Dict[Action, str] = {
    Action.VIEW_DASHBOARD: "googlesitekit_view_dashboard",
    Action.AUTHENTICATE: "googlesitekit_authenticate",
    Action.SETUP: "googlesitekit_setup",
    Action.MANAGE_OPTIONS: "googlesitekit_manage_options",
}


class CapabilityPermissionCheck:
    """Map each action to one host capability."""

    def __init__(self, capabilities: Dict[Action, str] | None = None) -> None:
        self._capabilities = dict(capabilities or _DEFAULT_CAPABILITIES)

    def __call__(self, caller: Caller, action: Action) -> bool:
        required = self._capabilities.get(action)
        return required is not None and required in caller.capabilities
