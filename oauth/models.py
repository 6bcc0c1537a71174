"""
Pydantic models for the OAuth flow.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, computed_field, field_serializer


class TokenGrant(BaseModel):
    """What the token endpoint hands back for a code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    scopes: FrozenSet[str] = Field(default_factory=frozenset)
    token_type: str = "Bearer"


class CallbackParams(BaseModel):
    """Query parameters Google appends to the redirect URI."""

    code: Optional[str] = None
    state: str
    error: Optional[str] = None


class OAuthState(BaseModel):
    """Decoded payload of the ``state`` parameter."""

    nonce: str
    redirect_path: str = "/"
    owner_id: Optional[str] = None
    exp: int


class AuthState(BaseModel):
    """Derived authentication summary for one owner; never persisted."""

    is_authenticated: bool = False
    is_setup_complete: bool = False
    granted_scopes: FrozenSet[str] = Field(default_factory=frozenset)
    required_scopes: FrozenSet[str] = Field(default_factory=frozenset)
    profile: Optional[Dict[str, Any]] = None

    @field_serializer("granted_scopes", "required_scopes")
    def _sorted(self, scopes: FrozenSet[str]) -> List[str]:
        return sorted(scopes)

    @computed_field
    @property
    def missing_scopes(self) -> List[str]:
        return sorted(self.required_scopes - self.granted_scopes)

    @computed_field
    @property
    def needs_reauthentication(self) -> bool:
        """Connected, but the grant no longer covers what is required."""
        return self.is_authenticated and bool(self.required_scopes - self.granted_scopes)

    def has_scopes(self, scopes: FrozenSet[str]) -> bool:
        if not scopes:
            return True
        return self.is_authenticated and scopes <= self.granted_scopes
