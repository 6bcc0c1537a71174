"""
GoogleOAuthClient — talks to Google's OAuth2 endpoints.

Every call uses a bounded timeout.  Failures are reported as
``InvalidGrant`` (the grant was rejected, 4xx) or ``TransientFailure``
(timeout, transport error, 429 or 5xx).  Nothing is retried here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from oauth.errors import InvalidGrant, TransientFailure
from oauth.models import TokenGrant

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("error_description") or data.get("error") or data)
    return str(data)


def _parse_grant(data: Any, what: str) -> TokenGrant:
    if not isinstance(data, dict):
        raise TransientFailure(f"{what} returned a malformed body")
    try:
        return TokenGrant.model_validate(
            {
                "access_token": data.get("access_token"),
                "refresh_token": data.get("refresh_token"),
                "expires_in": data.get("expires_in", 3600),
                "scopes": frozenset(str(data.get("scope") or "").split()),
            }
        )
    except ValidationError as exc:
        raise TransientFailure(f"{what} returned an unusable token response") from exc


def _check_response(resp: httpx.Response, what: str) -> None:
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientFailure(f"{what} unavailable (HTTP {resp.status_code})")
    if resp.status_code >= 400:
        raise InvalidGrant(f"{what} rejected: {_error_detail(resp)}")


class GoogleOAuthClient:
    """OAuth2 web-server flow against Google."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def authorization_url(self, scopes: Iterable[str], state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token(self, data: Dict[str, str], what: str) -> Any:
        try:
            async with self._client() as client:
                resp = await client.post(_GOOGLE_TOKEN_URL, data=data)
        except httpx.TimeoutException as exc:
            raise TransientFailure(f"{what} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientFailure(f"{what} failed: {exc}") from exc
        _check_response(resp, what)
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientFailure(f"{what} returned a malformed body") from exc

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        data = await self._post_token(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            "Code exchange",
        )
        return _parse_grant(data, "Code exchange")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Use a refresh token to get a new access token."""
        data = await self._post_token(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            "Token refresh",
        )
        # Google only rotates the refresh token occasionally; it may be absent.
        return _parse_grant(data, "Token refresh")

    async def revoke(self, token: str) -> bool:
        """Revoke the token at Google.  Returns False on any failure."""
        try:
            async with self._client() as client:
                resp = await client.post(_GOOGLE_REVOKE_URL, params={"token": token})
            return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False

    async def fetch_profile(self, access_token: str) -> Dict[str, Any]:
        """Fetch the connected account's email, name and picture."""
        try:
            async with self._client() as client:
                resp = await client.get(
                    _GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.TransportError as exc:
            raise TransientFailure(f"Profile fetch failed: {exc}") from exc
        _check_response(resp, "Profile fetch")
        try:
            user_info = resp.json()
        except ValueError as exc:
            raise TransientFailure("Profile fetch returned a malformed body") from exc
        if not isinstance(user_info, dict):
            raise TransientFailure("Profile fetch returned a malformed body")
        return {
            "email": user_info.get("email"),
            "name": user_info.get("name"),
            "picture": user_info.get("picture"),
        }
