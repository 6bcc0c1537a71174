"""
Shared fixtures: settings, a controllable clock, a stubbed Google and a
fully wired in-memory SiteKit.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import httpx
import pytest
from cryptography.fernet import Fernet

from config.settings import Settings
from core.bootstrap import SiteKit, build_site_kit
from modules.base import Module
from oauth.client import GoogleOAuthClient
from storage.credentials import Credential
from storage.memory import InMemoryKeyValueStore

ANALYTICS_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"
TAGMANAGER_SCOPE = "https://www.googleapis.com/auth/tagmanager.readonly"
WEBMASTERS_SCOPE = "https://www.googleapis.com/auth/webmasters"
SITEVERIFICATION_SCOPE = "https://www.googleapis.com/auth/siteverification"


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def token_response(
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    expires_in: int = 3600,
    scopes: Iterable[str] = (),
) -> httpx.Response:
    body: Dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
        "scope": " ".join(scopes),
    }
    if refresh_token:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


class GoogleStub:
    """
    Stands in for Google's OAuth and API hosts.

    ``token_responses`` is consumed in order by calls to the token endpoint;
    an exception instance in the queue is raised instead of answering.
    """

    def __init__(self) -> None:
        self.token_responses: List[Any] = []
        self.revoke_status = 200
        self.profile = {"email": "owner@example.com", "name": "Site Owner", "picture": None}
        self.profile_status = 200
        self.profile_body: Optional[bytes] = None
        self.data: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path
        if host == "oauth2.googleapis.com" and path == "/token":
            if not self.token_responses:
                return httpx.Response(500)
            nxt = self.token_responses.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        if host == "oauth2.googleapis.com" and path == "/revoke":
            return httpx.Response(self.revoke_status)
        if path.endswith("/userinfo"):
            if self.profile_body is not None:
                return httpx.Response(self.profile_status, content=self.profile_body)
            return httpx.Response(self.profile_status, json=self.profile)
        if path in self.data:
            return httpx.Response(200, json=self.data[path])
        return httpx.Response(404, json={"error": "not found"})

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


class StaticModule(Module):
    """Module whose metadata is supplied at construction time."""

    def __init__(
        self,
        slug: str,
        dependencies: Iterable[str] = (),
        scopes: Iterable[str] = (),
        internal: bool = False,
    ) -> None:
        self._slug = slug
        self._dependencies = frozenset(dependencies)
        self._scopes = frozenset(scopes)
        self._internal = internal

    @property
    def slug(self) -> str:
        return self._slug

    @property
    def name(self) -> str:
        return self._slug.title()

    @property
    def dependencies(self) -> FrozenSet[str]:
        return self._dependencies

    @property
    def required_scopes(self) -> FrozenSet[str]:
        return self._scopes

    @property
    def is_internal(self) -> bool:
        return self._internal


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        google_client_id="client-id",
        google_client_secret="client-secret",
        oauth_redirect_uri="http://localhost:8000/oauth/callback",
        oauth_state_secret="state-secret",
        jwt_secret="jwt-secret",
        token_encryption_key=Fernet.generate_key().decode(),
        storage_backend="memory",
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def google() -> GoogleStub:
    return GoogleStub()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def oauth_client(settings: Settings, google: GoogleStub) -> GoogleOAuthClient:
    return GoogleOAuthClient(
        settings.google_client_id,
        settings.google_client_secret,
        settings.oauth_redirect_uri,
        timeout=settings.oauth_http_timeout,
        transport=google.transport,
    )


def _build(settings, store, oauth_client, clock, google, modules=None) -> SiteKit:
    return build_site_kit(
        settings,
        store=store,
        oauth_client=oauth_client,
        modules=modules,
        secure_random=lambda n: b"\x07" * n,
        clock=clock,
        data_transport=google.transport,
    )


@pytest.fixture
def site_kit(settings, store, oauth_client, clock, google) -> SiteKit:
    """SiteKit with the shipped module catalog."""
    return _build(settings, store, oauth_client, clock, google)


@pytest.fixture
def make_site_kit(settings, store, oauth_client, clock, google):
    """Build a SiteKit over a custom module list."""

    def _make(modules: Iterable[Module]) -> SiteKit:
        return _build(settings, store, oauth_client, clock, google, modules=list(modules))

    return _make


@pytest.fixture
def connect(clock: Clock):
    """Store a credential directly, bypassing the OAuth flow."""

    async def _connect(
        site_kit: SiteKit,
        owner_id: str = "owner-1",
        scopes: Iterable[str] = (),
        expires_in: int = 3600,
        refresh_token: Optional[str] = "refresh-0",
    ) -> Credential:
        credential = Credential(
            owner_id=owner_id,
            access_token="access-0",
            refresh_token=refresh_token,
            scopes=frozenset(scopes),
            expires_at=clock.now + timedelta(seconds=expires_in),
        )
        await site_kit.credentials.save(credential)
        return credential

    return _connect
