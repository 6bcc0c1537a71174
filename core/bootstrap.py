"""
Composition root — builds every core component and wires them explicitly.

Startup order: stores → authentication manager → module registry →
catalog modules → scope requirements bound back into the auth manager.
Nothing here is a process-wide singleton; callers own the returned
``SiteKit`` and pass it where it is needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from auth.permissions import CapabilityPermissionCheck, PermissionCheck
from config.settings import Settings
from database.session import build_engine, build_session_factory, create_tables
from modules.base import Module
from modules.catalog import build_modules
from modules.registry import ModuleRegistry
from oauth.client import GoogleOAuthClient
from oauth.manager import AuthenticationManager
from storage.base import KeyValueStore
from storage.credentials import CredentialStore
from storage.encryption import TokenCipher
from storage.memory import InMemoryKeyValueStore
from storage.options import Options, UserOptions
from storage.sql import SQLKeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class SiteKit:
    settings: Settings
    store: KeyValueStore
    options: Options
    user_options: UserOptions
    credentials: CredentialStore
    auth: AuthenticationManager
    registry: ModuleRegistry
    permissions: PermissionCheck
    engine: Optional[AsyncEngine] = None

    async def startup(self) -> None:
        if self.engine is not None:
            await create_tables(self.engine)
            logger.info("Options table ready")

    async def shutdown(self) -> None:
        await self.store.close()
        if self.engine is not None:
            await self.engine.dispose()


def _build_store(settings: Settings) -> tuple[KeyValueStore, Optional[AsyncEngine]]:
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory storage — state is lost on restart")
        return InMemoryKeyValueStore(), None
    if settings.storage_backend == "sql":
        engine = build_engine(settings.database_url, echo=settings.debug)
        return SQLKeyValueStore(build_session_factory(engine)), engine
    raise ValueError(f"Unknown storage backend '{settings.storage_backend}'")


def build_site_kit(
    settings: Settings,
    *,
    store: Optional[KeyValueStore] = None,
    oauth_client: Optional[GoogleOAuthClient] = None,
    permission_check: Optional[PermissionCheck] = None,
    modules: Optional[Iterable[Module]] = None,
    secure_random: Optional[Callable[[int], bytes]] = None,
    clock: Optional[Callable[[], datetime]] = None,
    data_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SiteKit:
    engine: Optional[AsyncEngine] = None
    if store is None:
        store, engine = _build_store(settings)

    if not settings.is_oauth_configured():
        logger.warning("Google OAuth client not configured (missing client_id/secret)")

    options = Options(store)
    user_options = UserOptions(store)
    credentials = CredentialStore(store, TokenCipher(settings.token_encryption_key))

    client = oauth_client or GoogleOAuthClient(
        settings.google_client_id,
        settings.google_client_secret,
        settings.oauth_redirect_uri,
        timeout=settings.oauth_http_timeout,
    )
    auth_kwargs = {}
    if secure_random is not None:
        auth_kwargs["secure_random"] = secure_random
    if clock is not None:
        auth_kwargs["clock"] = clock
    auth = AuthenticationManager(credentials, options, user_options, settings, client, **auth_kwargs)

    registry = ModuleRegistry(
        options,
        auth,
        http_timeout=settings.oauth_http_timeout,
        transport=data_transport,
    )
    for module in (build_modules() if modules is None else modules):
        registry.register(module)
    auth.bind_scope_requirements(registry.required_scopes_by_active_module)

    logger.info("Site kit ready: %d modules (%s)", len(registry.modules()), ", ".join(registry.activation_order()))
    return SiteKit(
        settings=settings,
        store=store,
        options=options,
        user_options=user_options,
        credentials=credentials,
        auth=auth,
        registry=registry,
        permissions=permission_check or CapabilityPermissionCheck(),
        engine=engine,
    )
