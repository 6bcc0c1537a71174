"""
AuthenticationManager — the OAuth credential lifecycle for site users.

Refresh is lazy: every AuthState read runs ``refresh_if_needed`` so a
token is never staler than the request that reads it.  There is no
background timer.

Concurrency: all writes to a credential go through compare-and-set against
the version that was read.  A refresh that finds the credential gone
(revoked meanwhile) drops its result instead of writing it back, so a
revoked session can never be resurrected.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, Optional

from config.settings import Settings
from oauth.client import GoogleOAuthClient
from oauth.errors import InvalidGrant, ReauthRequired, ScopeMismatch, TransientFailure
from oauth.models import AuthState, CallbackParams, OAuthState
from oauth.state import decode_state, encode_state
from storage.credentials import Credential, CredentialStore
from storage.errors import StoreConflictError
from storage.options import Options, UserOptions

logger = logging.getLogger(__name__)

BASE_SCOPES: FrozenSet[str] = frozenset(
    {
        "openid",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/userinfo.email",
    }
)

SETUP_COMPLETE_KEY = "setup:complete"
PROFILE_OPTION = "profile"

ScopeRequirements = Callable[[], Awaitable[Dict[str, FrozenSet[str]]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthenticationManager:
    def __init__(
        self,
        credentials: CredentialStore,
        options: Options,
        user_options: UserOptions,
        settings: Settings,
        client: GoogleOAuthClient,
        *,
        secure_random: Callable[[int], bytes] = secrets.token_bytes,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._options = options
        self._user_options = user_options
        self._settings = settings
        self._client = client
        self._secure_random = secure_random
        self._clock = clock
        self._skew = timedelta(seconds=settings.token_refresh_skew_seconds)
        self._scope_requirements: Optional[ScopeRequirements] = None

    def bind_scope_requirements(self, provider: ScopeRequirements) -> None:
        """Install the callable returning required scopes per active module."""
        self._scope_requirements = provider

    async def _active_requirements(self) -> Dict[str, FrozenSet[str]]:
        if self._scope_requirements is None:
            return {}
        return await self._scope_requirements()

    async def required_scopes(self) -> FrozenSet[str]:
        """
        Every scope an active module needs.  Identity scopes are requested
        on each authorization URL but are not required of a grant.
        """
        scopes: set = set()
        for module_scopes in (await self._active_requirements()).values():
            scopes |= module_scopes
        return frozenset(scopes)

    # ── State ───────────────────────────────────────────────────────────

    async def is_setup_complete(self) -> bool:
        if not self._settings.is_oauth_configured():
            return False
        return bool(await self._options.get(SETUP_COMPLETE_KEY, False))

    async def complete_setup(self, owner_id: str) -> None:
        """Mark site-level setup done.  Only a connected owner may do this."""
        await self.refresh_if_needed(owner_id)
        await self._options.set(SETUP_COMPLETE_KEY, True)
        logger.info("Site setup marked complete by owner %s", owner_id)

    async def get_auth_state(self, owner_id: str) -> AuthState:
        """
        Compute the owner's AuthState.  Never raises for auth reasons:
        a missing or dead credential simply reads as unauthenticated.
        """
        credential: Optional[Credential] = None
        authenticated = False
        try:
            credential = await self.refresh_if_needed(owner_id)
            authenticated = True
        except ReauthRequired:
            credential = None
        except TransientFailure as exc:
            logger.warning("Refresh unavailable for owner %s, using stored credential: %s", owner_id, exc)
            stored = await self._credentials.get(owner_id)
            credential = stored.credential if stored else None
            authenticated = credential is not None and (
                not credential.is_expired(self._clock()) or credential.is_refreshable
            )

        profile = None
        if credential is not None:
            profile = await self._user_options.get(owner_id, PROFILE_OPTION)

        return AuthState(
            is_authenticated=authenticated,
            is_setup_complete=await self.is_setup_complete(),
            granted_scopes=credential.scopes if credential else frozenset(),
            required_scopes=await self.required_scopes(),
            profile=profile,
        )

    # ── OAuth flow ──────────────────────────────────────────────────────

    def build_authentication_url(
        self,
        redirect_path: str,
        requested_scopes: Iterable[str],
        nonce: str,
        owner_id: Optional[str] = None,
    ) -> str:
        """Pure URL construction: equal inputs and clock give equal URLs."""
        payload = OAuthState(
            nonce=nonce,
            redirect_path=redirect_path,
            owner_id=owner_id,
            exp=int(self._clock().timestamp()) + self._settings.oauth_state_ttl_seconds,
        )
        state = encode_state(payload, self._settings.oauth_state_secret)
        scopes = sorted(BASE_SCOPES | set(requested_scopes))
        return self._client.authorization_url(scopes, state)

    def get_authentication_url(
        self,
        redirect_path: str,
        requested_scopes: Iterable[str],
        owner_id: Optional[str] = None,
    ) -> str:
        nonce = self._secure_random(16).hex()
        return self.build_authentication_url(redirect_path, requested_scopes, nonce, owner_id)

    def decode_state(self, state: str) -> OAuthState:
        return decode_state(
            state, self._settings.oauth_state_secret, now=self._clock().timestamp()
        )

    async def handle_callback(self, owner_id: str, params: CallbackParams) -> Credential:
        """
        Exchange the authorization code for a Credential and store it.

        Raises
        ------
        InvalidGrant      – provider error, bad state or rejected code
        ScopeMismatch     – an active module's scopes were not granted
        TransientFailure  – token endpoint unreachable or timed out
        """
        if params.error:
            raise InvalidGrant(f"Authorization denied: {params.error}")
        if not params.code:
            raise InvalidGrant("Missing authorization code")

        state = self.decode_state(params.state)
        if state.owner_id is not None and state.owner_id != owner_id:
            raise InvalidGrant("OAuth state was issued to a different user")

        grant = await self._client.exchange_code(params.code)

        missing: set = set()
        for slug, scopes in (await self._active_requirements()).items():
            lacking = scopes - grant.scopes
            if lacking:
                logger.info("Module %s lacks scopes after callback: %s", slug, sorted(lacking))
                missing |= lacking
        if missing:
            raise ScopeMismatch(missing)

        refresh_token = grant.refresh_token
        if not refresh_token:
            # Google omits the refresh token on repeat consent; keep the old one.
            existing = await self._credentials.get(owner_id)
            if existing is not None:
                refresh_token = existing.credential.refresh_token

        credential = Credential(
            owner_id=owner_id,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            token_type=grant.token_type,
            scopes=grant.scopes,
            expires_at=self._clock() + timedelta(seconds=grant.expires_in),
        )
        await self._credentials.save(credential)

        try:
            profile = await self._client.fetch_profile(grant.access_token)
            await self._user_options.set(owner_id, PROFILE_OPTION, profile)
        except (InvalidGrant, TransientFailure) as exc:
            logger.warning("Profile fetch failed for owner %s: %s", owner_id, exc)

        logger.info("OAuth connected: owner=%s scopes=%d", owner_id, len(grant.scopes))
        return credential

    async def refresh_if_needed(self, owner_id: str) -> Credential:
        """
        Return a credential valid beyond the skew window, refreshing if needed.

        Raises
        ------
        ReauthRequired    – no credential, or the refresh token was rejected
                            (the credential is deleted before raising)
        TransientFailure  – token endpoint unreachable; credential kept
        """
        stored = await self._credentials.get(owner_id)
        if stored is None:
            raise ReauthRequired("Not connected")

        credential = stored.credential
        now = self._clock()
        if not credential.expires_within(self._skew, now):
            return credential

        if not credential.refresh_token:
            replacement = await self._discard(owner_id, stored.version, "expired with no refresh token")
            if replacement is not None:
                return replacement
            raise ReauthRequired("Token expired and no refresh token available")

        try:
            grant = await self._client.refresh(credential.refresh_token)
        except InvalidGrant as exc:
            replacement = await self._discard(owner_id, stored.version, str(exc))
            if replacement is not None:
                return replacement
            raise ReauthRequired("Refresh token rejected; reconnect required") from exc

        refreshed = credential.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or credential.refresh_token,
                "scopes": grant.scopes or credential.scopes,
                "expires_at": now + timedelta(seconds=grant.expires_in),
            }
        )

        # Revoke wins: never write a refreshed token for a deleted credential.
        if await self._credentials.get(owner_id) is None:
            logger.info("Credential for owner %s revoked during refresh; dropping new token", owner_id)
            raise ReauthRequired("Credential was revoked")

        try:
            await self._credentials.save(refreshed, expected_version=stored.version)
        except StoreConflictError:
            latest = await self._credentials.get(owner_id)
            if latest is None:
                logger.info("Credential for owner %s revoked during refresh; dropping new token", owner_id)
                raise ReauthRequired("Credential was revoked")
            logger.debug("Concurrent refresh for owner %s won; using its credential", owner_id)
            return latest.credential

        logger.info("Refreshed token for owner %s", owner_id)
        return refreshed

    async def _discard(self, owner_id: str, version: int, reason: str) -> Optional[Credential]:
        """
        Delete a dead credential.  If it was replaced meanwhile, return the
        replacement instead of deleting it.
        """
        try:
            await self._credentials.delete(owner_id, expected_version=version)
        except StoreConflictError:
            latest = await self._credentials.get(owner_id)
            if latest is not None:
                return latest.credential
            return None
        await self._user_options.delete(owner_id, PROFILE_OPTION)
        logger.warning("Removed credential for owner %s: %s", owner_id, reason)
        return None

    async def revoke(self, owner_id: str) -> None:
        """
        Disconnect the owner.  Idempotent.  The local credential is always
        removed, even if Google could not be told.
        """
        stored = await self._credentials.get(owner_id)
        if stored is not None:
            token = stored.credential.refresh_token or stored.credential.access_token
            if not await self._client.revoke(token):
                logger.warning("Remote revocation failed for owner %s; removing local credential anyway", owner_id)
            await self._credentials.delete(owner_id)
            logger.info("Disconnected owner %s", owner_id)
        await self._user_options.delete(owner_id, PROFILE_OPTION)

    async def purge_owner(self, owner_id: str) -> None:
        """Owner deletion: revoke and drop every user-scoped option."""
        await self.revoke(owner_id)
        removed = await self._user_options.delete_all(owner_id)
        logger.info("Purged owner %s (%d user options)", owner_id, removed)
