"""
Tests for the AuthenticationManager: URL building, callback handling,
lazy refresh and revocation.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from unittest.mock import patch

from modules.errors import ModuleNotFound
from oauth.errors import InvalidGrant, ReauthRequired, ScopeMismatch, TransientFailure
from oauth.manager import BASE_SCOPES
from oauth.models import CallbackParams, TokenGrant
from tests.conftest import ANALYTICS_SCOPE, StaticModule, token_response


@pytest.fixture
def kit(make_site_kit):
    return make_site_kit([StaticModule("base"), StaticModule("reporting", scopes=[ANALYTICS_SCOPE])])


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _state_for(kit, owner_id="owner-1", redirect_path="/dashboard") -> str:
    url = kit.auth.get_authentication_url(redirect_path, [], owner_id=owner_id)
    return _query(url)["state"]


class TestAuthenticationUrl:
    def test_same_inputs_same_url(self, kit):
        first = kit.auth.build_authentication_url("/dashboard", [ANALYTICS_SCOPE], "nonce-1", "owner-1")
        second = kit.auth.build_authentication_url("/dashboard", [ANALYTICS_SCOPE], "nonce-1", "owner-1")
        assert first == second
        other = kit.auth.build_authentication_url("/dashboard", [ANALYTICS_SCOPE], "nonce-2", "owner-1")
        assert other != first

    def test_url_carries_requested_and_identity_scopes(self, kit, settings):
        url = kit.auth.get_authentication_url("/", [ANALYTICS_SCOPE])
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        query = _query(url)
        assert set(query["scope"].split()) == set(BASE_SCOPES) | {ANALYTICS_SCOPE}
        assert query["client_id"] == settings.google_client_id
        assert query["access_type"] == "offline"

    def test_state_round_trips(self, kit):
        state = kit.auth.decode_state(_state_for(kit, redirect_path="/settings"))
        assert state.redirect_path == "/settings"
        assert state.owner_id == "owner-1"
        assert state.nonce == "07" * 16

    def test_tampered_state_rejected(self, kit):
        state = _state_for(kit)
        with pytest.raises(InvalidGrant):
            kit.auth.decode_state(state[:-1] + ("0" if state[-1] != "0" else "1"))
        with pytest.raises(InvalidGrant):
            kit.auth.decode_state("no-signature")

    def test_expired_state_rejected(self, kit, clock, settings):
        state = _state_for(kit)
        clock.advance(settings.oauth_state_ttl_seconds + 1)
        with pytest.raises(InvalidGrant, match="expired"):
            kit.auth.decode_state(state)


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_success_stores_credential_and_profile(self, kit, google, clock):
        google.token_responses = [token_response(scopes=["openid", ANALYTICS_SCOPE])]
        credential = await kit.auth.handle_callback(
            "owner-1", CallbackParams(code="auth-code", state=_state_for(kit))
        )

        assert credential.access_token == "access-1"
        assert credential.refresh_token == "refresh-1"
        assert credential.scopes == {"openid", ANALYTICS_SCOPE}
        assert (await kit.credentials.get("owner-1")).credential == credential

        state = await kit.auth.get_auth_state("owner-1")
        assert state.is_authenticated
        assert state.profile["email"] == "owner@example.com"

        [token_call] = google.calls_to("/token")
        assert b"code=auth-code" in token_call.content
        assert b"grant_type=authorization_code" in token_call.content

    @pytest.mark.asyncio
    async def test_provider_error(self, kit, google):
        with pytest.raises(InvalidGrant, match="access_denied"):
            await kit.auth.handle_callback(
                "owner-1", CallbackParams(error="access_denied", state=_state_for(kit))
            )
        assert google.requests == []
        assert await kit.credentials.get("owner-1") is None

    @pytest.mark.asyncio
    async def test_missing_code(self, kit):
        with pytest.raises(InvalidGrant):
            await kit.auth.handle_callback("owner-1", CallbackParams(state=_state_for(kit)))

    @pytest.mark.asyncio
    async def test_state_for_another_owner(self, kit, google):
        with pytest.raises(InvalidGrant):
            await kit.auth.handle_callback(
                "owner-2", CallbackParams(code="c", state=_state_for(kit, owner_id="owner-1"))
            )
        assert google.requests == []

    @pytest.mark.asyncio
    async def test_rejected_code(self, kit, google):
        google.token_responses = [httpx.Response(400, json={"error": "invalid_grant"})]
        with pytest.raises(InvalidGrant, match="invalid_grant"):
            await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))
        assert await kit.credentials.get("owner-1") is None

    @pytest.mark.asyncio
    async def test_token_endpoint_timeout(self, kit, google):
        google.token_responses = [httpx.ConnectTimeout("slow")]
        with pytest.raises(TransientFailure):
            await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))

    @pytest.mark.asyncio
    async def test_token_endpoint_unavailable(self, kit, google):
        google.token_responses = [httpx.Response(503)]
        with pytest.raises(TransientFailure):
            await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))

    @pytest.mark.asyncio
    async def test_scope_mismatch_keeps_previous_credential(self, kit, google, connect):
        await connect(kit, scopes=[ANALYTICS_SCOPE])
        await kit.registry.activate("reporting", "owner-1")

        google.token_responses = [token_response(access_token="narrow", scopes=["openid"])]
        with pytest.raises(ScopeMismatch) as exc_info:
            await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))

        assert exc_info.value.missing_scopes == [ANALYTICS_SCOPE]
        assert (await kit.credentials.get("owner-1")).credential.access_token == "access-0"

    @pytest.mark.asyncio
    async def test_reconsent_without_refresh_token_keeps_old_one(self, kit, google, connect):
        await connect(kit, refresh_token="refresh-0")
        google.token_responses = [token_response(access_token="again", refresh_token=None)]
        credential = await kit.auth.handle_callback(
            "owner-1", CallbackParams(code="c", state=_state_for(kit))
        )
        assert credential.access_token == "again"
        assert credential.refresh_token == "refresh-0"

    @pytest.mark.asyncio
    async def test_profile_failure_does_not_fail_callback(self, kit, google):
        google.token_responses = [token_response()]
        google.profile_status = 500
        await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))
        state = await kit.auth.get_auth_state("owner-1")
        assert state.is_authenticated
        assert state.profile is None

    @pytest.mark.asyncio
    async def test_malformed_profile_does_not_fail_callback(self, kit, google):
        google.token_responses = [token_response()]
        google.profile_body = b"<html>oops</html>"
        credential = await kit.auth.handle_callback(
            "owner-1", CallbackParams(code="c", state=_state_for(kit))
        )
        assert (await kit.credentials.get("owner-1")).credential == credential
        assert (await kit.auth.get_auth_state("owner-1")).profile is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, json={"error": "weird"}),
            httpx.Response(200, json=["access-1"]),
            httpx.Response(200, content=b"not json"),
        ],
    )
    async def test_malformed_token_response(self, kit, google, response):
        google.token_responses = [response]
        with pytest.raises(TransientFailure):
            await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))
        assert await kit.credentials.get("owner-1") is None

    @pytest.mark.asyncio
    async def test_grant_without_identity_scopes_is_accepted(self, kit, google, connect):
        await connect(kit, scopes=[ANALYTICS_SCOPE])
        await kit.registry.activate("reporting", "owner-1")

        google.token_responses = [token_response(scopes=[ANALYTICS_SCOPE])]
        await kit.auth.handle_callback("owner-1", CallbackParams(code="c", state=_state_for(kit)))

        state = await kit.auth.get_auth_state("owner-1")
        assert state.required_scopes == {ANALYTICS_SCOPE}
        assert not state.needs_reauthentication


class TestRefresh:
    @pytest.mark.asyncio
    async def test_not_connected(self, kit):
        with pytest.raises(ReauthRequired):
            await kit.auth.refresh_if_needed("owner-1")

    @pytest.mark.asyncio
    async def test_fresh_credential_untouched(self, kit, google, connect):
        stored = await connect(kit, expires_in=3600)
        first = await kit.auth.refresh_if_needed("owner-1")
        second = await kit.auth.refresh_if_needed("owner-1")
        assert first == second == stored
        assert google.requests == []

    @pytest.mark.asyncio
    async def test_refresh_inside_skew_window(self, kit, google, connect, clock):
        await connect(kit, expires_in=120)
        google.token_responses = [token_response(access_token="access-new", refresh_token=None)]

        refreshed = await kit.auth.refresh_if_needed("owner-1")
        assert refreshed.access_token == "access-new"
        assert refreshed.refresh_token == "refresh-0"
        assert refreshed.expires_at > clock.now

        again = await kit.auth.refresh_if_needed("owner-1")
        assert again == refreshed
        assert len(google.calls_to("/token")) == 1

    @pytest.mark.asyncio
    async def test_rejected_refresh_deletes_credential(self, kit, google, connect):
        await connect(kit, expires_in=-10)
        await kit.user_options.set("owner-1", "profile", {"email": "owner@example.com"})
        google.token_responses = [httpx.Response(400, json={"error": "invalid_grant"})]

        with pytest.raises(ReauthRequired):
            await kit.auth.refresh_if_needed("owner-1")
        assert await kit.credentials.get("owner-1") is None

        state = await kit.auth.get_auth_state("owner-1")
        assert not state.is_authenticated
        assert state.profile is None

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, kit, connect):
        await connect(kit, expires_in=-10, refresh_token=None)
        with pytest.raises(ReauthRequired):
            await kit.auth.refresh_if_needed("owner-1")
        assert await kit.credentials.get("owner-1") is None

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_credential(self, kit, google, connect):
        await connect(kit, expires_in=60)
        google.token_responses = [httpx.Response(503), httpx.Response(503)]

        with pytest.raises(TransientFailure):
            await kit.auth.refresh_if_needed("owner-1")
        assert await kit.credentials.get("owner-1") is not None

        state = await kit.auth.get_auth_state("owner-1")
        assert state.is_authenticated

    @pytest.mark.asyncio
    async def test_revoke_during_refresh_wins(self, kit, oauth_client, connect, clock):
        await connect(kit, expires_in=60)

        async def refresh_while_revoked(refresh_token):
            await kit.auth.revoke("owner-1")
            return TokenGrant(access_token="resurrected", refresh_token="r2", expires_in=3600)

        with patch.object(oauth_client, "refresh", side_effect=refresh_while_revoked), \
                patch.object(oauth_client, "revoke", return_value=True):
            with pytest.raises(ReauthRequired):
                await kit.auth.refresh_if_needed("owner-1")

        assert await kit.credentials.get("owner-1") is None

    @pytest.mark.asyncio
    async def test_reconnect_during_refresh_keeps_new_session(self, kit, oauth_client, connect):
        await connect(kit, expires_in=60)

        async def refresh_across_reconnect(refresh_token):
            await kit.auth.revoke("owner-1")
            await connect(kit, refresh_token="brand-new-refresh")
            return TokenGrant(access_token="from-revoked-session", expires_in=3600)

        with patch.object(oauth_client, "refresh", side_effect=refresh_across_reconnect), \
                patch.object(oauth_client, "revoke", return_value=True):
            result = await kit.auth.refresh_if_needed("owner-1")

        stored = (await kit.credentials.get("owner-1")).credential
        assert stored.refresh_token == "brand-new-refresh"
        assert stored.access_token == "access-0"
        assert result == stored

    @pytest.mark.asyncio
    async def test_rejected_refresh_spares_reconnected_credential(self, kit, oauth_client, connect):
        await connect(kit, expires_in=-10)

        async def reject_after_reconnect(refresh_token):
            await kit.auth.revoke("owner-1")
            await connect(kit, refresh_token="brand-new-refresh")
            raise InvalidGrant("Token refresh rejected: invalid_grant")

        with patch.object(oauth_client, "refresh", side_effect=reject_after_reconnect), \
                patch.object(oauth_client, "revoke", return_value=True):
            result = await kit.auth.refresh_if_needed("owner-1")

        assert result.refresh_token == "brand-new-refresh"
        assert (await kit.credentials.get("owner-1")).credential == result

    @pytest.mark.asyncio
    async def test_malformed_refresh_response_keeps_credential(self, kit, google, connect):
        await connect(kit, expires_in=60)
        google.token_responses = [httpx.Response(200, json={"expires_in": 3600})]

        with pytest.raises(TransientFailure):
            await kit.auth.refresh_if_needed("owner-1")
        assert (await kit.credentials.get("owner-1")).credential.access_token == "access-0"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_agree(self, kit, google, connect):
        await connect(kit, expires_in=60)
        google.token_responses = [token_response("access-a"), token_response("access-b")]

        results = await asyncio.gather(
            kit.auth.refresh_if_needed("owner-1"),
            kit.auth.refresh_if_needed("owner-1"),
        )

        stored = (await kit.credentials.get("owner-1")).credential
        assert results[0] == results[1] == stored
        assert stored.access_token in {"access-a", "access-b"}


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, kit, google, connect):
        await connect(kit)
        await kit.auth.revoke("owner-1")
        await kit.auth.revoke("owner-1")

        assert await kit.credentials.get("owner-1") is None
        [revoke_call] = google.calls_to("/revoke")
        assert revoke_call.url.params["token"] == "refresh-0"

    @pytest.mark.asyncio
    async def test_remote_failure_still_disconnects(self, kit, google, connect):
        await connect(kit)
        google.revoke_status = 500
        await kit.auth.revoke("owner-1")
        assert await kit.credentials.get("owner-1") is None
        assert not (await kit.auth.get_auth_state("owner-1")).is_authenticated

    @pytest.mark.asyncio
    async def test_purge_owner_drops_user_options(self, kit, connect, store):
        await connect(kit)
        await kit.user_options.set("owner-1", "profile", {"email": "x"})
        await kit.user_options.set("owner-1", "dismissed_notices", ["welcome"])
        await kit.user_options.set("owner-2", "profile", {"email": "y"})

        await kit.auth.purge_owner("owner-1")

        assert [k for k in store.keys() if k.startswith("user:owner-1:")] == []
        assert await kit.user_options.get("owner-2", "profile") == {"email": "y"}


class TestAuthState:
    @pytest.mark.asyncio
    async def test_unauthenticated(self, kit):
        state = await kit.auth.get_auth_state("nobody")
        assert not state.is_authenticated
        assert state.granted_scopes == frozenset()
        assert state.required_scopes == frozenset()
        assert not state.needs_reauthentication

    @pytest.mark.asyncio
    async def test_required_scopes_follow_active_modules(self, kit, connect):
        await connect(kit, scopes=[ANALYTICS_SCOPE])
        await kit.registry.activate("reporting", "owner-1")
        assert ANALYTICS_SCOPE in await kit.auth.required_scopes()

        # Narrow the stored grant to simulate a user removing access at Google.
        narrowed = (await kit.credentials.get("owner-1")).credential.model_copy(
            update={"scopes": frozenset({"openid"})}
        )
        await kit.credentials.save(narrowed)

        state = await kit.auth.get_auth_state("owner-1")
        assert state.is_authenticated
        assert state.needs_reauthentication
        assert ANALYTICS_SCOPE in state.missing_scopes

    @pytest.mark.asyncio
    async def test_has_scopes(self, kit, connect):
        await connect(kit, scopes=[ANALYTICS_SCOPE])
        state = await kit.auth.get_auth_state("owner-1")
        assert state.has_scopes(frozenset())
        assert state.has_scopes(frozenset({ANALYTICS_SCOPE}))
        assert not state.has_scopes(frozenset({"https://www.googleapis.com/auth/webmasters"}))

    @pytest.mark.asyncio
    async def test_has_scopes_when_unauthenticated(self, kit):
        state = await kit.auth.get_auth_state("owner-1")
        assert state.has_scopes(frozenset())
        assert not state.has_scopes(frozenset({ANALYTICS_SCOPE}))


class TestSetup:
    @pytest.mark.asyncio
    async def test_complete_setup_requires_connection(self, kit, connect):
        with pytest.raises(ReauthRequired):
            await kit.auth.complete_setup("owner-1")
        assert not await kit.auth.is_setup_complete()

        await connect(kit)
        await kit.auth.complete_setup("owner-1")
        assert await kit.auth.is_setup_complete()
        assert (await kit.auth.get_auth_state("owner-1")).is_setup_complete

    @pytest.mark.asyncio
    async def test_unconfigured_client_is_never_set_up(self, kit, connect, settings):
        await connect(kit)
        await kit.auth.complete_setup("owner-1")
        settings.google_client_id = ""
        assert not await kit.auth.is_setup_complete()


class TestScopeBinding:
    @pytest.mark.asyncio
    async def test_deactivation_drops_module_scopes(self, kit, connect):
        await connect(kit, scopes=[ANALYTICS_SCOPE])
        await kit.registry.activate("reporting", "owner-1")
        await kit.registry.deactivate("reporting")
        assert await kit.auth.required_scopes() == frozenset()

    @pytest.mark.asyncio
    async def test_unknown_module_changes_nothing(self, kit):
        with pytest.raises(ModuleNotFound):
            await kit.registry.activate("missing", "owner-1")
        assert await kit.auth.required_scopes() == frozenset()
