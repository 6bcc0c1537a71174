"""
REST API routes — authentication and module management.

Route prefix: ``config.api_prefix`` (default ``/google-site-kit/v1``)

Each handler checks the caller's permission, lets pydantic validate the
request shape, makes exactly one call into the auth manager or registry
and wraps the result in the success envelope.  Errors are translated by
``api.errors``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel

from api.errors import success
from auth.dependencies import get_site_kit, require
from auth.permissions import Action, Caller
from core.bootstrap import SiteKit
from oauth.models import CallbackParams

logger = logging.getLogger(__name__)

router = APIRouter(tags=["site-kit"])


# ── Request schemas ────────────────────────────────────────────────────


class ActivationRequest(BaseModel):
    active: bool
    cascade: bool = False


# ── Authentication ─────────────────────────────────────────────────────


@router.get("/auth")
async def get_auth_state(
    caller: Caller = Depends(require(Action.AUTHENTICATE)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Authentication summary for the calling user."""
    state = await site_kit.auth.get_auth_state(caller.user_id)
    return success(state.model_dump(mode="json"))


@router.get("/auth/url")
async def get_auth_url(
    redirect_path: str = Query("/", pattern=r"^/([^/].*)?$"),
    scopes: List[str] = Query([]),
    caller: Caller = Depends(require(Action.AUTHENTICATE)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """
    Authorization URL for connecting a Google account.

    The requested scopes always include those of every active module, so
    reconnecting can never drop a scope a module relies on.
    """
    requested = set(scopes) | await site_kit.registry.required_scopes(active_only=True)
    url = site_kit.auth.get_authentication_url(redirect_path, requested, owner_id=caller.user_id)
    return success({"auth_url": url})


@router.post("/auth/callback")
async def oauth_callback(
    params: CallbackParams,
    caller: Caller = Depends(require(Action.AUTHENTICATE)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Exchange the authorization result for a stored credential."""
    credential = await site_kit.auth.handle_callback(caller.user_id, params)
    return success(
        {
            "connected": True,
            "scopes": sorted(credential.scopes),
            "expires_at": credential.expires_at.isoformat(),
            "redirect_path": site_kit.auth.decode_state(params.state).redirect_path,
        }
    )


@router.post("/auth/disconnect")
async def disconnect(
    caller: Caller = Depends(require(Action.AUTHENTICATE)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Revoke and delete the caller's credential."""
    await site_kit.auth.revoke(caller.user_id)
    return success({"connected": False})


@router.post("/auth/setup")
async def complete_setup(
    caller: Caller = Depends(require(Action.SETUP)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Mark site-level setup as finished."""
    await site_kit.auth.complete_setup(caller.user_id)
    return success({"setup_complete": await site_kit.auth.is_setup_complete()})


# ── Modules ────────────────────────────────────────────────────────────


@router.get("/modules")
async def list_modules(
    active_only: bool = False,
    exclude_internal: bool = False,
    caller: Caller = Depends(require(Action.VIEW_DASHBOARD)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """All modules with activation state, in registration order."""
    listing = site_kit.registry.list(
        active_only=active_only,
        exclude_internal=exclude_internal,
        owner_id=caller.user_id,
    )
    return success([view.model_dump() for view in await listing.collect()])


@router.get("/modules/{slug}")
async def get_module(
    slug: str,
    caller: Caller = Depends(require(Action.VIEW_DASHBOARD)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    view = await site_kit.registry.describe(slug, owner_id=caller.user_id)
    return success(view.model_dump())


@router.post("/modules/{slug}/activation")
async def set_activation(
    slug: str,
    req: ActivationRequest,
    caller: Caller = Depends(require(Action.MANAGE_OPTIONS)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Activate or deactivate a module (``cascade`` takes dependants along)."""
    registry = site_kit.registry
    if req.active:
        result = await registry.activate(slug, caller.user_id)
        return success({"module": result.module.model_dump(), "changed": result.changed})

    deactivated = await registry.deactivate(slug, cascade=req.cascade)
    view = await registry.describe(slug)
    return success({"module": view.model_dump(), "deactivated": deactivated})


@router.get("/modules/{slug}/settings")
async def get_settings(
    slug: str,
    caller: Caller = Depends(require(Action.MANAGE_OPTIONS)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    return success(await site_kit.registry.get_settings(slug))


@router.put("/modules/{slug}/settings")
async def put_settings(
    slug: str,
    settings: Dict[str, Any] = Body(...),
    caller: Caller = Depends(require(Action.MANAGE_OPTIONS)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Replace a module's settings; rejected fields are listed in ``details``."""
    return success(await site_kit.registry.set_settings(slug, settings))


@router.get("/modules/{slug}/data/{datapoint}")
async def get_module_data(
    slug: str,
    datapoint: str,
    request: Request,
    caller: Caller = Depends(require(Action.VIEW_DASHBOARD)),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Dict[str, Any]:
    """Pass-through read of a module datapoint using the caller's credential."""
    params = dict(request.query_params)
    return success(
        await site_kit.registry.request_data(slug, datapoint, caller.user_id, params)
    )
