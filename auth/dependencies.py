"""
FastAPI dependencies for caller identity and permission checks.

The site kit container is read from ``request.app.state.site_kit``; nothing
is looked up from module-level globals.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from auth.permissions import Action, Caller
from core.bootstrap import SiteKit

_bearer_scheme = HTTPBearer()


def get_site_kit(request: Request) -> SiteKit:
    return request.app.state.site_kit


async def get_caller(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    site_kit: SiteKit = Depends(get_site_kit),
) -> Caller:
    """Extract and verify the Bearer token, returning the calling user."""
    return verify_token(credentials.credentials, secret=site_kit.settings.jwt_secret)


def require(action: Action):
    """
    Dependency that requires the caller to be allowed ``action``.
    Raises 403 if the host permission check says no.
    """

    async def _check(
        caller: Caller = Depends(get_caller),
        site_kit: SiteKit = Depends(get_site_kit),
    ) -> Caller:
        if not site_kit.permissions(caller, action):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not allowed to {action.value.replace('_', ' ')}",
            )
        return caller

    return _check
