"""
Response envelope and error translation.

Every response body is ``{"success": true, "data": ...}`` or
``{"success": false, "error": {"code", "message", "details"?}}``.  Core
exceptions are mapped here; route handlers never build error bodies.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from modules.errors import (
    DataRequestError,
    DatapointNotFound,
    DependencyInactive,
    DuplicateSlug,
    HasActiveDependants,
    InsufficientScope,
    ModuleBusy,
    ModuleInactive,
    ModuleInternal,
    ModuleNotFound,
    RegistryError,
    SettingsValidationError,
    UnknownDependency,
)
from oauth.errors import AuthError, InvalidGrant, ReauthRequired, ScopeMismatch, TransientFailure
from storage.errors import StoreConflictError, StoreError

logger = logging.getLogger(__name__)

_AUTH_STATUS = {
    InvalidGrant: status.HTTP_400_BAD_REQUEST,
    ReauthRequired: status.HTTP_401_UNAUTHORIZED,
    ScopeMismatch: status.HTTP_403_FORBIDDEN,
    TransientFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_REGISTRY_STATUS = {
    ModuleNotFound: status.HTTP_404_NOT_FOUND,
    DatapointNotFound: status.HTTP_404_NOT_FOUND,
    ModuleInternal: status.HTTP_403_FORBIDDEN,
    InsufficientScope: status.HTTP_403_FORBIDDEN,
    DependencyInactive: status.HTTP_409_CONFLICT,
    HasActiveDependants: status.HTTP_409_CONFLICT,
    ModuleInactive: status.HTTP_409_CONFLICT,
    ModuleBusy: status.HTTP_409_CONFLICT,
    DuplicateSlug: status.HTTP_409_CONFLICT,
    UnknownDependency: status.HTTP_409_CONFLICT,
}

_HTTP_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


def success(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def failure(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _auth_details(exc: AuthError) -> Optional[Dict[str, Any]]:
    if isinstance(exc, ScopeMismatch):
        return {"missing_scopes": exc.missing_scopes}
    return None


def _registry_details(exc: RegistryError) -> Dict[str, Any]:
    details: Dict[str, Any] = {"slug": exc.slug}
    if isinstance(exc, InsufficientScope):
        details["missing_scopes"] = exc.missing_scopes
    elif isinstance(exc, DependencyInactive):
        details["inactive"] = exc.inactive
    elif isinstance(exc, HasActiveDependants):
        details["dependants"] = exc.dependants
    elif isinstance(exc, UnknownDependency):
        details["missing"] = exc.missing
    return details


def register_error_handlers(app: FastAPI) -> None:
    """Attach envelope-producing exception handlers."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status_code = _AUTH_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
        return failure(status_code, exc.code, exc.message, _auth_details(exc))

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        if isinstance(exc, DataRequestError):
            status_code = exc.status_code
        else:
            status_code = _REGISTRY_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        return failure(status_code, exc.code, exc.message, _registry_details(exc))

    @app.exception_handler(SettingsValidationError)
    async def settings_error_handler(request: Request, exc: SettingsValidationError):
        return failure(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            exc.code,
            exc.message,
            [{"field": e.field, "reason": e.reason} for e in exc.errors],
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "reason": error["msg"],
            }
            for error in exc.errors()
        ]
        return failure(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request", "Validation error", errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = _HTTP_CODES.get(exc.status_code, "http_error")
        return failure(exc.status_code, code, str(exc.detail))

    @app.exception_handler(StoreConflictError)
    async def store_conflict_handler(request: Request, exc: StoreConflictError):
        logger.warning("Write conflict on %s %s: %s", request.method, request.url.path, exc)
        return failure(
            status.HTTP_409_CONFLICT,
            "conflict",
            "The resource was changed concurrently; try again",
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
        return failure(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "Internal server error",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return failure(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "Internal server error",
        )
