"""
Authentication errors.

``ReauthRequired`` is terminal: by the time it is raised the stored
credential has already been deleted and the caller must restart the
authorization flow.
"""

from __future__ import annotations

from typing import Iterable


class AuthError(Exception):
    code = "auth_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidGrant(AuthError):
    """The authorization code, state, or grant was rejected."""

    code = "invalid_grant"


class ScopeMismatch(AuthError):
    """Granted scopes do not cover what the active modules require."""

    code = "scope_mismatch"

    def __init__(self, missing_scopes: Iterable[str], message: str = "") -> None:
        self.missing_scopes = sorted(missing_scopes)
        super().__init__(
            message or f"Missing required scopes: {', '.join(self.missing_scopes)}"
        )


class TransientFailure(AuthError):
    """Upstream unavailable or timed out.  Safe for the caller to retry."""

    code = "transient_failure"


class ReauthRequired(AuthError):
    """No usable credential remains; the user must reconnect."""

    code = "reauth_required"
