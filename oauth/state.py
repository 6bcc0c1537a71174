"""
OAuth ``state`` tokens (CSRF protection).

A state token is a base64 JSON payload signed with HMAC-SHA256.  It binds
the nonce, the dashboard path to return to, the initiating owner and an
expiry timestamp.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from base64 import urlsafe_b64decode, urlsafe_b64encode

from pydantic import ValidationError

from oauth.errors import InvalidGrant
from oauth.models import OAuthState


def encode_state(payload: OAuthState, secret: str) -> str:
    """Serialise and sign a state payload.  Deterministic for equal input."""
    raw = json.dumps(payload.model_dump(), sort_keys=True, separators=(",", ":")).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]
    return urlsafe_b64encode(raw).decode().rstrip("=") + "." + sig


def decode_state(state: str, secret: str, *, now: float) -> OAuthState:
    """
    Verify a state token and return its payload.

    Raises ``InvalidGrant`` on a malformed, tampered or expired token.
    """
    parts = state.split(".", 1)
    if len(parts) != 2:
        raise InvalidGrant("Invalid OAuth state: bad format")
    encoded, sig = parts
    try:
        raw = urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
    except (ValueError, TypeError) as exc:
        raise InvalidGrant(f"Invalid OAuth state: {exc}") from exc

    expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]
    if not hmac.compare_digest(sig, expected_sig):
        raise InvalidGrant("Invalid OAuth state: bad signature")

    try:
        payload = OAuthState.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise InvalidGrant(f"Invalid OAuth state: {exc}") from exc

    if payload.exp < now:
        raise InvalidGrant("Invalid OAuth state: state expired")
    return payload
