"""
JWT-style caller token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256 and carry
the host user id plus the capabilities the host grants that user.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Iterable

from fastapi import HTTPException, status

from auth.permissions import Caller


def create_token(
    user_id: str,
    capabilities: Iterable[str],
    *,
    secret: str,
    expiry_seconds: int,
) -> str:
    """Create a signed token containing ``user_id``, capabilities and expiry."""
    payload = {
        "user_id": user_id,
        "capabilities": sorted(capabilities),
        "exp": int(time.time()) + expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return b64encode(raw).decode() + "." + sig


def verify_token(token: str, *, secret: str) -> Caller:
    """
    Verify token and return the ``Caller``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(parts[1], expected_sig):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return Caller(
            user_id=payload["user_id"],
            capabilities=frozenset(payload.get("capabilities", [])),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
