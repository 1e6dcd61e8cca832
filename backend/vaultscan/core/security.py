# vaultscan/core/security.py
from __future__ import annotations

from typing import Any

from jose import JWTError, jwt

from vaultscan.core.config import settings


# -------------------------
# JWT helpers
# -------------------------
def _require_jwt_secret() -> None:
    if not settings.JWT_SECRET or not settings.JWT_SECRET.strip():
        raise RuntimeError("JWT_SECRET must be set (auth is required).")


def decode_token(token: str) -> dict[str, Any]:
    """
    Verify signature + exp of an access token minted by the auth service.

    Raises JWTError on any verification failure.
    """
    _require_jwt_secret()
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> dict[str, Any]:
    payload = decode_token(token)
    purpose = payload.get("purpose")
    if purpose is not None and purpose != "access":
        raise JWTError("Token purpose mismatch")
    if not str(payload.get("sub") or "").strip():
        raise JWTError("Token missing subject")
    return payload


# -------------------------
# Shared-secret comparison
# -------------------------
def constant_time_equals(provided: str, expected: str) -> bool:
    """
    Compare two secrets without bailing out on the first differing character.

    Every position up to the longer of the two strings is visited, and a
    length difference is folded into the result instead of returned early.
    """
    length = max(len(provided), len(expected))
    diff = len(provided) ^ len(expected)
    for i in range(length):
        a = ord(provided[i]) if i < len(provided) else 0
        b = ord(expected[i]) if i < len(expected) else 0
        diff |= a ^ b
    return diff == 0
