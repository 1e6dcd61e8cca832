# vaultscan/auth/identity.py
"""
Canonical authenticated identity model.

Tokens are minted by the family app's auth service; this service only verifies
them and reasons about "who is calling?" through this object instead of raw
claims. Ownership checks compare ``Identity.user_id`` with ``VaultItem.user_id``.

The Identity object is INTERNAL ONLY and should not be returned directly
to clients.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Identity:
    """
    Canonical representation of an authenticated (or unauthenticated) caller.

    Attributes:
        user_id: The ``sub`` claim of the verified token.
        is_admin: True when the token carries ``admin: true`` (or ``role: admin``).
        is_authenticated: True if the caller presented a valid token.
        raw_claims: Raw token claims for audit logging only.
    """

    user_id: str | None = None
    is_admin: bool = False
    is_authenticated: bool = False
    raw_claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unauthenticated(cls) -> Identity:
        return cls(user_id=None, is_admin=False, is_authenticated=False, raw_claims={})

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> Identity:
        sub = str(claims.get("sub") or "").strip()
        admin = claims.get("admin") is True or str(claims.get("role") or "").lower() == "admin"
        return cls(
            user_id=sub or None,
            is_admin=admin,
            is_authenticated=bool(sub),
            raw_claims=dict(claims),
        )

    def to_debug_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "is_admin": self.is_admin,
            "is_authenticated": self.is_authenticated,
        }
