from __future__ import annotations

from fastapi import Depends, HTTPException, status

from vaultscan.auth.identity import Identity
from vaultscan.dependencies.auth import get_current_identity


def require_admin_identity(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """
    Ensure the authenticated caller has admin privileges.
    """
    if not identity.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity
