# vaultscan/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from vaultscan.auth.identity import Identity
from vaultscan.core.security import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_identity(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    """
    Validates:
      - Authorization: Bearer <token>
      - token signature + exp
      - token carries a subject
    Returns:
      - Identity built from the verified claims
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    try:
        payload = verify_access_token(creds.credentials)
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    identity = Identity.from_claims(payload)
    if not identity.is_authenticated:
        raise _unauthorized("Invalid or expired token")
    return identity
