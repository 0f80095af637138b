"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current user identity from the request's
Authorization: Bearer <access token> header.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from tlca.auth.jwt import TokenError, TokenIssuer, get_token_issuer


class CurrentIdentity:
    """Represents the authenticated user making the request.

    Learn: Built from the access token claims alone (id + roles), so
    authorizing a request needs no database round-trip.
    """

    def __init__(self, user_id: str, roles: Optional[list[str]] = None):
        self.user_id = user_id
        self.roles = roles or []


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional, None if no auth)."""
    if authorization and authorization.startswith("Bearer "):
        return _authenticate_jwt(authorization[7:], issuer)
    return None


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required, 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def _authenticate_jwt(token: str, issuer: TokenIssuer) -> CurrentIdentity:
    """Authenticate via JWT access token."""
    try:
        payload = issuer.verify_access(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentIdentity(user_id=payload["id"], roles=payload.get("roles"))
