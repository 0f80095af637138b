"""Auth API: sign-up, email confirmation, sign-in, refresh, sign-out.

Learn: Routes are thin. Each one builds a SessionManager for the request
and translates its outcome:
- AuthError → 4xx with the error code as `detail` (e.g. "INVALID_CREDENTIALS")
- None/False (a system failure that was already reported) → a neutral
  `null` / `{"success": false}` body, with no internals leaked

- POST /auth/sign-up → create an account, email the confirmation link
- POST /auth/validate-account → confirm the email address
- POST /auth/sign-in → email-or-username + password → token pair
- POST /auth/refresh → refresh token → new token pair (rotation)
- POST /auth/sign-out → end the current session
- GET /auth/me → current user profile

The user directory (/users) lives in api/users.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tlca.auth.dependencies import CurrentIdentity, get_current_user
from tlca.auth.errors import (
    AuthError,
    InvalidCredentials,
    InvalidRefreshToken,
    UnconfirmedEmailAddress,
    UserNotFound,
)
from tlca.auth.jwt import TokenIssuer, TokenPair, get_token_issuer
from tlca.db.engine import get_db
from tlca.services.notifier import Notifier, get_notifier
from tlca.services.session_manager import SessionManager
from tlca.services.user_service import UserService

router = APIRouter(prefix="/auth")

_STATUS_BY_ERROR = {
    InvalidCredentials: 401,
    InvalidRefreshToken: 401,
    UnconfirmedEmailAddress: 403,
    UserNotFound: 404,
}


# ─── Schemas ─────────────────────────────────────────────
# Fields are optional so that missing input reaches the service and comes
# back as MISSING_FIELDS rather than a generic 422.


class SignUpRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    username: Optional[str] = None


class ValidateAccountRequest(BaseModel):
    username: Optional[str] = None
    confirmation_token: Optional[str] = None


class SignInRequest(BaseModel):
    username_or_email: Optional[str] = None
    password: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class TokenResponse(BaseModel):
    token: str
    refresh_token: str
    token_type: str = "bearer"


class SuccessResponse(BaseModel):
    success: bool


class ProfileRead(BaseModel):
    id: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: str
    roles: list[str]


# ─── Helpers ─────────────────────────────────────────────


def get_session_manager(
    db: AsyncSession = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
    notifier: Notifier = Depends(get_notifier),
) -> SessionManager:
    return SessionManager(db, issuer, notifier)


def _http_error(e: AuthError) -> HTTPException:
    return HTTPException(status_code=_STATUS_BY_ERROR.get(type(e), 400), detail=e.code)


def _token_response(pair: Optional[TokenPair]) -> Optional[TokenResponse]:
    if pair is None:
        return None
    return TokenResponse(token=pair.access_token, refresh_token=pair.refresh_token)


# ─── Sign-up ─────────────────────────────────────────────


@router.post("/sign-up", response_model=SuccessResponse)
async def sign_up(
    body: SignUpRequest,
    response: Response,
    manager: SessionManager = Depends(get_session_manager),
):
    """Create an account. The user must confirm their email before signing in."""
    try:
        ok = await manager.sign_up(
            body.first_name, body.last_name, body.email, body.password, body.username
        )
    except AuthError as e:
        raise _http_error(e)
    if ok:
        response.status_code = 201
    return SuccessResponse(success=ok)


@router.post("/validate-account", response_model=SuccessResponse)
async def validate_account(
    body: ValidateAccountRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """Confirm an email address with the token from the confirmation email."""
    try:
        ok = await manager.validate_account(body.username, body.confirmation_token)
    except AuthError as e:
        raise _http_error(e)
    return SuccessResponse(success=ok)


# ─── Sessions ────────────────────────────────────────────


@router.post("/sign-in", response_model=Optional[TokenResponse])
async def sign_in(
    body: SignInRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """Sign in with email-or-username and password → token pair."""
    try:
        pair = await manager.sign_in(body.username_or_email, body.password)
    except AuthError as e:
        raise _http_error(e)
    return _token_response(pair)


@router.post("/refresh", response_model=Optional[TokenResponse])
async def refresh(
    body: RefreshRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """Exchange a refresh token for a new pair. The old one stops working."""
    try:
        pair = await manager.refresh_token(body.refresh_token)
    except AuthError as e:
        raise _http_error(e)
    return _token_response(pair)


@router.post("/sign-out", response_model=SuccessResponse)
async def sign_out(
    identity: CurrentIdentity = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
):
    """End the current user's session (idempotent)."""
    ok = await manager.sign_out(identity.user_id)
    return SuccessResponse(success=ok)


# ─── Current user ───────────────────────────────────────


@router.get("/me", response_model=ProfileRead)
async def get_me(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the current authenticated user's profile."""
    profile = await UserService(db).me(identity.user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile
