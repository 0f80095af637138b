"""User directory API.

- GET /users → page through all users (offset clamped at 0, optional limit)
- GET /users/colleagues → every teacher

Learn: Both routes need a valid access token but no particular role, the
same as /auth/me. The token proves who is asking; nothing here changes
state.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tlca.api.auth import ProfileRead
from tlca.auth.dependencies import CurrentIdentity, get_current_user
from tlca.db.engine import get_db
from tlca.services.user_service import UserService

router = APIRouter(prefix="/users")


class UserListItem(ProfileRead):
    is_validated: bool


def _user_svc(db: AsyncSession = Depends(get_db)) -> UserService:
    return UserService(db)


@router.get("", response_model=list[UserListItem])
async def list_users(
    offset: int = Query(0, description="Negative values count as 0"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    identity: CurrentIdentity = Depends(get_current_user),
    svc: UserService = Depends(_user_svc),
):
    """List users, oldest first."""
    return await svc.users(offset=offset, limit=limit)


@router.get("/colleagues", response_model=list[ProfileRead])
async def list_colleagues(
    identity: CurrentIdentity = Depends(get_current_user),
    svc: UserService = Depends(_user_svc),
):
    """List every user with the teacher role."""
    return await svc.colleagues()
