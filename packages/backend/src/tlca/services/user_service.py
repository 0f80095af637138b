"""User queries: the signed-in user, fellow teachers, and the user list."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tlca.db.credential_store import CredentialStore
from tlca.db.models import ROLE_TEACHER, User

PROFILE_FIELDS = ("first_name", "last_name", "roles", "username")


def _profile(user: User) -> dict:
    return {
        "id": str(user.id),
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "roles": list(user.roles or []),
    }


class UserService:
    def __init__(self, db: AsyncSession):
        self.store = CredentialStore(db)

    async def me(self, user_id) -> Optional[dict]:
        """Profile of the authenticated user, or None if the account is gone."""
        user = await self.store.find_by_id(user_id, *PROFILE_FIELDS)
        if user is None:
            return None
        return _profile(user)

    async def colleagues(self) -> list[dict]:
        """Every user with the teacher role."""
        teachers = await self.store.find_by_role(ROLE_TEACHER, *PROFILE_FIELDS)
        return [_profile(u) for u in teachers]

    async def users(self, offset: Optional[int] = 0, limit: Optional[int] = None) -> list[dict]:
        """A page of users. Negative offsets count as 0.

        Learn: is_validated is derived from the pending confirmation token,
        not from email_confirmed: an account is validated once no token is
        outstanding.
        """
        page = await self.store.list_users(max(0, offset or 0), limit)
        return [
            {**_profile(u), "is_validated": not u.email_confirmation_token}
            for u in page
        ]
