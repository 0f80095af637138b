"""Registration store: pending course invitations addressed by email."""

import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tlca.db.models import Registration


class RegistrationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def pending_for_email(self, email: str) -> list[Registration]:
        """Invitations sent to `email` that no account has claimed yet."""
        q = (
            select(Registration)
            .where(
                Registration.email == email.strip().lower(),
                Registration.user_id.is_(None),
            )
            .order_by(Registration.created_at)
        )
        result = await self.db.execute(q)
        return list(result.scalars().all())

    async def claim(
        self, registration_id: uuid.UUID, email: str, user_id: uuid.UUID
    ) -> bool:
        """Hand one invitation over to `user_id` and detach the email.

        Conditional on the invitation still carrying `email`, so claiming
        twice is a no-op that returns False.
        """
        result = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == registration_id,
                Registration.email == email.strip().lower(),
            )
            .values(email=None, user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
