"""Credential store: the user repository behind the session manager.

Learn: This is the only module that talks to the users table. It offers
two kinds of writes:

1. Plain writes (add a user, set/clear a refresh token).
2. Conditional writes (compare-and-set). Refresh rotation and email
   confirmation only succeed if the row still holds the token the caller
   presented. Two concurrent callers racing on the same token therefore
   get exactly one winner, without any in-process locks.

Uniqueness of email/username is enforced by the database. The store never
checks existence before inserting (check-then-act would race); instead the
IntegrityError is translated into a tagged DuplicateKey(field).
"""

import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import String, cast, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import load_only

from tlca.db.errors import CredentialStoreError, DuplicateKey
from tlca.db.models import User

UNIQUE_FIELDS = ("email", "username")


def _duplicate_field(exc: IntegrityError) -> Optional[str]:
    """Name the unique field an IntegrityError is about, if any.

    Postgres reports the violated constraint name (users_email_key),
    SQLite the column (users.email). Both mention the field.
    """
    orig = exc.orig
    cause = getattr(orig, "__cause__", None)
    constraint = getattr(orig, "constraint_name", None) or getattr(
        cause, "constraint_name", None
    )
    text = f"{constraint or ''} {orig}".lower()
    if "unique" not in text and "duplicate" not in text and not constraint:
        return None
    for field in UNIQUE_FIELDS:
        if field in text:
            return field
    return None


def _as_uuid(value: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


class CredentialStore:
    """Async user repository backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Reads ────────────────────────────────────────────

    async def find_by_identity(self, email_or_username: str) -> Optional[User]:
        """Find a user whose email OR username matches (case-insensitive)."""
        identity = (email_or_username or "").strip().lower()
        if not identity:
            return None
        q = (
            select(User)
            .where(or_(User.email == identity, User.username == identity))
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(q)
        return result.scalars().first()

    async def find_by_username(self, username: str) -> Optional[User]:
        q = (
            select(User)
            .where(User.username == (username or "").strip().lower())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(q)
        return result.scalars().first()

    async def find_by_id(
        self, user_id: Union[str, uuid.UUID], *fields: str
    ) -> Optional[User]:
        """Find a user by id, optionally loading only the named columns.

        Malformed ids are treated like unknown ones.
        """
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        q = select(User).where(User.id == uid).execution_options(populate_existing=True)
        if fields:
            q = q.options(load_only(*(getattr(User, f) for f in fields)))
        result = await self.db.execute(q)
        return result.scalars().first()

    async def list_users(self, offset: int = 0, limit: Optional[int] = None) -> list[User]:
        """Page through all users, oldest first. No limit means the rest."""
        q = (
            select(User)
            .order_by(User.created_at, User.id)
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(q)
        return list(result.scalars().all())

    async def find_by_role(self, role: str, *fields: str) -> list[User]:
        """All users holding `role`.

        Roles are a JSON list, matched on its serialized text so the same
        query runs on Postgres and SQLite.
        """
        q = (
            select(User)
            .where(cast(User.roles, String).like(f'%"{role}"%'))
            .order_by(User.created_at, User.id)
            .execution_options(populate_existing=True)
        )
        if fields:
            q = q.options(load_only(*(getattr(User, f) for f in fields)))
        result = await self.db.execute(q)
        return list(result.scalars().all())

    # ─── Plain writes ─────────────────────────────────────

    async def add(self, user: User) -> User:
        """Stage a new user and flush it so constraint violations surface now.

        Raises DuplicateKey(field) if email or username is taken.
        """
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            field = _duplicate_field(e)
            if field is None:
                raise CredentialStoreError(str(e.orig)) from e
            raise DuplicateKey(field) from e
        return user

    async def save(self) -> None:
        """Commit the pending unit of work (the atomic commit point)."""
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            field = _duplicate_field(e)
            if field is None:
                raise CredentialStoreError(str(e.orig)) from e
            raise DuplicateKey(field) from e

    async def rollback(self) -> None:
        await self.db.rollback()

    async def set_refresh_token(
        self, user_id: uuid.UUID, token: str, expires: datetime
    ) -> None:
        """Replace whatever refresh token the user had (new session)."""
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(refresh_token=token, refresh_token_expires=expires)
            .execution_options(synchronize_session=False)
        )

    async def clear_refresh_token(self, user_id: Union[str, uuid.UUID]) -> int:
        """End the user's session. Returns the number of rows touched."""
        uid = _as_uuid(user_id)
        if uid is None:
            return 0
        result = await self.db.execute(
            update(User)
            .where(User.id == uid)
            .values(refresh_token=None, refresh_token_expires=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ─── Conditional writes ───────────────────────────────

    async def rotate_refresh_token(
        self,
        user_id: uuid.UUID,
        expected: str,
        token: str,
        expires: datetime,
        now: datetime,
    ) -> bool:
        """Swap the refresh token only if the row still holds `expected`.

        Returns False when another request already rotated (or cleared) it,
        or when the stored token has expired.
        """
        result = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.refresh_token == expected,
                User.refresh_token_expires >= now,
            )
            .values(refresh_token=token, refresh_token_expires=expires)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def confirm_email(
        self, username: str, expected_token: str, now: datetime
    ) -> bool:
        """Compare-and-clear the confirmation token, stamping email_confirmed.

        Returns False if the token no longer matches or has expired.
        """
        result = await self.db.execute(
            update(User)
            .where(
                User.username == username.strip().lower(),
                User.email_confirmation_token == expected_token,
                User.email_confirmation_token_expires >= now,
            )
            .values(
                email_confirmation_token=None,
                email_confirmation_token_expires=None,
                email_confirmed=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
