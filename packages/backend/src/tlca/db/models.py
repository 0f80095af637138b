"""SQLAlchemy ORM models: single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Constraints and indexes defined here.
Alembic migrations mirror these models.

Key concepts:
- UUID primary keys (better for distributed systems than auto-increment)
- Portable column types (Uuid, JSON) so the same models run on Postgres
  in production and SQLite in tests
- Timestamps always come back timezone-aware (UTC), whatever the driver
- Unique constraints on email/username are the single source of truth for
  account uniqueness; nobody checks-then-inserts
"""

import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from tlca.auth.password import MAX_PASSWORD_BYTES, hash_password
from tlca.db.errors import FieldInvalid

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_RE = re.compile(r"^[a-z0-9._-]{3,64}$")
MIN_PASSWORD_LENGTH = 8

# Role tags. Every new account is a learner.
ROLE_LEARNER = "learner"
ROLE_TEACHER = "teacher"


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def new_confirmation_token() -> str:
    return secrets.token_hex(20)


class UTCDateTime(TypeDecorator):
    """DateTime that is always stored as UTC and loaded timezone-aware.

    Learn: SQLite has no timezone support and hands back naive datetimes.
    Normalizing on the way in and out means expiry comparisons behave the
    same on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ══════════════════════════════════════════════════════════════
# Users
# ══════════════════════════════════════════════════════════════


class User(Base):
    """Identity and session record.

    Learn: Two orthogonal state axes live on this row.
    - Confirmation: email_confirmed set ⇔ Confirmed. While unconfirmed,
      email_confirmation_token(+_expires) holds the single-use token.
    - Session: refresh_token(+_expires) set ⇔ Active. There is at most one
      active refresh token per user; signing in again replaces it.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    username: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    provider: Mapped[str] = mapped_column(
        String(20), nullable=False, default="local"
    )
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    password_salt: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    roles: Mapped[list] = mapped_column(
        JSON, nullable=False, default=lambda: [ROLE_LEARNER]
    )

    email_confirmed: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    email_confirmation_token: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    email_confirmation_token_expires: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    refresh_token: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    refresh_token_expires: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    # ─── Validation ───────────────────────────────────────

    @validates("email")
    def _validate_email(self, key, value):
        value = (value or "").strip().lower()
        if len(value) > 255 or not EMAIL_RE.match(value):
            raise FieldInvalid("email", "not a valid email address")
        return value

    @validates("username")
    def _validate_username(self, key, value):
        value = (value or "").strip().lower()
        if not USERNAME_RE.match(value):
            raise FieldInvalid("username", "3-64 chars of a-z, 0-9, '.', '_' or '-'")
        return value

    # ─── Behaviour ────────────────────────────────────────

    def set_password(self, password: str) -> None:
        """Validate and hash a new password."""
        if not password or not password.strip():
            raise FieldInvalid("password", "empty")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise FieldInvalid("password", f"shorter than {MIN_PASSWORD_LENGTH} chars")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise FieldInvalid("password", f"longer than {MAX_PASSWORD_BYTES} bytes")
        self.password_hash, self.password_salt = hash_password(password)

    def update_email(self, email: str, token_lifetime: timedelta) -> None:
        """Change the email address and restart the confirmation flow.

        Learn: A new address is unproven, so the account goes back to
        Unconfirmed with a fresh single-use token.
        """
        self.email = email
        self.email_confirmed = None
        self.email_confirmation_token = new_confirmation_token()
        self.email_confirmation_token_expires = utcnow() + token_lifetime

    @property
    def is_confirmed(self) -> bool:
        return self.email_confirmed is not None

    @property
    def display_name(self) -> str:
        if not (self.first_name and self.last_name):
            return self.username
        return f"{self.first_name} {self.last_name}"


# ══════════════════════════════════════════════════════════════
# Registrations (course invitations)
# ══════════════════════════════════════════════════════════════


class Registration(Base):
    """A course registration, possibly an invitation for a future account.

    Learn: Teachers can invite someone by email before they have an
    account. Such a row has `email` set and `user_id` empty. When that
    person signs up, the invitation is claimed: `user_id` is filled in
    and `email` cleared.
    """

    __tablename__ = "registrations"
    __table_args__ = (
        Index("idx_registrations_email", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    course_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )


# ══════════════════════════════════════════════════════════════
# Event log
# ══════════════════════════════════════════════════════════════


class Event(Base):
    """Immutable audit log of authentication state changes.

    Learn: Every transition (sign-up, confirmation, sign-in, refresh,
    sign-out, invitation claim) appends one event in the same transaction
    as the change itself. Events are never updated or deleted.

    stream_id examples: "user:<uuid>", "registration:<uuid>"
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
