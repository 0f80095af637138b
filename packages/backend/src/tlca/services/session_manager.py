"""Session manager: sign-up, email confirmation, sign-in, refresh, sign-out.

Learn: Each user moves along two independent axes:

    Confirmation: Unconfirmed ──validate_account──▶ Confirmed
    Session:      NoSession ──sign_in──▶ Active ──refresh_token──▶ Active
                  Active ──sign_out──▶ NoSession

Rules this service enforces:
- Only Confirmed users can sign in.
- There is one active refresh token per user. Signing in replaces it,
  refreshing rotates it, signing out clears it.
- Confirmation and refresh tokens are compared-and-swapped in the store,
  so a token can be used exactly once even under concurrent requests.
- `now > expires` means expired, everywhere.
- A token that exists but doesn't match is reported exactly like a
  missing one (USER_NOT_FOUND / INVALID_REFRESH_TOKEN).

Failure handling:
- User-input problems raise an AuthError subclass with a stable code.
- If persisting a valid transition fails, the error is reported and the
  operation returns None/False. Nothing is retried here.
- Side effects of sign-up (confirmation email, invitation claims) run
  after the commit as independent best-effort tasks.
"""

import re
import secrets
import uuid
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tlca.auth.errors import (
    ExistingEmailAddress,
    InvalidCredentials,
    InvalidEmailAddress,
    InvalidPassword,
    InvalidRefreshToken,
    InvalidUsername,
    MissingFields,
    UnconfirmedEmailAddress,
    UserNotFound,
)
from tlca.auth.jwt import TokenError, TokenIssuer, TokenPair
from tlca.auth.password import authenticate
from tlca.config import settings
from tlca.db.credential_store import CredentialStore
from tlca.db.errors import DuplicateKey, FieldInvalid
from tlca.db.models import ROLE_LEARNER, User, utcnow
from tlca.db.registration_store import RegistrationStore
from tlca.events.store import EventStore
from tlca.events.types import (
    REGISTRATION_CLAIMED,
    USER_EMAIL_CONFIRMED,
    USER_SIGNED_IN,
    USER_SIGNED_OUT,
    USER_SIGNED_UP,
    USER_TOKEN_REFRESHED,
)
from tlca.services.error_reporting import report_error
from tlca.services.notifier import Notifier
from tlca.services.post_commit import PostCommitTask, run_post_commit

logger = structlog.get_logger()

# Fresh suffixes tried when a derived username is already taken
USERNAME_ATTEMPTS = 5

_FIELD_ERRORS = {
    "email": InvalidEmailAddress,
    "password": InvalidPassword,
    "username": InvalidUsername,
}


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _tokens_match(stored: Optional[str], presented: Optional[str]) -> bool:
    """Constant-time token comparison that tolerates None and non-ASCII input."""
    if not stored or not presented:
        return False
    return secrets.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))


def derive_username(email: str) -> str:
    """Build a username from the email local part plus a random suffix.

    Example: "Jane.Doe+tlca@b.com" → "jane.doetlca-3f9a0c12"
    """
    local = re.sub(r"[^a-z0-9._-]", "", email.split("@", 1)[0].lower())[:40]
    if len(local) < 3:
        local = f"user{local}"
    return f"{local}-{secrets.token_hex(4)}"


class SessionManager:
    """Orchestrates the authentication state machine for one request."""

    def __init__(
        self,
        db: AsyncSession,
        issuer: TokenIssuer,
        notifier: Notifier,
        *,
        confirmation_lifetime: Optional[timedelta] = None,
        notify_timeout: Optional[float] = None,
    ):
        self.db = db
        self.store = CredentialStore(db)
        self.registrations = RegistrationStore(db)
        self.events = EventStore(db)
        self.issuer = issuer
        self.notifier = notifier
        self.confirmation_lifetime = confirmation_lifetime or timedelta(
            hours=settings.email_confirmation_expire_hours
        )
        self.notify_timeout = notify_timeout or settings.notify_timeout_seconds

    # ─── Sign-up ──────────────────────────────────────────

    async def sign_up(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        username: Optional[str] = None,
    ) -> bool:
        """Create an Unconfirmed account and send its confirmation email.

        Returns True once the account is committed, even if the email or
        the invitation claims fail afterwards. Returns False if the
        account could not be persisted for a system reason.
        """
        if not all(_present(v) for v in (first_name, last_name, email, password)):
            raise MissingFields()

        derived = not _present(username)
        try:
            user = User(
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                provider="local",
                roles=[ROLE_LEARNER],
            )
            # Email first: an input with both fields invalid reports the email
            user.update_email(email, self.confirmation_lifetime)
            user.username = derive_username(user.email) if derived else username
            user.set_password(password)
        except FieldInvalid as e:
            raise _FIELD_ERRORS.get(e.field, InvalidEmailAddress)() from e

        for attempt in range(1, USERNAME_ATTEMPTS + 1):
            try:
                await self.store.add(user)
                user_id, user_email, user_name = user.id, user.email, user.username
                token = user.email_confirmation_token
                await self.events.append(
                    stream_id=f"user:{user_id}",
                    event_type=USER_SIGNED_UP,
                    data={
                        "user_id": str(user_id),
                        "email": user_email,
                        "username": user_name,
                    },
                )
                await self.store.save()
                break
            except DuplicateKey as e:
                if not (derived and e.field == "username"):
                    logger.info("auth.sign_up.duplicate", field=e.field)
                    raise ExistingEmailAddress() from e
                # The rollback left `user` transient, so it can be added again
                if attempt == USERNAME_ATTEMPTS:
                    report_error(e, "auth.sign_up.username_exhausted", attempts=attempt)
                    return False
                logger.info("auth.sign_up.username_taken", attempt=attempt)
                user.username = derive_username(user.email)
            except Exception as e:
                await self.store.rollback()
                report_error(e, "auth.sign_up.persist_failed")
                return False

        outcomes = await run_post_commit(
            [
                PostCommitTask(
                    "send_confirmation",
                    lambda: self.notifier.send(user_email, token, username=user_name),
                ),
                PostCommitTask(
                    "claim_registrations",
                    lambda: self._claim_registrations(user_id, user_email),
                ),
            ],
            timeout=self.notify_timeout,
        )
        logger.info("auth.sign_up", user_id=str(user_id), post_commit=outcomes)
        return True

    async def _claim_registrations(self, user_id: uuid.UUID, email: str) -> bool:
        """Transfer pending invitations for `email` to the new account.

        Each invitation is claimed and committed on its own; one failing
        doesn't stop the others. Returns False if any of them failed.
        """
        pending = await self.registrations.pending_for_email(email)
        registration_ids = [r.id for r in pending]
        failed = 0
        for registration_id in registration_ids:
            try:
                if not await self.registrations.claim(registration_id, email, user_id):
                    continue  # already claimed
                await self.events.append(
                    stream_id=f"registration:{registration_id}",
                    event_type=REGISTRATION_CLAIMED,
                    data={
                        "registration_id": str(registration_id),
                        "user_id": str(user_id),
                    },
                )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                failed += 1
                logger.warning(
                    "auth.sign_up.claim_failed",
                    registration_id=str(registration_id),
                    error=str(e),
                )
        return failed == 0

    # ─── Email confirmation ───────────────────────────────

    async def validate_account(
        self, username: Optional[str], confirmation_token: Optional[str]
    ) -> bool:
        """Confirm an account with the token from its confirmation email."""
        now = utcnow()
        user = await self.store.find_by_username(username or "")
        if (
            user is None
            or not _tokens_match(user.email_confirmation_token, confirmation_token)
            or user.email_confirmation_token_expires is None
            or now > user.email_confirmation_token_expires
        ):
            raise UserNotFound()

        user_id, user_name = user.id, user.username
        try:
            confirmed = await self.store.confirm_email(user_name, confirmation_token, now)
            if confirmed:
                await self.events.append(
                    stream_id=f"user:{user_id}",
                    event_type=USER_EMAIL_CONFIRMED,
                    data={"user_id": str(user_id)},
                )
                await self.store.save()
        except Exception as e:
            await self.store.rollback()
            report_error(e, "auth.validate_account.persist_failed", user_id=str(user_id))
            return False

        if not confirmed:
            # Someone else used the token between our read and our write
            raise UserNotFound()

        logger.info("auth.email_confirmed", user_id=str(user_id))
        return True

    # ─── Sign-in ──────────────────────────────────────────

    async def sign_in(
        self, username_or_email: Optional[str], password: Optional[str]
    ) -> Optional[TokenPair]:
        """Check credentials and open a new session.

        Any previous refresh token of the user stops working.
        """
        user = await self.store.find_by_identity(username_or_email or "")
        if not authenticate(user, password):
            raise InvalidCredentials()
        if not user.is_confirmed:
            raise UnconfirmedEmailAddress()

        pair = self.issuer.issue(user)
        user_id = user.id
        try:
            await self.store.set_refresh_token(
                user_id, pair.refresh_token, pair.refresh_expires
            )
            await self.events.append(
                stream_id=f"user:{user_id}",
                event_type=USER_SIGNED_IN,
                data={"user_id": str(user_id)},
            )
            await self.store.save()
        except Exception as e:
            await self.store.rollback()
            report_error(e, "auth.sign_in.persist_failed", user_id=str(user_id))
            return None

        logger.info("auth.sign_in", user_id=str(user_id))
        return pair

    # ─── Refresh ──────────────────────────────────────────

    async def refresh_token(self, old_refresh_token: Optional[str]) -> Optional[TokenPair]:
        """Exchange the current refresh token for a new pair (rotation)."""
        try:
            claims = self.issuer.verify_refresh(old_refresh_token)
        except TokenError as e:
            logger.info("auth.refresh.rejected", reason=str(e))
            raise InvalidRefreshToken() from e

        now = utcnow()
        user = await self.store.find_by_id(
            claims["id"], "roles", "refresh_token", "refresh_token_expires"
        )
        if (
            user is None
            or not _tokens_match(user.refresh_token, old_refresh_token)
            or user.refresh_token_expires is None
            or now > user.refresh_token_expires
        ):
            raise InvalidRefreshToken()

        pair = self.issuer.issue(user)
        user_id = user.id
        try:
            rotated = await self.store.rotate_refresh_token(
                user_id, old_refresh_token, pair.refresh_token, pair.refresh_expires, now
            )
            if rotated:
                await self.events.append(
                    stream_id=f"user:{user_id}",
                    event_type=USER_TOKEN_REFRESHED,
                    data={"user_id": str(user_id)},
                )
                await self.store.save()
        except Exception as e:
            await self.store.rollback()
            report_error(e, "auth.refresh.persist_failed", user_id=str(user_id))
            return None

        if not rotated:
            # Lost the race: another request already rotated this token
            raise InvalidRefreshToken()

        logger.info("auth.refresh", user_id=str(user_id))
        return pair

    # ─── Sign-out ─────────────────────────────────────────

    async def sign_out(self, user_id) -> bool:
        """End the user's session. Safe to call repeatedly."""
        try:
            touched = await self.store.clear_refresh_token(user_id)
            if touched:
                await self.events.append(
                    stream_id=f"user:{user_id}",
                    event_type=USER_SIGNED_OUT,
                    data={"user_id": str(user_id)},
                )
            await self.store.save()
        except Exception as e:
            await self.store.rollback()
            report_error(e, "auth.sign_out.persist_failed", user_id=str(user_id))
            return False

        logger.info("auth.sign_out", user_id=str(user_id))
        return True
