"""Session manager tests: the sign-up → confirm → sign-in → refresh → sign-out flow.

Learn: These run the SessionManager directly against a real (SQLite)
database, so every rule is checked end to end through the store's
conditional writes:
1. Sign-up validation and duplicate handling
2. Post-commit side effects (email, invitation claims) never fail sign-up
3. Single-use confirmation tokens
4. Sign-in gating on confirmation
5. Refresh rotation, including two requests racing on one token
6. Sign-out idempotence
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock
import uuid

import pytest
from sqlalchemy import select, update

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
from tlca.db.credential_store import CredentialStore
from tlca.db.models import Registration, User, utcnow
from tlca.events.store import EventStore
from tlca.events.types import (
    REGISTRATION_CLAIMED,
    USER_EMAIL_CONFIRMED,
    USER_SIGNED_IN,
    USER_SIGNED_OUT,
    USER_SIGNED_UP,
    USER_TOKEN_REFRESHED,
)
from tlca.services import error_reporting, session_manager
from tlca.services.session_manager import SessionManager, derive_username

from conftest import PASSWORD, FakeNotifier


async def _user(db_session, username: str) -> User:
    return await CredentialStore(db_session).find_by_username(username)


async def _event_types(db_session, user: User) -> list[str]:
    events = await EventStore(db_session).read_stream(f"user:{user.id}")
    return [e.type for e in events]


# ═══════════════════════════════════════════════════════════
# Sign-up
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_sign_up_creates_unconfirmed_user(manager, notifier, db_session):
    assert await manager.sign_up("Jane", "Doe", "Jane@Example.com", PASSWORD, "jane") is True

    user = await _user(db_session, "jane")
    assert user.email == "jane@example.com"
    assert user.provider == "local"
    assert user.roles == ["learner"]
    assert not user.is_confirmed
    assert user.refresh_token is None
    assert user.password_hash and user.password_hash != PASSWORD

    # Exactly one confirmation email, carrying the stored token
    assert notifier.sent == [
        {"to": "jane@example.com", "token": user.email_confirmation_token, "username": "jane"}
    ]
    assert await _event_types(db_session, user) == [USER_SIGNED_UP]


@pytest.mark.asyncio
async def test_sign_up_confirmation_token_expires_in_24h(manager, db_session):
    before = utcnow()
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")

    user = await _user(db_session, "jane")
    lifetime = user.email_confirmation_token_expires - before
    assert timedelta(hours=24) <= lifetime < timedelta(hours=24, minutes=1)


@pytest.mark.asyncio
async def test_sign_up_derives_username(manager, notifier):
    assert await manager.sign_up("Jane", "Doe", "Jane.Doe@example.com", PASSWORD) is True
    username = notifier.sent[0]["username"]
    assert username.startswith("jane.doe-")
    assert len(username) == len("jane.doe-") + 8


def test_derive_username_short_local_part():
    assert derive_username("x@example.com").startswith("userx-")
    assert derive_username("+++@example.com").startswith("user-")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fields",
    [
        (None, "Doe", "jane@example.com", PASSWORD),
        ("Jane", "", "jane@example.com", PASSWORD),
        ("Jane", "Doe", "   ", PASSWORD),
        ("Jane", "Doe", "jane@example.com", None),
    ],
)
async def test_sign_up_missing_fields(manager, notifier, db_session, fields):
    with pytest.raises(MissingFields):
        await manager.sign_up(*fields)
    assert notifier.sent == []
    assert (await db_session.execute(select(User))).first() is None


@pytest.mark.asyncio
async def test_sign_up_invalid_email(manager, notifier):
    with pytest.raises(InvalidEmailAddress):
        await manager.sign_up("Jane", "Doe", "not-an-email", PASSWORD)
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_sign_up_invalid_password(manager):
    with pytest.raises(InvalidPassword):
        await manager.sign_up("Jane", "Doe", "jane@example.com", "short")


@pytest.mark.asyncio
async def test_sign_up_email_checked_before_password(manager):
    with pytest.raises(InvalidEmailAddress):
        await manager.sign_up("Jane", "Doe", "not-an-email", "short")


@pytest.mark.asyncio
async def test_sign_up_invalid_username(manager):
    with pytest.raises(InvalidUsername):
        await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "j d")


@pytest.mark.asyncio
async def test_sign_up_duplicate_email(manager, notifier):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")

    with pytest.raises(ExistingEmailAddress):
        await manager.sign_up("Janet", "Doe", "JANE@example.com", PASSWORD, "janet")
    # No email for the rejected attempt
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_sign_up_duplicate_username(manager):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")

    with pytest.raises(ExistingEmailAddress):
        await manager.sign_up("Jane", "Roe", "jane.roe@example.com", PASSWORD, "jane")


@pytest.mark.asyncio
async def test_sign_up_retries_taken_derived_username(manager, notifier, db_session, monkeypatch):
    """A fresh email never fails because its generated username collided."""
    names = iter(["john-0000aaaa", "john-0000aaaa", "john-0000bbbb"])
    monkeypatch.setattr(session_manager, "derive_username", lambda email: next(names))

    assert await manager.sign_up("John", "A", "john@a.com", PASSWORD) is True
    assert await manager.sign_up("John", "B", "john@b.com", PASSWORD) is True

    assert [s["username"] for s in notifier.sent] == ["john-0000aaaa", "john-0000bbbb"]
    second = await _user(db_session, "john-0000bbbb")
    assert second.email == "john@b.com"
    assert await _event_types(db_session, second) == [USER_SIGNED_UP]


@pytest.mark.asyncio
async def test_sign_up_gives_up_after_repeated_username_collisions(
    manager, notifier, db_session, monkeypatch
):
    monkeypatch.setattr(session_manager, "derive_username", lambda email: "john-0000aaaa")
    assert await manager.sign_up("John", "A", "john@a.com", PASSWORD) is True

    assert await manager.sign_up("John", "B", "john@b.com", PASSWORD) is False
    assert len(notifier.sent) == 1
    assert await CredentialStore(db_session).find_by_identity("john@b.com") is None


@pytest.mark.asyncio
async def test_sign_up_survives_notifier_failure(db_session, issuer):
    """A failed email doesn't undo the account."""
    failing = SessionManager(db_session, issuer, FakeNotifier(ok=False))
    assert await failing.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane") is True

    raising = SessionManager(db_session, issuer, FakeNotifier(error=ConnectionError("smtp down")))
    assert await raising.sign_up("Bob", "Roe", "bob@example.com", PASSWORD, "bob") is True

    assert await _user(db_session, "jane") is not None
    assert await _user(db_session, "bob") is not None


@pytest.mark.asyncio
async def test_sign_up_notifier_timeout(db_session, issuer):
    class SlowNotifier(FakeNotifier):
        async def send(self, to, token, *, username):
            await asyncio.sleep(5)
            return True

    manager = SessionManager(db_session, issuer, SlowNotifier(), notify_timeout=0.5)
    assert await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane") is True


@pytest.mark.asyncio
async def test_sign_up_persistence_failure(manager, notifier, db_session, monkeypatch):
    async def broken_save():
        raise RuntimeError("connection lost")

    monkeypatch.setattr(manager.store, "save", broken_save)
    log = MagicMock()
    monkeypatch.setattr(error_reporting, "logger", log)

    assert await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane") is False
    assert notifier.sent == []
    assert await _user(db_session, "jane") is None
    # Reported, without the address
    assert log.error.call_args.args == ("auth.sign_up.persist_failed",)
    assert "jane@example.com" not in repr(log.error.call_args)


# ═══════════════════════════════════════════════════════════
# Invitation claims
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_sign_up_claims_pending_invitations(manager, db_session):
    invited = Registration(email="jane@example.com", course_code="INFO-F101")
    other = Registration(email="someone@example.com", course_code="INFO-F101")
    db_session.add_all([invited, other])
    await db_session.commit()

    await manager.sign_up("Jane", "Doe", "Jane@example.com", PASSWORD, "jane")
    user = await _user(db_session, "jane")

    rows = (
        await db_session.execute(
            select(Registration).execution_options(populate_existing=True)
        )
    ).scalars().all()
    by_id = {r.id: r for r in rows}
    assert by_id[invited.id].user_id == user.id
    assert by_id[invited.id].email is None
    assert by_id[other.id].user_id is None
    assert by_id[other.id].email == "someone@example.com"

    claimed = await EventStore(db_session).read_stream(f"registration:{invited.id}")
    assert [e.type for e in claimed] == [REGISTRATION_CLAIMED]


@pytest.mark.asyncio
async def test_claim_failure_does_not_fail_sign_up(manager, db_session, monkeypatch):
    db_session.add_all([
        Registration(email="jane@example.com", course_code="A"),
        Registration(email="jane@example.com", course_code="B"),
    ])
    await db_session.commit()

    calls = []
    real_claim = manager.registrations.claim

    async def flaky_claim(registration_id, email, user_id):
        calls.append(registration_id)
        if len(calls) == 1:
            raise RuntimeError("deadlock")
        return await real_claim(registration_id, email, user_id)

    monkeypatch.setattr(manager.registrations, "claim", flaky_claim)

    assert await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane") is True
    user = await _user(db_session, "jane")
    assert user is not None

    # The second invitation was still claimed
    rows = (
        await db_session.execute(
            select(Registration).execution_options(populate_existing=True)
        )
    ).scalars().all()
    assert len(calls) == 2
    assert sorted(r.user_id is not None for r in rows) == [False, True]


# ═══════════════════════════════════════════════════════════
# Email confirmation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_validate_account(manager, notifier, db_session):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")
    token = notifier.sent[0]["token"]

    assert await manager.validate_account("jane", token) is True

    user = await _user(db_session, "jane")
    assert user.is_confirmed
    assert user.email_confirmation_token is None
    assert user.email_confirmation_token_expires is None
    assert await _event_types(db_session, user) == [USER_SIGNED_UP, USER_EMAIL_CONFIRMED]


@pytest.mark.asyncio
async def test_validate_account_token_is_single_use(manager, notifier):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")
    token = notifier.sent[0]["token"]
    await manager.validate_account("jane", token)

    with pytest.raises(UserNotFound):
        await manager.validate_account("jane", token)


@pytest.mark.asyncio
async def test_validate_account_wrong_token(manager, db_session):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")

    with pytest.raises(UserNotFound):
        await manager.validate_account("jane", "0" * 40)
    with pytest.raises(UserNotFound):
        await manager.validate_account("nobody", "0" * 40)
    with pytest.raises(UserNotFound):
        await manager.validate_account("jane", None)

    assert not (await _user(db_session, "jane")).is_confirmed


@pytest.mark.asyncio
async def test_validate_account_expired_token(manager, notifier, db_session):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")
    await db_session.execute(
        update(User)
        .where(User.username == "jane")
        .values(email_confirmation_token_expires=utcnow() - timedelta(seconds=1))
    )
    await db_session.commit()

    with pytest.raises(UserNotFound):
        await manager.validate_account("jane", notifier.sent[0]["token"])


@pytest.mark.asyncio
async def test_validate_account_at_exact_expiry(manager, notifier, db_session, monkeypatch):
    """`now == expires` is still inside the window."""
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")
    expires = utcnow().replace(microsecond=0) + timedelta(hours=1)
    await db_session.execute(
        update(User)
        .where(User.username == "jane")
        .values(email_confirmation_token_expires=expires)
    )
    await db_session.commit()
    monkeypatch.setattr(session_manager, "utcnow", lambda: expires)

    assert await manager.validate_account("jane", notifier.sent[0]["token"]) is True
    assert (await _user(db_session, "jane")).email_confirmed == expires


# ═══════════════════════════════════════════════════════════
# Sign-in
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_sign_in_by_email_or_username(manager, confirmed_user, issuer, db_session):
    username = await confirmed_user(username="jane")

    for identity in ("jane@example.com", "JANE", username):
        pair = await manager.sign_in(identity, PASSWORD)
        claims = issuer.verify_access(pair.access_token)
        user = await _user(db_session, username)
        assert claims["id"] == str(user.id)
        assert claims["roles"] == ["learner"]
        # The refresh half is mirrored onto the user
        assert user.refresh_token == pair.refresh_token
        assert user.refresh_token_expires == pair.refresh_expires


@pytest.mark.asyncio
async def test_sign_in_wrong_password(manager, confirmed_user):
    await confirmed_user()
    with pytest.raises(InvalidCredentials):
        await manager.sign_in("jane@example.com", "wrong password")


@pytest.mark.asyncio
async def test_sign_in_unknown_user(manager):
    with pytest.raises(InvalidCredentials):
        await manager.sign_in("nobody@example.com", PASSWORD)
    with pytest.raises(InvalidCredentials):
        await manager.sign_in(None, None)


@pytest.mark.asyncio
async def test_sign_in_unconfirmed(manager, db_session):
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")

    with pytest.raises(UnconfirmedEmailAddress):
        await manager.sign_in("jane", PASSWORD)
    assert (await _user(db_session, "jane")).refresh_token is None


@pytest.mark.asyncio
async def test_sign_in_unconfirmed_wrong_password_is_invalid_credentials(manager):
    """Credentials are checked first, so confirmation state isn't leaked."""
    await manager.sign_up("Jane", "Doe", "jane@example.com", PASSWORD, "jane")
    with pytest.raises(InvalidCredentials):
        await manager.sign_in("jane", "wrong password")


@pytest.mark.asyncio
async def test_sign_in_replaces_previous_session(manager, confirmed_user):
    await confirmed_user(username="jane")
    first = await manager.sign_in("jane", PASSWORD)
    second = await manager.sign_in("jane", PASSWORD)

    with pytest.raises(InvalidRefreshToken):
        await manager.refresh_token(first.refresh_token)
    assert await manager.refresh_token(second.refresh_token) is not None


@pytest.mark.asyncio
async def test_sign_in_persistence_failure(manager, confirmed_user, db_session, monkeypatch):
    await confirmed_user(username="jane")

    async def broken_set(*args, **kwargs):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(manager.store, "set_refresh_token", broken_set)

    assert await manager.sign_in("jane", PASSWORD) is None
    assert (await _user(db_session, "jane")).refresh_token is None


# ═══════════════════════════════════════════════════════════
# Refresh
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_refresh_rotates(manager, confirmed_user, db_session):
    await confirmed_user(username="jane")
    pair = await manager.sign_in("jane", PASSWORD)

    new_pair = await manager.refresh_token(pair.refresh_token)
    assert new_pair.refresh_token != pair.refresh_token
    assert new_pair.access_token != pair.access_token

    user = await _user(db_session, "jane")
    assert user.refresh_token == new_pair.refresh_token
    assert (await _event_types(db_session, user))[-2:] == [USER_SIGNED_IN, USER_TOKEN_REFRESHED]

    # The old refresh token is spent
    with pytest.raises(InvalidRefreshToken):
        await manager.refresh_token(pair.refresh_token)


@pytest.mark.asyncio
async def test_refresh_rejects_garbage_and_access_tokens(manager, confirmed_user):
    await confirmed_user(username="jane")
    pair = await manager.sign_in("jane", PASSWORD)

    for token in (None, "", "garbage", pair.access_token):
        with pytest.raises(InvalidRefreshToken):
            await manager.refresh_token(token)


@pytest.mark.asyncio
async def test_refresh_rejects_unknown_user(manager, issuer):
    class Ghost:
        id = uuid.uuid4()
        roles = ["learner"]

    pair = issuer.issue(Ghost())
    with pytest.raises(InvalidRefreshToken):
        await manager.refresh_token(pair.refresh_token)


@pytest.mark.asyncio
async def test_refresh_at_exact_stored_expiry(manager, confirmed_user, db_session, monkeypatch):
    await confirmed_user(username="jane")
    pair = await manager.sign_in("jane", PASSWORD)
    expires = utcnow().replace(microsecond=0) + timedelta(hours=1)
    await db_session.execute(
        update(User).where(User.username == "jane").values(refresh_token_expires=expires)
    )
    await db_session.commit()
    monkeypatch.setattr(session_manager, "utcnow", lambda: expires)

    assert await manager.refresh_token(pair.refresh_token) is not None


@pytest.mark.asyncio
async def test_refresh_rejects_expired_stored_token(manager, confirmed_user, db_session):
    """Stored expiry wins even while the JWT itself is still valid."""
    await confirmed_user(username="jane")
    pair = await manager.sign_in("jane", PASSWORD)
    await db_session.execute(
        update(User)
        .where(User.username == "jane")
        .values(refresh_token_expires=utcnow() - timedelta(seconds=1))
    )
    await db_session.commit()

    with pytest.raises(InvalidRefreshToken):
        await manager.refresh_token(pair.refresh_token)


@pytest.mark.asyncio
async def test_concurrent_refresh_has_one_winner(
    confirmed_user, manager, session_factory, issuer, notifier
):
    """Two requests racing on the same refresh token: exactly one wins."""
    await confirmed_user(username="jane")
    pair = await manager.sign_in("jane", PASSWORD)

    async def attempt():
        async with session_factory() as session:
            racer = SessionManager(session, issuer, notifier)
            try:
                return await racer.refresh_token(pair.refresh_token)
            except InvalidRefreshToken as e:
                return e

    results = await asyncio.gather(attempt(), attempt())

    winners = [r for r in results if r is not None and not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, InvalidRefreshToken)]
    assert len(winners) == 1
    assert len(losers) == 1

    async with session_factory() as session:
        user = await CredentialStore(session).find_by_username("jane")
        assert user.refresh_token == winners[0].refresh_token


# ═══════════════════════════════════════════════════════════
# Sign-out
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_sign_out(manager, confirmed_user, db_session):
    await confirmed_user(username="jane")
    pair = await manager.sign_in("jane", PASSWORD)
    user = await _user(db_session, "jane")

    assert await manager.sign_out(str(user.id)) is True

    user = await _user(db_session, "jane")
    assert user.refresh_token is None
    assert user.refresh_token_expires is None
    assert (await _event_types(db_session, user))[-1] == USER_SIGNED_OUT
    with pytest.raises(InvalidRefreshToken):
        await manager.refresh_token(pair.refresh_token)


@pytest.mark.asyncio
async def test_sign_out_is_idempotent(manager, confirmed_user, db_session):
    await confirmed_user(username="jane")
    await manager.sign_in("jane", PASSWORD)
    user = await _user(db_session, "jane")

    assert await manager.sign_out(user.id) is True
    assert await manager.sign_out(user.id) is True
    assert await manager.sign_out(str(uuid.uuid4())) is True


@pytest.mark.asyncio
async def test_sign_in_again_after_sign_out(manager, confirmed_user, db_session):
    await confirmed_user(username="jane")
    await manager.sign_in("jane", PASSWORD)
    await manager.sign_out((await _user(db_session, "jane")).id)

    pair = await manager.sign_in("jane", PASSWORD)
    assert await manager.refresh_token(pair.refresh_token) is not None


# ═══════════════════════════════════════════════════════════
# Full flow
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_full_flow(manager, notifier, issuer):
    """sign-up → refused sign-in → confirm → sign-in → 14-day refresh token."""
    assert await manager.sign_up("Ann", "Bee", "a@b.com", "Secret123") is True

    with pytest.raises(UnconfirmedEmailAddress):
        await manager.sign_in("a@b.com", "Secret123")

    sent = notifier.sent[0]
    assert await manager.validate_account(sent["username"], sent["token"]) is True

    pair = await manager.sign_in("a@b.com", "Secret123")
    expected = utcnow() + timedelta(days=14)
    assert abs(pair.refresh_expires - expected) < timedelta(seconds=5)
    assert issuer.verify_refresh(pair.refresh_token)["id"]
