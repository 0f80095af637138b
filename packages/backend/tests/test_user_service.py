"""User query tests: me, colleagues, and the paged user list."""

import pytest
from sqlalchemy import update

from tlca.db.credential_store import CredentialStore
from tlca.db.models import User
from tlca.services.user_service import UserService

from conftest import PASSWORD


async def _make_teacher(db_session, username: str) -> None:
    await db_session.execute(
        update(User)
        .where(User.username == username)
        .values(roles=["learner", "teacher"])
    )
    await db_session.commit()


@pytest.mark.asyncio
async def test_me(confirmed_user, db_session):
    await confirmed_user(username="jane")
    user = await CredentialStore(db_session).find_by_username("jane")

    me = await UserService(db_session).me(user.id)
    assert me["username"] == "jane"
    assert me["display_name"] == "Jane Doe"
    assert me["roles"] == ["learner"]


@pytest.mark.asyncio
async def test_me_unknown_user(db_session):
    assert await UserService(db_session).me("not-a-uuid") is None


@pytest.mark.asyncio
async def test_users_is_validated(manager, confirmed_user, db_session):
    await confirmed_user("jane@example.com", "jane")
    await manager.sign_up("Bob", "Roe", "bob@example.com", PASSWORD, "bob")

    users = await UserService(db_session).users()
    assert [(u["username"], u["is_validated"]) for u in users] == [
        ("jane", True),
        ("bob", False),
    ]


@pytest.mark.asyncio
async def test_users_paging(manager, db_session):
    for name in ("ann", "bob", "cid"):
        await manager.sign_up(name.title(), "Roe", f"{name}@example.com", PASSWORD, name)
    svc = UserService(db_session)

    assert [u["username"] for u in await svc.users(offset=1)] == ["bob", "cid"]
    assert [u["username"] for u in await svc.users(offset=1, limit=1)] == ["bob"]
    assert [u["username"] for u in await svc.users(limit=2)] == ["ann", "bob"]


@pytest.mark.asyncio
@pytest.mark.parametrize("offset", [-5, -1, None])
async def test_users_offset_clamped_at_zero(manager, db_session, offset):
    for name in ("ann", "bob"):
        await manager.sign_up(name.title(), "Roe", f"{name}@example.com", PASSWORD, name)

    users = await UserService(db_session).users(offset=offset)
    assert [u["username"] for u in users] == ["ann", "bob"]


@pytest.mark.asyncio
async def test_colleagues_are_teachers_only(manager, db_session):
    for name in ("ann", "bob", "cid"):
        await manager.sign_up(name.title(), "Roe", f"{name}@example.com", PASSWORD, name)
    await _make_teacher(db_session, "ann")
    await _make_teacher(db_session, "cid")

    colleagues = await UserService(db_session).colleagues()
    assert [c["username"] for c in colleagues] == ["ann", "cid"]
    assert colleagues[0]["roles"] == ["learner", "teacher"]
    assert "is_validated" not in colleagues[0]


@pytest.mark.asyncio
async def test_no_colleagues(confirmed_user, db_session):
    await confirmed_user()
    assert await UserService(db_session).colleagues() == []
