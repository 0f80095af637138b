"""User directory API tests: auth, paging, and the teacher list."""

import pytest
from sqlalchemy import update

from tlca.db.models import User

from conftest import PASSWORD


async def _sign_up(client, name: str):
    r = await client.post("/api/v1/auth/sign-up", json={
        "first_name": name.title(),
        "last_name": "Roe",
        "email": f"{name}@example.com",
        "username": name,
        "password": PASSWORD,
    })
    assert r.status_code == 201


async def _bearer(client, notifier, name: str) -> dict:
    """Sign up, confirm and sign in `name`. Returns the auth header."""
    await _sign_up(client, name)
    await client.post(
        "/api/v1/auth/validate-account",
        json={"username": name, "confirmation_token": notifier.sent[-1]["token"]},
    )
    r = await client.post(
        "/api/v1/auth/sign-in",
        json={"username_or_email": name, "password": PASSWORD},
    )
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/api/v1/users", "/api/v1/users/colleagues"])
async def test_requires_token(client, path):
    r = await client.get(path)
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_list_users(client, notifier):
    auth = await _bearer(client, notifier, "ann")
    await _sign_up(client, "bob")

    r = await client.get("/api/v1/users", headers=auth)
    assert r.status_code == 200
    users = r.json()
    assert [(u["username"], u["is_validated"]) for u in users] == [
        ("ann", True),
        ("bob", False),
    ]
    assert users[0]["display_name"] == "Ann Roe"


@pytest.mark.asyncio
async def test_list_users_negative_offset(client, notifier):
    auth = await _bearer(client, notifier, "ann")
    await _sign_up(client, "bob")

    r = await client.get("/api/v1/users", params={"offset": -10}, headers=auth)
    assert r.status_code == 200
    assert [u["username"] for u in r.json()] == ["ann", "bob"]

    r = await client.get("/api/v1/users", params={"offset": 1, "limit": 1}, headers=auth)
    assert [u["username"] for u in r.json()] == ["bob"]


@pytest.mark.asyncio
async def test_list_users_rejects_bad_limit(client, notifier):
    auth = await _bearer(client, notifier, "ann")
    r = await client.get("/api/v1/users", params={"limit": 0}, headers=auth)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_colleagues(client, notifier, session_factory):
    auth = await _bearer(client, notifier, "ann")
    await _sign_up(client, "bob")

    r = await client.get("/api/v1/users/colleagues", headers=auth)
    assert r.json() == []

    async with session_factory() as session:
        await session.execute(
            update(User).where(User.username == "bob").values(roles=["teacher"])
        )
        await session.commit()

    r = await client.get("/api/v1/users/colleagues", headers=auth)
    assert r.status_code == 200
    assert [c["username"] for c in r.json()] == ["bob"]
    assert r.json()[0]["roles"] == ["teacher"]
