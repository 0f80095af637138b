"""TLCA CLI: create an account and manage a session from the terminal.

Usage:
    tlca sign-up --first-name Jane --last-name Doe --email jane@b.com
    tlca validate jane-3f9a0c12 4c1d...            # token from the email
    tlca sign-in jane@b.com                        # prints the token pair
    tlca refresh <refresh-token>                   # rotate the pair
    tlca me --token <access-token>                 # current profile
    tlca users --offset 20 --limit 20 --token <t>  # user list
    tlca colleagues --token <access-token>         # every teacher
    tlca sign-out --token <access-token>
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("TLCA_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the TLCA backend."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _token_from_ctx(token: Optional[str]) -> str:
    """Resolve the access token from --token or the TLCA_TOKEN env var."""
    tok = token or os.environ.get("TLCA_TOKEN")
    if not tok:
        click.secho(
            "Error: --token required (or set TLCA_TOKEN env var)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return tok


def _pretty_json(data: dict | list | None) -> str:
    return json.dumps(data, indent=2, default=str)


def _check(r: httpx.Response) -> dict | None:
    """Return the JSON body, or print the error code and exit(1)."""
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail", r.text)
        except ValueError:
            detail = r.text
        click.secho(f"Error ({r.status_code}): {detail}", fg="red", err=True)
        sys.exit(1)
    return r.json()


def _print_tokens(data: dict | None) -> None:
    if not data:
        click.secho("The server could not open a session. Try again later.", fg="yellow")
        sys.exit(1)
    click.echo(_pretty_json(data))


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="tlca")
def main():
    """TLCA: sign up, confirm your email, and manage sessions."""


# ---------------------------------------------------------------------------
# tlca sign-up
# ---------------------------------------------------------------------------


@main.command("sign-up")
@click.option("--first-name", required=True)
@click.option("--last-name", required=True)
@click.option("--email", required=True)
@click.option("--username", help="Defaults to one derived from the email")
@click.password_option()
def sign_up(first_name: str, last_name: str, email: str,
            username: Optional[str], password: str):
    """Create an account. A confirmation link is emailed to you."""
    _run(_sign_up_impl(first_name, last_name, email, username, password))


async def _sign_up_impl(first_name: str, last_name: str, email: str,
                        username: Optional[str], password: str):
    body = {
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "password": password,
    }
    if username:
        body["username"] = username
    async with _client() as c:
        data = _check(await c.post("/api/v1/auth/sign-up", json=body))
    if data and data.get("success"):
        click.secho("Account created. Check your inbox to confirm your email.", fg="green")
    else:
        click.secho("Sign-up failed. Try again later.", fg="yellow")
        sys.exit(1)


# ---------------------------------------------------------------------------
# tlca validate
# ---------------------------------------------------------------------------


@main.command()
@click.argument("username")
@click.argument("confirmation_token")
def validate(username: str, confirmation_token: str):
    """Confirm your email address with the token from the email."""
    _run(_validate_impl(username, confirmation_token))


async def _validate_impl(username: str, confirmation_token: str):
    async with _client() as c:
        data = _check(await c.post("/api/v1/auth/validate-account", json={
            "username": username,
            "confirmation_token": confirmation_token,
        }))
    if data and data.get("success"):
        click.secho("Email confirmed. You can now sign in.", fg="green")
    else:
        click.secho("Confirmation failed. Try again later.", fg="yellow")
        sys.exit(1)


# ---------------------------------------------------------------------------
# tlca sign-in / refresh / sign-out
# ---------------------------------------------------------------------------


@main.command("sign-in")
@click.argument("username_or_email")
@click.password_option(confirmation_prompt=False)
def sign_in(username_or_email: str, password: str):
    """Sign in and print the access/refresh token pair."""
    _run(_sign_in_impl(username_or_email, password))


async def _sign_in_impl(username_or_email: str, password: str):
    async with _client() as c:
        data = _check(await c.post("/api/v1/auth/sign-in", json={
            "username_or_email": username_or_email,
            "password": password,
        }))
    _print_tokens(data)


@main.command()
@click.argument("refresh_token")
def refresh(refresh_token: str):
    """Exchange a refresh token for a new pair. The old one stops working."""
    _run(_refresh_impl(refresh_token))


async def _refresh_impl(refresh_token: str):
    async with _client() as c:
        data = _check(await c.post("/api/v1/auth/refresh", json={
            "refresh_token": refresh_token,
        }))
    _print_tokens(data)


@main.command("sign-out")
@click.option("--token", help="Access token (or set TLCA_TOKEN)")
def sign_out(token: Optional[str]):
    """End the current session."""
    _run(_sign_out_impl(token))


async def _sign_out_impl(token: Optional[str]):
    tok = _token_from_ctx(token)
    async with _client() as c:
        data = _check(await c.post(
            "/api/v1/auth/sign-out",
            headers={"Authorization": f"Bearer {tok}"},
        ))
    if data and data.get("success"):
        click.secho("Signed out.", fg="green")
    else:
        click.secho("Sign-out failed. Try again later.", fg="yellow")
        sys.exit(1)


# ---------------------------------------------------------------------------
# tlca me
# ---------------------------------------------------------------------------


@main.command()
@click.option("--token", help="Access token (or set TLCA_TOKEN)")
def me(token: Optional[str]):
    """Show the profile of the signed-in user."""
    _run(_me_impl(token))


async def _me_impl(token: Optional[str]):
    tok = _token_from_ctx(token)
    async with _client() as c:
        profile = _check(await c.get(
            "/api/v1/auth/me",
            headers={"Authorization": f"Bearer {tok}"},
        ))
    click.secho(profile["display_name"], bold=True)
    click.echo(f"  Username: {profile['username']}")
    click.echo(f"  Roles:    {', '.join(profile['roles']) or '-'}")
    click.echo(f"  Id:       {profile['id']}")



# ---------------------------------------------------------------------------
# tlca users / tlca colleagues
# ---------------------------------------------------------------------------


def _print_user_rows(users: list[dict]) -> None:
    if not users:
        click.echo("No users.")
        return
    for u in users:
        mark = "  (unconfirmed)" if u.get("is_validated") is False else ""
        click.echo(f"  {u['username']:<24} {u['display_name']}{mark}")


@main.command()
@click.option("--offset", default=0, show_default=True, help="Users to skip")
@click.option("--limit", type=int, default=None, help="Max users to show")
@click.option("--token", help="Access token (or set TLCA_TOKEN)")
def users(offset: int, limit: Optional[int], token: Optional[str]):
    """List users, oldest first."""
    _run(_users_impl(offset, limit, token))


async def _users_impl(offset: int, limit: Optional[int], token: Optional[str]):
    tok = _token_from_ctx(token)
    params = {"offset": offset}
    if limit is not None:
        params["limit"] = limit
    async with _client() as c:
        rows = _check(await c.get(
            "/api/v1/users",
            params=params,
            headers={"Authorization": f"Bearer {tok}"},
        ))
    _print_user_rows(rows)


@main.command()
@click.option("--token", help="Access token (or set TLCA_TOKEN)")
def colleagues(token: Optional[str]):
    """List every teacher."""
    _run(_colleagues_impl(token))


async def _colleagues_impl(token: Optional[str]):
    tok = _token_from_ctx(token)
    async with _client() as c:
        rows = _check(await c.get(
            "/api/v1/users/colleagues",
            headers={"Authorization": f"Bearer {tok}"},
        ))
    _print_user_rows(rows)


if __name__ == "__main__":
    main()
