#!/usr/bin/env python3
"""
TLCA Quickstart: the whole account lifecycle in one script.

Signs up → confirms the email → signs in → calls /me → refreshes → signs out.
Run with: python examples/quickstart.py

Requires: pip install httpx
Backend must be running: http://localhost:8000

The confirmation token arrives by email. With a local SMTP catcher
(e.g. `python -m aiosmtpd -n -l localhost:1025` and TLCA_SMTP_PORT=1025)
copy it from the printed message and paste it when prompted.
"""

import sys
import uuid

import httpx

BASE = "http://localhost:8000/api/v1"


def main():
    run_id = uuid.uuid4().hex[:6]
    client = httpx.Client(base_url=BASE, timeout=10)
    email = f"demo-{run_id}@example.com"
    username = f"demo-{run_id}"
    password = "demo-password-123"

    # ── Health check ──────────────────────────────────────────────
    print("Checking backend health...")
    try:
        resp = client.get("/health")
    except httpx.ConnectError:
        print(f"Backend not reachable at {BASE}")
        print("Start it with:  uvicorn tlca.main:app --reload --port 8000")
        sys.exit(1)
    health = resp.json()
    print(f"  Database: {'✓' if health['database'] == 'ok' else '✗'}")
    print(f"  Redis:    {'✓' if health['redis'] == 'ok' else '✗'}")

    # ── Sign up ───────────────────────────────────────────────────
    print("\n1. Signing up...")
    resp = client.post("/auth/sign-up", json={
        "first_name": "Demo",
        "last_name": f"User {run_id}",
        "email": email,
        "username": username,
        "password": password,
    })
    assert resp.status_code == 201, f"Failed: {resp.text}"
    print(f"   Account {username} created, confirmation email sent to {email}")

    # ── Sign-in before confirming is refused ─────────────────────
    resp = client.post("/auth/sign-in", json={"username_or_email": email, "password": password})
    print(f"   Sign-in before confirming: {resp.status_code} {resp.json()['detail']}")

    # ── Confirm ───────────────────────────────────────────────────
    print("\n2. Confirming email...")
    token = input("   Paste the confirmation token from the email: ").strip()
    resp = client.post("/auth/validate-account", json={
        "username": username,
        "confirmation_token": token,
    })
    assert resp.status_code == 200, f"Failed: {resp.text}"
    print("   Email confirmed")

    # ── Sign in ───────────────────────────────────────────────────
    print("\n3. Signing in...")
    resp = client.post("/auth/sign-in", json={"username_or_email": email, "password": password})
    assert resp.status_code == 200, f"Failed: {resp.text}"
    tokens = resp.json()
    auth = {"Authorization": f"Bearer {tokens['token']}"}
    print(f"   Access token:  {tokens['token'][:24]}...")
    print(f"   Refresh token: {tokens['refresh_token'][:24]}...")

    resp = client.get("/auth/me", headers=auth)
    me = resp.json()
    print(f"   Signed in as {me['display_name']} ({', '.join(me['roles'])})")

    # ── Refresh ───────────────────────────────────────────────────
    print("\n4. Refreshing the session...")
    resp = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200, f"Failed: {resp.text}"
    new_tokens = resp.json()
    print("   New pair issued")

    resp = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    print(f"   Old refresh token again: {resp.status_code} {resp.json()['detail']}")

    # ── Sign out ──────────────────────────────────────────────────
    print("\n5. Signing out...")
    auth = {"Authorization": f"Bearer {new_tokens['token']}"}
    resp = client.post("/auth/sign-out", headers=auth)
    assert resp.json() == {"success": True}, f"Failed: {resp.text}"
    resp = client.post("/auth/refresh", json={"refresh_token": new_tokens["refresh_token"]})
    print(f"   Refresh after sign-out: {resp.status_code} {resp.json()['detail']}")

    print("\nDone.")


if __name__ == "__main__":
    main()
