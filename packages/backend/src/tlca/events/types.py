"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
"""

# ─── Account lifecycle ───────────────────────────────────

USER_SIGNED_UP = "user.signed_up"
USER_EMAIL_CONFIRMED = "user.email_confirmed"

# ─── Sessions ────────────────────────────────────────────

USER_SIGNED_IN = "user.signed_in"
USER_TOKEN_REFRESHED = "user.token_refreshed"
USER_SIGNED_OUT = "user.signed_out"

# ─── Invitations ─────────────────────────────────────────

REGISTRATION_CLAIMED = "registration.claimed"
