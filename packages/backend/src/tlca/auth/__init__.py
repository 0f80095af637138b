"""Authentication and session lifecycle.

Learn: Users authenticate with email-or-username + password and receive a
short-lived access token (15 min) and a long-lived refresh token
(14 days). Only accounts whose email address has been confirmed can sign
in. Every request then resolves its bearer token to a "current identity".
"""
