"""TLCA: authentication and session lifecycle for the learning platform.

Verifies credentials, issues and rotates access/refresh tokens, and runs
the email-confirmation flow for new accounts.
"""

__version__ = "0.1.0"
