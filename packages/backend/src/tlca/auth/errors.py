"""User-input errors surfaced verbatim to the caller.

Learn: Each failure kind has a stable code string. Clients switch on the
code (e.g. to show "please confirm your email first"), so codes never
change and never carry internal details. System failures are NOT in this
module: they are reported and turned into a neutral None/False result.
"""


class AuthError(Exception):
    """Base class for named authentication failures."""

    code = "AUTH_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


class MissingFields(AuthError):
    code = "MISSING_FIELDS"


class ExistingEmailAddress(AuthError):
    code = "EXISTING_EMAIL_ADDRESS"


class InvalidEmailAddress(AuthError):
    code = "INVALID_EMAIL_ADDRESS"


class InvalidPassword(AuthError):
    code = "INVALID_PASSWORD"


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"


class UnconfirmedEmailAddress(AuthError):
    code = "UNCONFIRMED_EMAIL_ADDRESS"


class InvalidRefreshToken(AuthError):
    code = "INVALID_REFRESH_TOKEN"


class UserNotFound(AuthError):
    code = "USER_NOT_FOUND"


class InvalidUsername(AuthError):
    code = "INVALID_USERNAME"
