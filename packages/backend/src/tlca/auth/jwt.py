"""JWT token creation and verification.

Learn: JWT (JSON Web Token) provides stateless authentication.
- Access token: short-lived (15 min), used for API calls
- Refresh token: long-lived (14 days), exchanged for a new pair

Both lifetimes are part of the client contract (clients schedule renewal
around them), so they are fixed defaults rather than tunables.

Each token class is signed with its own secret. The issuer receives both
secrets at construction; nothing here reads process-wide configuration
except the get_token_issuer() factory.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import jwt

from tlca.config import settings

ACCESS_TOKEN_LIFETIME = timedelta(minutes=15)
REFRESH_TOKEN_LIFETIME = timedelta(days=14)


class TokenError(Exception):
    """Raised when token verification fails."""


@dataclass(frozen=True)
class TokenPair:
    """Access and refresh token pair handed back to the client."""

    access_token: str
    refresh_token: str
    access_expires: datetime
    refresh_expires: datetime


class TokenIssuer:
    """Creates and verifies signed, time-bounded access/refresh tokens."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_lifetime: timedelta = ACCESS_TOKEN_LIFETIME,
        refresh_lifetime: timedelta = REFRESH_TOKEN_LIFETIME,
    ):
        if not access_secret or not refresh_secret:
            raise ValueError("Both access and refresh secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime

    def issue(self, user) -> TokenPair:
        """Sign a fresh access/refresh pair carrying the user's id and roles.

        Computes only. Persisting the refresh half onto the user is the
        caller's job, as part of its own commit.
        """
        now = datetime.now(timezone.utc)
        claims = {"id": str(user.id), "roles": list(user.roles or [])}
        access_expires = now + self.access_lifetime
        refresh_expires = now + self.refresh_lifetime

        access_token = self._encode(
            claims, "access", now, access_expires, self._access_secret
        )
        refresh_token = self._encode(
            claims, "refresh", now, refresh_expires, self._refresh_secret
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires=access_expires,
            refresh_expires=refresh_expires,
        )

    def verify_access(self, token: str) -> dict:
        """Verify an access token. Returns its claims or raises TokenError."""
        return self._decode(token, "access", self._access_secret)

    def verify_refresh(self, token: str) -> dict:
        """Verify a refresh token. Returns its claims or raises TokenError."""
        return self._decode(token, "refresh", self._refresh_secret)

    def _encode(
        self,
        claims: dict,
        token_type: str,
        issued_at: datetime,
        expires: datetime,
        secret: str,
    ) -> str:
        payload = {
            **claims,
            "sub": claims["id"],
            "type": token_type,
            # jti keeps two tokens issued in the same second distinct
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": expires,
        }
        return jwt.encode(payload, secret, algorithm=self.algorithm)

    def _decode(self, token: str, token_type: str, secret: str) -> dict:
        if not token:
            raise TokenError("Missing token")
        try:
            payload = jwt.decode(token, secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise TokenError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise TokenError(f"Invalid token: {e}")
        if payload.get("type") != token_type:
            raise TokenError(f"Wrong token type, expected {token_type}")
        if "id" not in payload:
            raise TokenError("Token has no subject")
        return payload


@lru_cache
def get_token_issuer() -> TokenIssuer:
    """Build the application's issuer (cached).

    Secrets and algorithm come from settings; the lifetimes never do.
    """
    return TokenIssuer(
        access_secret=settings.jwt_access_secret,
        refresh_secret=settings.jwt_refresh_secret,
        algorithm=settings.jwt_algorithm,
        access_lifetime=ACCESS_TOKEN_LIFETIME,
        refresh_lifetime=REFRESH_TOKEN_LIFETIME,
    )
