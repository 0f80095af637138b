"""Password hashing utilities.

Learn: Uses bcrypt for secure password hashing. The salt is generated
with bcrypt.gensalt() and stored next to the hash, so verification
recomputes the hash with the user's stored salt and compares the two
digests in constant time. The work factor (rounds=12) takes ~100ms per
hash on modern hardware.

bcrypt only looks at the first 72 bytes of a password; longer passwords
are rejected by model validation before they ever reach this module.
"""

import secrets
from typing import Optional

import bcrypt

BCRYPT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> tuple[str, str]:
    """Hash a password with a fresh bcrypt salt.

    Returns (password_hash, password_salt), both as str.
    """
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(password.encode("utf-8")[:MAX_PASSWORD_BYTES], salt)
    return hashed.decode("utf-8"), salt.decode("utf-8")


def verify_password(
    password: Optional[str],
    password_hash: Optional[str],
    password_salt: Optional[str],
) -> bool:
    """Check a plaintext password against a stored salted hash.

    Never raises: a missing password, hash or salt, or a malformed salt,
    simply fails verification.
    """
    if not password or not password_hash or not password_salt:
        return False
    try:
        candidate = bcrypt.hashpw(
            password.encode("utf-8")[:MAX_PASSWORD_BYTES],
            password_salt.encode("utf-8"),
        )
    except (ValueError, TypeError):
        return False
    return secrets.compare_digest(candidate, password_hash.encode("utf-8"))


def authenticate(user, password: Optional[str]) -> bool:
    """Password Verifier: does `password` match the user's stored credentials?"""
    if user is None:
        return False
    return verify_password(password, user.password_hash, user.password_salt)
