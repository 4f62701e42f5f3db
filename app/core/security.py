"""
Security utilities for password hashing and bearer tokens.
Uses bcrypt for secure password hashing.
Uses python-jose for signing and verifying JWT tokens.

Tokens carry the user id and the user's token version at issuance time.
They have no expiry: a token stays valid until the stored token version moves
past the one it embeds, which happens on password change and logout.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import bcrypt
from jose import jwt, JWTError
from core.config import settings

# bcrypt only reads this many bytes and refuses longer input
MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class TokenClaims:
    """Identity embedded in a verified token."""
    user_id: int
    token_version: int


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password to hash

    Returns:
        Hashed password as a string
    """
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        plain_password: Plain text password to verify
        hashed_password: Previously hashed password

    Returns:
        True if password matches, False otherwise (including passwords
        longer than bcrypt accepts, which can never have been stored)
    """
    password_bytes = plain_password.encode('utf-8')
    if len(password_bytes) > MAX_PASSWORD_BYTES:
        return False
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def issue_token(user_id: int, token_version: int) -> str:
    """
    Sign a bearer token for a user.

    Args:
        user_id: User ID to encode in the token
        token_version: The user's current token version

    Returns:
        Encoded JWT string
    """
    payload = {
        "sub": str(user_id),
        "ver": token_version,
        "iat": int(datetime.utcnow().timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> Optional[TokenClaims]:
    """
    Verify a token signature and extract its claims.

    Callers must still compare ``token_version`` with the stored user before
    trusting the identity.

    Args:
        token: JWT token string

    Returns:
        TokenClaims if the signature and payload are valid, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    try:
        user_id = int(payload["sub"])
        token_version = int(payload["ver"])
    except (KeyError, TypeError, ValueError):
        return None

    return TokenClaims(user_id=user_id, token_version=token_version)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token part of an ``Authorization: Bearer`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
