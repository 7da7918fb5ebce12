"""
Security utilities: JWT bearer tokens.

The ledger doesn't log anyone in. Users authenticate with the identity
service, which issues a signed JWT; this module only verifies it.

Token claims:
  - "sub": the user id (UUID string). Every account and loan is owned by
    this id, and every ownership check compares against it.
  - "role": "member" (default) or "admin". Admin endpoints require "admin".
  - "exp": expiration timestamp — after this, the token is rejected

Tokens are signed with SECRET_KEY using HS256 (HMAC-SHA256), shared with
the identity service.

create_access_token() mints tokens in the same format. The service itself
never calls it; tests and local tooling do.

Enterprise note:
  In a production environment you'd verify asymmetric (RS256) tokens
  against the identity provider's published keys instead of sharing a
  symmetric secret.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from app.config import settings

ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create a signed JWT access token.

    Args:
        data: Dictionary of claims to encode (must include "sub").
        expires_delta: Optional custom expiration time. Defaults to
                       ACCESS_TOKEN_EXPIRE_MINUTES from settings.

    Returns:
        An encoded JWT string.
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.

    Raises:
        JWTError: If the token is expired, tampered with, or invalid.

    Returns:
        The decoded payload dictionary (contains "sub", "exp", etc.).
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
