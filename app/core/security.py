import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from pwdlib import PasswordHash

from app.config import settings

# Argon2 via pwdlib's recommended profile
pwd_context = PasswordHash.recommended()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(username: str, expires_minutes: int | None = None) -> str:
    """Issue a bearer token whose subject is the username."""
    now = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.JWT_EXPIRY_MINUTES)
    claims = {"sub": username, "iat": now, "exp": now + lifetime}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """
    Validate signature and expiry and return the claims.

    Raises:
        jwt.PyJWTError: Bad signature, expired, or missing ``sub``/``exp``
    """
    return jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
        options={"require": ["sub", "exp"]},
    )


def verify_admin_key(candidate: str | None) -> bool:
    """Constant-time comparison against the configured operator key."""
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), settings.ADMIN_API_KEY.encode())
