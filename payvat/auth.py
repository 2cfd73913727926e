"""Password hashing, JWT issuing and role checks."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from pwdlib import PasswordHash
from pwdlib.hashers.argon2 import Argon2Hasher
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .config import settings

logger = logging.getLogger(__name__)

password_hash = PasswordHash((Argon2Hasher(),))

# Verified against when the email is unknown so both paths cost the same
DUMMY_HASH = password_hash.hash("payvat-dummy-password")

ROLE_HIERARCHY = {
    models.Role.GUEST.value: 0,
    models.Role.USER.value: 1,
    models.Role.ADMIN.value: 2,
    models.Role.SUPER_ADMIN.value: 3,
}


class AuthError(Exception):
    """Authentication or authorisation failure.

    ``status_code`` is 401 for missing/invalid credentials and 403 for
    insufficient role.
    """

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def get_password_hash(password: str) -> str:
    return password_hash.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> tuple[bool, str | None]:
    """Returns (verified, updated hash when the stored one needs rehashing)."""
    return password_hash.verify_and_update(plain_password, hashed_password)


def has_role(user_role: str, required_role: str) -> bool:
    return ROLE_HIERARCHY.get(user_role, -1) >= ROLE_HIERARCHY.get(required_role, 99)


def create_access_token(user: models.User, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=settings.auth.token_expire_hours)
    )
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "exp": expire,
        "iss": settings.auth.issuer,
        "aud": settings.auth.audience,
    }
    return jwt.encode(payload, settings.auth.jwt_secret, algorithm=settings.auth.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a token.

    Raises:
        AuthError: If the token is expired, malformed or signed for someone else
    """
    try:
        return jwt.decode(
            token,
            settings.auth.jwt_secret,
            algorithms=[settings.auth.jwt_algorithm],
            issuer=settings.auth.issuer,
            audience=settings.auth.audience,
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthError("Invalid token") from e


async def get_user_by_email(session: AsyncSession, email: str) -> models.User | None:
    result = await session.execute(
        select(models.User).where(func.lower(models.User.email) == email.strip().lower())
    )
    return result.scalar_one_or_none()


async def authenticate(session: AsyncSession, email: str, password: str) -> models.User | None:
    user = await get_user_by_email(session, email)
    if user is None or user.is_guest:
        verify_password(password, DUMMY_HASH)
        return None

    verified, updated_hash = verify_password(password, user.password)
    if not verified:
        return None
    if updated_hash:
        user.password = updated_hash
    user.last_login_at = models.utcnow()
    await session.commit()
    return user
