"""FastAPI dependencies: sessions, request context and the current user."""
from __future__ import annotations

from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .audit import RequestContext
from .auth import AuthError, decode_access_token, has_role
from .config import settings
from .db import get_session, get_session_factory

SessionDep = Annotated[AsyncSession, Depends(get_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


def get_request_context(request: Request) -> RequestContext:
    return RequestContext.from_request(request)


ContextDep = Annotated[RequestContext, Depends(get_request_context)]


def get_token(request: Request) -> str | None:
    """Token from the auth cookie, falling back to ``Authorization: Bearer``."""
    token = request.cookies.get(settings.auth.cookie_name)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def _user_from_token(session: AsyncSession, token: str) -> models.User:
    payload = decode_access_token(token)
    user = await session.get(models.User, payload.get("sub"))
    if user is None:
        raise AuthError("User not found")
    return user


async def get_optional_user(request: Request, session: SessionDep) -> models.User | None:
    """Current user (guest included) or None; a bad token counts as anonymous."""
    token = get_token(request)
    if not token:
        return None
    try:
        return await _user_from_token(session, token)
    except AuthError:
        return None


async def get_current_user(request: Request, session: SessionDep) -> models.User:
    """Signed-in, non-guest user.

    Raises:
        AuthError: 401 when no valid token is present or the token belongs to a guest
    """
    token = get_token(request)
    if not token:
        raise AuthError("Authentication required")
    user = await _user_from_token(session, token)
    if user.is_guest:
        raise AuthError("Authentication required")
    return user


CurrentUser = Annotated[models.User, Depends(get_current_user)]
OptionalUser = Annotated[models.User | None, Depends(get_optional_user)]


def require_role(role: models.Role) -> Callable[[models.User], Awaitable[models.User]]:
    """Dependency factory rejecting users below ``role`` with 403."""

    async def checker(user: CurrentUser) -> models.User:
        if not has_role(user.role, role.value):
            raise AuthError("Insufficient permissions", status_code=403)
        return user

    return checker


AdminUser = Annotated[models.User, Depends(require_role(models.Role.ADMIN))]


async def get_document_owner(user: OptionalUser) -> models.User:
    """Signed-in user or guest; document routes accept both."""
    if user is None:
        raise AuthError("Authentication required")
    return user


DocumentOwner = Annotated[models.User, Depends(get_document_owner)]
