"""Registration, login and session cookie endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Response, status
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from .. import models
from ..audit import record_audit
from ..auth import AuthError, authenticate, create_access_token, get_password_hash
from ..config import settings
from ..deps import ContextDep, CurrentUser, OptionalUser, SessionDep
from ..notifications import email_service
from ..pipelines.cleanup import convert_guest_to_user
from ..schemas import AuthResponse, LoginRequest, RegisterRequest, UserDTO
from ..security import security

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        settings.auth.cookie_name,
        token,
        max_age=settings.auth.token_expire_hours * 3600,
        httponly=True,
        secure=settings.auth.cookie_secure or settings.is_production,
        samesite="strict",
        path="/",
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    response: Response,
    session: SessionDep,
    context: ContextDep,
    current: OptionalUser,
) -> AuthResponse:
    """Create an account, or convert the current guest into one.

    A guest keeps every document uploaded before signing up.
    """
    result = await session.execute(
        select(models.User).where(
            or_(models.User.email == body.email, models.User.vat_number == body.vat_number)
        )
    )
    existing = result.scalars().first()
    if existing is not None:
        if existing.email == body.email:
            raise HTTPException(status.HTTP_409_CONFLICT, "User with this email already exists")
        raise HTTPException(status.HTTP_409_CONFLICT, "User with this VAT number already exists")

    converted = current is not None and current.is_guest
    if converted:
        user = await convert_guest_to_user(
            session,
            current.id,
            email=body.email,
            password=body.password,
            business_name=body.business_name,
            vat_number=body.vat_number,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
        )
        record_audit(
            session,
            user_id=user.id,
            action="GUEST_CONVERTED_TO_USER",
            entity_type="User",
            entity_id=user.id,
            context=context,
            metadata={"business_name": user.business_name},
        )
    else:
        user = models.User(
            email=body.email,
            password=get_password_hash(body.password),
            role=models.Role.USER.value,
            business_name=body.business_name,
            vat_number=body.vat_number,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
        )
        session.add(user)
        await session.flush()

    record_audit(
        session,
        user_id=user.id,
        action="REGISTER",
        entity_type="User",
        entity_id=user.id,
        context=context,
        metadata={
            "business_name": user.business_name,
            "vat_number": user.vat_number,
            "converted_from_guest": converted,
        },
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status.HTTP_409_CONFLICT, "User with this email or VAT number already exists")

    set_auth_cookie(response, create_access_token(user))
    await email_service.send_welcome(user, converted_from_guest=converted)
    logger.info(f"Registered user {user.id} (converted from guest: {converted})")

    return AuthResponse(
        message="User registered successfully",
        user=UserDTO.model_validate(user),
        converted_from_guest=converted,
    )


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    response: Response,
    session: SessionDep,
    context: ContextDep,
) -> AuthResponse:
    limit = security.check_rate_limit(f"login:{context.ip}")
    if not limit.allowed:
        raise HTTPException(status.HTTP_429_TOO_MANY_REQUESTS, "Too many login attempts, please try again later")

    user = await authenticate(session, body.email, body.password)
    if user is None:
        logger.info(f"Failed login from {context.ip}")
        raise AuthError("Invalid email or password")

    record_audit(
        session,
        user_id=user.id,
        action="LOGIN",
        entity_type="User",
        entity_id=user.id,
        context=context,
    )
    await session.commit()

    set_auth_cookie(response, create_access_token(user))
    return AuthResponse(message="Login successful", user=UserDTO.model_validate(user))


@router.post("/logout")
async def logout(response: Response) -> dict:
    response.delete_cookie(settings.auth.cookie_name, path="/")
    return {"success": True, "message": "Logged out"}


@router.get("/me", response_model=UserDTO)
async def me(user: CurrentUser) -> UserDTO:
    return UserDTO.model_validate(user)
