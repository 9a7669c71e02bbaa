from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, EmailStr, Field, ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import get_current_user
from agentsalud.errors import (
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationFailed,
)
from agentsalud.models import Organization, Profile, UserRole
from agentsalud.security import create_access_token, verify_password
from agentsalud.services import accounts, dates, system

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    organization_slug: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=120)
    last_name: str = Field(..., min_length=1, max_length=120)
    phone: str | None = None


def serialize_user(user: Profile) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone": user.phone,
        "role": user.role.value,
        "organization_id": str(user.organization_id) if user.organization_id else None,
        "is_active": user.is_active,
        "last_sign_in_at": dates.ensure_utc(user.last_sign_in_at).isoformat()
        if user.last_sign_in_at
        else None,
    }


def issue_token(user: Profile) -> str:
    return create_access_token(
        str(user.id),
        {
            "role": user.role.value,
            "org": str(user.organization_id) if user.organization_id else None,
        },
    )


async def _read_credentials(request: Request) -> LoginRequest:
    """Accept the OAuth2 password form (``username``) or a JSON body (``email``)."""

    content_type = request.headers.get("content-type", "")
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return LoginRequest(
                email=str(form.get("username") or form.get("email") or ""),
                password=str(form.get("password") or ""),
            )
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise ValidationFailed("Invalid request payload") from exc
    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid request payload")
    try:
        return LoginRequest.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed(
            "Invalid request payload",
            details={
                "fields": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ]
            },
        ) from exc


@router.post("/login")
async def login(request: Request, db: Session = Depends(get_db)) -> dict[str, Any]:
    credentials = await _read_credentials(request)
    email = credentials.email.strip().lower()
    user = db.execute(
        select(Profile).where(func.lower(Profile.email) == email)
    ).scalar_one_or_none()
    if user is None or not verify_password(credentials.password, user.password_hash):
        logger.info("login failed", extra={"email": email})
        raise UnauthorizedError("Invalid email or password")
    if not user.is_active:
        raise UnauthorizedError("User is not active")

    user.last_sign_in_at = dates.utcnow()
    db.flush()
    logger.info("login succeeded", extra={"user_id": str(user.id)})
    return {
        "access_token": issue_token(user),
        "token_type": "bearer",
        "user": serialize_user(user),
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> dict[str, Any]:
    config = system.get_config(db)
    if config.maintenance_mode:
        raise ServiceUnavailableError("Platform is under maintenance")
    if not config.registration_enabled:
        raise ForbiddenError("Self registration is disabled", code="REGISTRATION_DISABLED")

    organization = db.execute(
        select(Organization).where(Organization.slug == payload.organization_slug.strip().lower())
    ).scalar_one_or_none()
    if organization is None or not organization.is_active:
        raise NotFoundError("Organization not found")

    user = accounts.create_profile(
        db,
        organization_id=organization.id,
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone=payload.phone,
        role=UserRole.PATIENT,
        password=payload.password,
    )
    logger.info(
        "patient registered",
        extra={"organization_id": str(organization.id), "user_id": str(user.id)},
    )
    return {
        "access_token": issue_token(user),
        "token_type": "bearer",
        "user": serialize_user(user),
    }


@router.get("/me")
def me(user: Profile = Depends(get_current_user)) -> dict[str, Any]:
    return {"success": True, "data": serialize_user(user)}
