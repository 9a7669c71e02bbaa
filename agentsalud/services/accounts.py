"""Profile creation shared by registration, clinic staff and the superadmin panel."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from agentsalud.errors import ConflictError
from agentsalud.models import Profile, UserRole
from agentsalud.security import hash_password
from agentsalud.services import system

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def email_taken(db: Session, email: str, *, exclude_id: UUID | None = None) -> bool:
    stmt = select(Profile.id).where(func.lower(Profile.email) == normalize_email(email))
    if exclude_id is not None:
        stmt = stmt.where(Profile.id != exclude_id)
    return db.execute(stmt).first() is not None


def ensure_email_available(db: Session, email: str, *, exclude_id: UUID | None = None) -> None:
    if email_taken(db, email, exclude_id=exclude_id):
        raise ConflictError("Email already registered", details={"email": normalize_email(email)})


def ensure_capacity(db: Session, organization_id: UUID) -> None:
    """Reject new members once ``max_users_per_org`` is reached."""

    limit = system.get_config(db).max_users_per_org
    members = db.execute(
        select(func.count(Profile.id)).where(Profile.organization_id == organization_id)
    ).scalar_one()
    if members >= limit:
        raise ConflictError(
            "Organization reached its user limit",
            details={"maxUsersPerOrg": limit, "organizationId": str(organization_id)},
        )


def create_profile(
    db: Session,
    *,
    organization_id: UUID | None,
    email: str,
    first_name: str,
    last_name: str,
    role: UserRole,
    phone: str | None = None,
    password: str | None = None,
) -> Profile:
    ensure_email_available(db, email)
    if organization_id is not None:
        ensure_capacity(db, organization_id)
    profile = Profile(
        organization_id=organization_id,
        email=normalize_email(email),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        phone=phone,
        role=role,
        password_hash=hash_password(password) if password else None,
    )
    db.add(profile)
    db.flush()
    logger.info(
        "profile created",
        extra={
            "user_id": str(profile.id),
            "role": role.value,
            "organization_id": str(organization_id) if organization_id else None,
        },
    )
    return profile
