"""FastAPI dependencies for authentication and tenant scoping."""

from __future__ import annotations

from collections.abc import Callable
from uuid import UUID

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.errors import (
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationFailed,
)
from agentsalud.logging_utils import set_organization_context, set_user_context
from agentsalud.models import Organization, Profile, UserRole
from agentsalud.security import decode_token
from agentsalud.services import system

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

ORG_MANAGER_ROLES = (UserRole.ADMIN, UserRole.SUPERADMIN)
CLINIC_ROLES = (UserRole.STAFF, UserRole.ADMIN, UserRole.SUPERADMIN)


def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Profile:
    """Resolve the bearer token into an active profile."""

    if not token:
        raise UnauthorizedError("Authentication required")
    payload = decode_token(token.strip().strip('"').strip("'"))
    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError as exc:
        raise UnauthorizedError("Invalid token subject") from exc

    user = db.get(Profile, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("User is not active")

    set_user_context(user.id)
    set_organization_context(user.organization_id)

    if user.role != UserRole.SUPERADMIN and system.get_config(db).maintenance_mode:
        raise ServiceUnavailableError("Platform is under maintenance")
    return user


def require_roles(*roles: UserRole) -> Callable[..., Profile]:
    """Dependency factory rejecting users whose role is not listed."""

    allowed = frozenset(roles)

    def _dependency(user: Profile = Depends(get_current_user)) -> Profile:
        if user.role not in allowed:
            raise ForbiddenError(
                "Insufficient permissions",
                details={
                    "userRole": user.role.value,
                    "requiredRoles": sorted(role.value for role in allowed),
                },
            )
        return user

    return _dependency


def ensure_organization_access(user: Profile, organization_id: UUID | None) -> None:
    """Non-superadmins may only act inside their own organization."""

    if user.role == UserRole.SUPERADMIN:
        return
    if organization_id is None or organization_id != user.organization_id:
        raise ForbiddenError(
            "Access to this organization is not allowed",
            details={"organizationId": str(organization_id) if organization_id else None},
        )


def resolve_organization_id(user: Profile, requested: UUID | None) -> UUID:
    """Pick the organization a request targets, defaulting to the caller's."""

    organization_id = requested or user.organization_id
    if organization_id is None:
        raise ValidationFailed(
            "organizationId is required", details={"field": "organizationId"}
        )
    ensure_organization_access(user, organization_id)
    return organization_id


def load_organization(db: Session, organization_id: UUID) -> Organization:
    organization = db.get(Organization, organization_id)
    if organization is None:
        raise NotFoundError(
            "Organization not found", details={"organizationId": str(organization_id)}
        )
    return organization
