"""Platform administration: organizations, users and system settings."""

from __future__ import annotations

import logging
import re
from typing import Any, Literal
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import require_roles
from agentsalud.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from agentsalud.models import Appointment, Organization, Profile, SubscriptionPlan, UserRole
from agentsalud.routes.auth import serialize_user
from agentsalud.security import generate_temporary_password
from agentsalud.services import accounts, audit, booking_settings, system

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/superadmin", tags=["superadmin"])

require_superadmin = require_roles(UserRole.SUPERADMIN)

SLUG_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    website: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    email: EmailStr | None = None
    address: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=120)
    country: str | None = Field(default=None, max_length=120)
    timezone: str | None = Field(default=None, max_length=64)
    subscription_plan: SubscriptionPlan = SubscriptionPlan.BASIC
    admin_first_name: str | None = Field(default=None, max_length=120)
    admin_last_name: str | None = Field(default=None, max_length=120)
    admin_email: EmailStr | None = None
    admin_phone: str | None = Field(default=None, max_length=32)


class OrganizationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    slug: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    website: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    email: EmailStr | None = None
    address: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=120)
    country: str | None = Field(default=None, max_length=120)
    timezone: str | None = Field(default=None, max_length=64)
    subscription_plan: SubscriptionPlan | None = None
    is_active: bool | None = None


class UserUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=120)
    last_name: str | None = Field(default=None, min_length=1, max_length=120)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    role: UserRole | None = None
    organization_id: UUID | None = None
    is_active: bool | None = None


class UserAction(BaseModel):
    action: Literal["activate", "deactivate"]


class BulkUserAction(BaseModel):
    action: Literal["activate", "deactivate", "delete"]
    user_ids: list[UUID] = Field(..., min_length=1, max_length=500, alias="userIds")


class SystemConfigUpdate(BaseModel):
    maintenance_mode: bool | None = None
    registration_enabled: bool | None = None
    email_notifications: bool | None = None
    backup_frequency: Literal["hourly", "daily", "weekly"] | None = None
    max_organizations: int | None = Field(default=None, ge=1, le=100_000)
    max_users_per_org: int | None = Field(default=None, ge=1, le=1_000_000)
    session_timeout: int | None = Field(default=None, ge=5, le=1440)


def _validate_slug(slug: str) -> str:
    slug = slug.strip()
    if not SLUG_RE.match(slug):
        raise ValidationFailed(
            "Slug must contain lowercase letters, numbers and single hyphens",
            details={"field": "slug", "value": slug},
        )
    return slug


def _validate_timezone(name: str) -> str:
    name = name.strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailed(
            "Unknown timezone",
            details={"field": "timezone", "value": name},
        ) from None
    return name


def _ensure_slug_available(db: Session, slug: str, *, exclude_id: UUID | None = None) -> None:
    stmt = select(Organization.id).where(Organization.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(Organization.id != exclude_id)
    if db.execute(stmt).first() is not None:
        raise ConflictError("Organization slug already exists", details={"slug": slug})


def _counts_by_organization(db: Session, column: Any, organization_ids: list[UUID]) -> dict[UUID, int]:
    if not organization_ids:
        return {}
    rows = db.execute(
        select(column, func.count()).where(column.in_(organization_ids)).group_by(column)
    ).all()
    return {organization_id: int(count) for organization_id, count in rows}


def serialize_organization(
    organization: Organization, *, user_count: int = 0, appointment_count: int = 0
) -> dict[str, Any]:
    return {
        "id": str(organization.id),
        "name": organization.name,
        "slug": organization.slug,
        "description": organization.description,
        "website": organization.website,
        "phone": organization.phone,
        "email": organization.email,
        "address": organization.address,
        "city": organization.city,
        "country": organization.country,
        "timezone": organization.timezone,
        "subscription_plan": organization.subscription_plan.value,
        "is_active": organization.is_active,
        "created_at": organization.created_at.isoformat() if organization.created_at else None,
        "user_count": user_count,
        "appointment_count": appointment_count,
    }


def _get_organization(db: Session, organization_id: UUID) -> Organization:
    organization = db.get(Organization, organization_id)
    if organization is None:
        raise NotFoundError("Organization not found", details={"organizationId": str(organization_id)})
    return organization


def _organization_detail(db: Session, organization: Organization) -> dict[str, Any]:
    users = _counts_by_organization(db, Profile.organization_id, [organization.id])
    appointments = _counts_by_organization(db, Appointment.organization_id, [organization.id])
    return serialize_organization(
        organization,
        user_count=users.get(organization.id, 0),
        appointment_count=appointments.get(organization.id, 0),
    )


@router.get("/organizations")
def list_organizations(
    status_filter: Literal["active", "inactive"] | None = Query(default=None, alias="status"),
    plan: SubscriptionPlan | None = Query(default=None),
    search: str | None = Query(default=None, max_length=120),
    limit: int = Query(default=50, ge=1, le=200),
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    stmt = select(Organization)
    if status_filter is not None:
        stmt = stmt.where(Organization.is_active.is_(status_filter == "active"))
    if plan is not None:
        stmt = stmt.where(Organization.subscription_plan == plan)
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Organization.name).like(pattern),
                func.lower(Organization.slug).like(pattern),
                func.lower(Organization.email).like(pattern),
            )
        )
    organizations = (
        db.execute(stmt.order_by(Organization.created_at.desc()).limit(limit)).scalars().all()
    )
    ids = [organization.id for organization in organizations]
    users = _counts_by_organization(db, Profile.organization_id, ids)
    appointments = _counts_by_organization(db, Appointment.organization_id, ids)
    return {
        "success": True,
        "data": [
            serialize_organization(
                organization,
                user_count=users.get(organization.id, 0),
                appointment_count=appointments.get(organization.id, 0),
            )
            for organization in organizations
        ],
    }


@router.post("/organizations", status_code=status.HTTP_201_CREATED)
def create_organization(
    payload: OrganizationCreate,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    slug = _validate_slug(payload.slug)
    if payload.timezone is not None:
        payload.timezone = _validate_timezone(payload.timezone)

    admin_fields = (payload.admin_first_name, payload.admin_last_name, payload.admin_email)
    wants_admin = any(admin_fields)
    if wants_admin and not all(admin_fields):
        raise ValidationFailed(
            "Admin first name, last name, and email are required when creating admin user",
            details={
                "fields": [
                    {"field": name, "message": "Field required"}
                    for name, value in zip(("admin_first_name", "admin_last_name", "admin_email"), admin_fields)
                    if not value
                ]
            },
        )

    config = system.get_config(db)
    total = db.execute(select(func.count(Organization.id))).scalar_one()
    if total >= config.max_organizations:
        raise ConflictError(
            "Maximum number of organizations reached",
            details={"maxOrganizations": config.max_organizations},
        )
    _ensure_slug_available(db, slug)
    if wants_admin:
        accounts.ensure_email_available(db, payload.admin_email)

    values = payload.model_dump(
        exclude={"slug", "admin_first_name", "admin_last_name", "admin_email", "admin_phone"},
        exclude_none=True,
    )
    organization = Organization(slug=slug, is_active=True, **values)
    db.add(organization)
    db.flush()

    admin_user: dict[str, Any] | None = None
    if wants_admin:
        temporary_password = generate_temporary_password()
        admin = accounts.create_profile(
            db,
            organization_id=organization.id,
            email=payload.admin_email,
            first_name=payload.admin_first_name,
            last_name=payload.admin_last_name,
            phone=payload.admin_phone,
            role=UserRole.ADMIN,
            password=temporary_password,
        )
        admin_user = {
            "id": str(admin.id),
            "email": admin.email,
            "first_name": admin.first_name,
            "last_name": admin.last_name,
            "temporary_password": temporary_password,
        }

    audit.record(
        db,
        action="organization.create",
        actor=user,
        organization_id=organization.id,
        resource=f"organization:{organization.id}",
        metadata={"slug": slug, "withAdmin": wants_admin},
    )
    return {
        "success": True,
        "data": {
            "organization": _organization_detail(db, organization),
            "admin_user": admin_user,
        },
        "message": "Organization and admin user created successfully"
        if admin_user
        else "Organization created successfully",
    }


@router.get("/organizations/{organization_id}")
def get_organization(
    organization_id: UUID,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization = _get_organization(db, organization_id)
    data = _organization_detail(db, organization)
    data["booking_settings"] = booking_settings.from_organization(organization).model_dump()
    return {"success": True, "data": data}


@router.put("/organizations/{organization_id}")
def update_organization(
    organization_id: UUID,
    payload: OrganizationUpdate,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization = _get_organization(db, organization_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "slug" in changes:
        changes["slug"] = _validate_slug(changes["slug"])
        _ensure_slug_available(db, changes["slug"], exclude_id=organization.id)
    if "timezone" in changes:
        changes["timezone"] = _validate_timezone(changes["timezone"])
    for name, value in changes.items():
        setattr(organization, name, value)
    db.flush()
    audit.record(
        db,
        action="organization.update",
        actor=user,
        organization_id=organization.id,
        resource=f"organization:{organization.id}",
        metadata={"changes": sorted(changes)},
    )
    return {"success": True, "data": _organization_detail(db, organization)}


@router.delete("/organizations/{organization_id}")
def deactivate_organization(
    organization_id: UUID,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization = _get_organization(db, organization_id)
    organization.is_active = False
    db.flush()
    audit.record(
        db,
        action="organization.deactivate",
        actor=user,
        organization_id=organization.id,
        resource=f"organization:{organization.id}",
    )
    logger.info("organization deactivated", extra={"organization_id": str(organization.id)})
    return {"success": True, "data": _organization_detail(db, organization)}


def _serialize_admin_user(
    user: Profile, organizations: dict[UUID, Organization], appointment_counts: dict[UUID, int]
) -> dict[str, Any]:
    organization = organizations.get(user.organization_id) if user.organization_id else None
    return {
        **serialize_user(user),
        "organization": {
            "id": str(organization.id),
            "name": organization.name,
            "slug": organization.slug,
        }
        if organization
        else None,
        "appointment_count": appointment_counts.get(user.id, 0),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _user_details(db: Session, users: list[Profile]) -> list[dict[str, Any]]:
    organization_ids = {user.organization_id for user in users if user.organization_id}
    organizations: dict[UUID, Organization] = {}
    if organization_ids:
        organizations = {
            organization.id: organization
            for organization in db.execute(
                select(Organization).where(Organization.id.in_(organization_ids))
            ).scalars()
        }
    appointment_counts: dict[UUID, int] = {}
    if users:
        rows = db.execute(
            select(Appointment.patient_id, func.count(Appointment.id))
            .where(Appointment.patient_id.in_([user.id for user in users]))
            .group_by(Appointment.patient_id)
        ).all()
        appointment_counts = {patient_id: int(count) for patient_id, count in rows}
    return [_serialize_admin_user(user, organizations, appointment_counts) for user in users]


def _get_user(db: Session, user_id: UUID) -> Profile:
    target = db.get(Profile, user_id)
    if target is None:
        raise NotFoundError("User not found", details={"userId": str(user_id)})
    return target


def _protect_superadmin(target: Profile, action: str) -> None:
    if target.role == UserRole.SUPERADMIN:
        raise ForbiddenError(
            f"Superadmin accounts cannot be {action} from the admin panel",
            details={"userId": str(target.id)},
        )


@router.get("/users")
def list_users(
    role: UserRole | None = Query(default=None),
    organization: UUID | None = Query(default=None),
    status_filter: Literal["active", "inactive"] | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=120),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    stmt = select(Profile)
    if role is not None:
        stmt = stmt.where(Profile.role == role)
    if organization is not None:
        stmt = stmt.where(Profile.organization_id == organization)
    if status_filter is not None:
        stmt = stmt.where(Profile.is_active.is_(status_filter == "active"))
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Profile.first_name).like(pattern),
                func.lower(Profile.last_name).like(pattern),
                func.lower(Profile.email).like(pattern),
            )
        )
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    users = list(
        db.execute(stmt.order_by(Profile.created_at.desc()).limit(limit).offset(offset))
        .scalars()
        .all()
    )
    return {
        "success": True,
        "data": _user_details(db, users),
        "pagination": {
            "total": int(total),
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(users) < total,
        },
    }


@router.patch("/users/bulk")
def bulk_user_action(
    payload: BulkUserAction,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    targets = list(
        db.execute(select(Profile).where(Profile.id.in_(payload.user_ids))).scalars().all()
    )
    found = {target.id for target in targets}
    missing = [str(user_id) for user_id in payload.user_ids if user_id not in found]
    if missing:
        raise NotFoundError("Users not found", details={"userIds": missing})
    if payload.action != "activate":
        protected = [str(target.id) for target in targets if target.role == UserRole.SUPERADMIN]
        if protected:
            raise ForbiddenError(
                "Superadmin accounts cannot be modified in bulk",
                details={"userIds": protected},
            )

    active = payload.action == "activate"
    for target in targets:
        target.is_active = active
    db.flush()
    audit.record(
        db,
        action=f"user.bulk_{payload.action}",
        actor=user,
        resource="profiles",
        metadata={"userIds": sorted(str(target.id) for target in targets)},
    )
    return {
        "success": True,
        "data": {"action": payload.action, "updated": len(targets)},
    }


@router.get("/users/{user_id}")
def get_user(
    user_id: UUID,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    target = _get_user(db, user_id)
    return {"success": True, "data": _user_details(db, [target])[0]}


@router.put("/users/{user_id}")
def update_user(
    user_id: UUID,
    payload: UserUpdate,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    target = _get_user(db, user_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if changes.get("is_active") is False or (
        "role" in changes and changes["role"] != UserRole.SUPERADMIN
    ):
        _protect_superadmin(target, "deactivated or demoted")
    if "email" in changes:
        accounts.ensure_email_available(db, changes["email"], exclude_id=target.id)
        changes["email"] = accounts.normalize_email(changes["email"])
    if "organization_id" in changes:
        _get_organization(db, changes["organization_id"])
    for name, value in changes.items():
        setattr(target, name, value)
    db.flush()
    audit.record(
        db,
        action="user.update",
        actor=user,
        organization_id=target.organization_id,
        resource=f"profile:{target.id}",
        metadata={"changes": sorted(changes)},
    )
    return {"success": True, "data": _user_details(db, [target])[0]}


@router.patch("/users/{user_id}")
def user_action(
    user_id: UUID,
    payload: UserAction,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    target = _get_user(db, user_id)
    if payload.action == "deactivate":
        _protect_superadmin(target, "deactivated")
    target.is_active = payload.action == "activate"
    db.flush()
    audit.record(
        db,
        action=f"user.{payload.action}",
        actor=user,
        organization_id=target.organization_id,
        resource=f"profile:{target.id}",
    )
    return {"success": True, "data": _user_details(db, [target])[0]}


@router.delete("/users/{user_id}")
def delete_user(
    user_id: UUID,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    target = _get_user(db, user_id)
    _protect_superadmin(target, "deleted")
    # Profiles are deactivated, never removed, so appointment history stays intact.
    target.is_active = False
    db.flush()
    audit.record(
        db,
        action="user.delete",
        actor=user,
        organization_id=target.organization_id,
        resource=f"profile:{target.id}",
    )
    return {"success": True, "data": {"id": str(target.id), "deleted": True}}


@router.get("/system/health")
def system_health(
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return {"success": True, "data": system.collect_health(db)}


@router.post("/system/health")
def run_health_check(
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    report = system.collect_health(db)
    audit.record(
        db,
        action="system.health_check",
        actor=user,
        resource="system",
        metadata={
            "status": report["status"],
            "database": report["database"]["status"],
            "redis": report["redis"]["status"],
        },
    )
    return {"success": True, "data": report}


@router.get("/system/config")
def get_system_config(
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return {"success": True, "data": system.serialize_config(system.get_config(db))}


@router.put("/system/config")
def update_system_config(
    payload: SystemConfigUpdate,
    user: Profile = Depends(require_superadmin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    config = system.update_config(db, changes)
    audit.record(
        db,
        action="system.config_update",
        actor=user,
        resource="system_config",
        metadata={"changes": changes},
    )
    return {"success": True, "data": system.serialize_config(config)}
