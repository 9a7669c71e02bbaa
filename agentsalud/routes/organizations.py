from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import (
    ORG_MANAGER_ROLES,
    ensure_organization_access,
    load_organization,
    require_roles,
)
from agentsalud.errors import ValidationFailed
from agentsalud.models import Profile
from agentsalud.services import audit, booking_settings

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


@router.get("/{organization_id}/booking-settings")
def get_booking_settings(
    organization_id: UUID,
    user: Profile = Depends(require_roles(*ORG_MANAGER_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    ensure_organization_access(user, organization_id)
    organization = load_organization(db, organization_id)
    current = booking_settings.get_booking_settings(db, organization)
    return {"success": True, "data": current.model_dump()}


@router.put("/{organization_id}/booking-settings")
def update_booking_settings(
    organization_id: UUID,
    payload: dict[str, Any] = Body(...),
    user: Profile = Depends(require_roles(*ORG_MANAGER_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    ensure_organization_access(user, organization_id)
    organization = load_organization(db, organization_id)

    known = set(booking_settings.BookingSettings.model_fields)
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValidationFailed(
            "Unknown booking settings",
            details={"fields": [{"field": name, "message": "Unknown setting"} for name in unknown]},
        )

    updated = booking_settings.update_booking_settings(db, organization, payload)
    audit.record(
        db,
        action="booking_settings.update",
        actor=user,
        organization_id=organization.id,
        resource=f"organization:{organization.id}",
        metadata={"changes": sorted(payload)},
    )
    return {"success": True, "data": updated.model_dump()}
