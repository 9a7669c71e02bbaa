"""Services and locations offered by an organization."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import (
    CLINIC_ROLES,
    ensure_organization_access,
    get_current_user,
    require_roles,
    resolve_organization_id,
)
from agentsalud.errors import NotFoundError
from agentsalud.models import Location, Profile, Service
from agentsalud.services import audit, doctors

logger = logging.getLogger(__name__)

router = APIRouter(tags=["catalog"])


class ServiceCreate(BaseModel):
    organization_id: UUID | None = None
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    category: str | None = Field(default=None, max_length=120)
    duration_minutes: int = Field(default=30, ge=5, le=480)
    price_cents: int = Field(default=0, ge=0)
    is_active: bool = True


class ServiceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: str | None = Field(default=None, max_length=120)
    duration_minutes: int | None = Field(default=None, ge=5, le=480)
    price_cents: int | None = Field(default=None, ge=0)
    is_active: bool | None = None


class LocationCreate(BaseModel):
    organization_id: UUID | None = None
    name: str = Field(..., min_length=1, max_length=255)
    address: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    is_active: bool = True


class LocationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    address: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    is_active: bool | None = None


def serialize_service(service: Service) -> dict[str, Any]:
    return {
        "id": str(service.id),
        "organization_id": str(service.organization_id),
        "name": service.name,
        "description": service.description,
        "category": service.category,
        "duration_minutes": service.duration_minutes,
        "price_cents": service.price_cents,
        "price": service.price_cents / 100,
        "is_active": service.is_active,
    }


def serialize_location(location: Location) -> dict[str, Any]:
    return {
        "id": str(location.id),
        "organization_id": str(location.organization_id),
        "name": location.name,
        "address": location.address,
        "phone": location.phone,
        "is_active": location.is_active,
    }


def _load(db: Session, model: type, entity_id: UUID, label: str) -> Any:
    entity = db.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{label} not found", details={"id": str(entity_id)})
    return entity


def _apply(entity: Any, changes: dict[str, Any]) -> None:
    for name, value in changes.items():
        if value is not None:
            setattr(entity, name, value)


@router.get("/api/services")
def list_services(
    organization_id: UUID | None = Query(default=None, alias="organizationId"),
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, organization_id)
    stmt = select(Service).where(Service.organization_id == organization_id)
    if not include_inactive:
        stmt = stmt.where(Service.is_active.is_(True))
    services = db.execute(stmt.order_by(Service.name)).scalars().all()
    return {"success": True, "data": [serialize_service(service) for service in services]}


@router.post("/api/services", status_code=status.HTTP_201_CREATED)
def create_service(
    payload: ServiceCreate,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, payload.organization_id)
    service = Service(organization_id=organization_id, **payload.model_dump(exclude={"organization_id"}))
    db.add(service)
    db.flush()
    audit.record(
        db,
        action="service.create",
        actor=user,
        organization_id=organization_id,
        resource=f"service:{service.id}",
    )
    return {"success": True, "data": serialize_service(service)}


@router.put("/api/services/{service_id}")
def update_service(
    service_id: UUID,
    payload: ServiceUpdate,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    service = _load(db, Service, service_id, "Service")
    ensure_organization_access(user, service.organization_id)
    _apply(service, payload.model_dump(exclude_unset=True))
    db.flush()
    return {"success": True, "data": serialize_service(service)}


@router.delete("/api/services/{service_id}")
def deactivate_service(
    service_id: UUID,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    service = _load(db, Service, service_id, "Service")
    ensure_organization_access(user, service.organization_id)
    service.is_active = False
    db.flush()
    audit.record(
        db,
        action="service.deactivate",
        actor=user,
        organization_id=service.organization_id,
        resource=f"service:{service.id}",
    )
    return {"success": True, "data": serialize_service(service)}


@router.get("/api/services/{service_id}/doctors")
def service_doctors(
    service_id: UUID,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    service = _load(db, Service, service_id, "Service")
    ensure_organization_access(user, service.organization_id)
    found = doctors.list_doctors(db, service.organization_id, service_id=service.id)
    return {"success": True, "data": [doctors.serialize_doctor(db, doctor) for doctor in found]}


@router.get("/api/locations")
def list_locations(
    organization_id: UUID | None = Query(default=None, alias="organizationId"),
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, organization_id)
    stmt = select(Location).where(Location.organization_id == organization_id)
    if not include_inactive:
        stmt = stmt.where(Location.is_active.is_(True))
    locations = db.execute(stmt.order_by(Location.name)).scalars().all()
    return {"success": True, "data": [serialize_location(location) for location in locations]}


@router.post("/api/locations", status_code=status.HTTP_201_CREATED)
def create_location(
    payload: LocationCreate,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, payload.organization_id)
    location = Location(organization_id=organization_id, **payload.model_dump(exclude={"organization_id"}))
    db.add(location)
    db.flush()
    return {"success": True, "data": serialize_location(location)}


@router.put("/api/locations/{location_id}")
def update_location(
    location_id: UUID,
    payload: LocationUpdate,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    location = _load(db, Location, location_id, "Location")
    ensure_organization_access(user, location.organization_id)
    _apply(location, payload.model_dump(exclude_unset=True))
    db.flush()
    return {"success": True, "data": serialize_location(location)}


@router.delete("/api/locations/{location_id}")
def deactivate_location(
    location_id: UUID,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    location = _load(db, Location, location_id, "Location")
    ensure_organization_access(user, location.organization_id)
    location.is_active = False
    db.flush()
    return {"success": True, "data": serialize_location(location)}
