from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import (
    CLINIC_ROLES,
    ensure_organization_access,
    get_current_user,
    load_organization,
    require_roles,
    resolve_organization_id,
)
from agentsalud.models import Profile
from agentsalud.services import audit, availability, dates, doctors

router = APIRouter(prefix="/api/doctors", tags=["doctors"])


class DoctorServicesUpdate(BaseModel):
    service_ids: list[UUID] = Field(default_factory=list)


class ScheduleCreate(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str
    end_time: str
    location_id: UUID | None = None
    is_active: bool = True
    notes: str | None = Field(default=None, max_length=1000)


class ScheduleUpdate(BaseModel):
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: str | None = None
    end_time: str | None = None
    location_id: UUID | None = None
    is_active: bool | None = None
    notes: str | None = Field(default=None, max_length=1000)


@router.get("")
def list_doctors(
    organization_id: UUID | None = Query(default=None, alias="organizationId"),
    service_id: UUID | None = Query(default=None, alias="serviceId"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, organization_id)
    found = doctors.list_doctors(db, organization_id, service_id=service_id)
    return {"success": True, "data": [doctors.serialize_doctor(db, doctor) for doctor in found]}


@router.get("/availability")
def doctors_available_on(
    organization_id: UUID = Query(..., alias="organizationId"),
    target_date: str = Query(..., alias="date"),
    service_id: UUID | None = Query(default=None, alias="serviceId"),
    location_id: UUID | None = Query(default=None, alias="locationId"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    ensure_organization_access(user, organization_id)
    organization = load_organization(db, organization_id)
    day = dates.parse_iso_date(target_date)
    data = availability.available_doctors_on(
        db,
        organization=organization,
        target_date=day,
        role=user.role,
        service_id=service_id,
        location_id=location_id,
    )
    return {"success": True, "data": data, "date": day.isoformat()}


@router.get("/{doctor_id}")
def get_doctor(
    doctor_id: UUID,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    doctor = doctors.get_doctor(db, doctor_id)
    ensure_organization_access(user, doctor.organization_id)
    return {"success": True, "data": doctors.serialize_doctor(db, doctor)}


@router.put("/{doctor_id}/services")
def replace_services(
    doctor_id: UUID,
    payload: DoctorServicesUpdate,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    doctor = doctors.get_doctor(db, doctor_id)
    ensure_organization_access(user, doctor.organization_id)
    doctors.set_doctor_services(db, doctor, payload.service_ids)
    audit.record(
        db,
        action="doctor.services.replace",
        actor=user,
        organization_id=doctor.organization_id,
        resource=f"doctor:{doctor.id}",
        metadata={"serviceIds": [str(service_id) for service_id in payload.service_ids]},
    )
    return {"success": True, "data": doctors.serialize_doctor(db, doctor)}


@router.get("/{doctor_id}/schedule")
def get_schedule(
    doctor_id: UUID,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    doctor = doctors.get_doctor(db, doctor_id)
    ensure_organization_access(user, doctor.organization_id)
    blocks = doctors.list_schedule(db, doctor.id)
    return {"success": True, "data": [doctors.serialize_block(block) for block in blocks]}


@router.post("/{doctor_id}/schedule", status_code=status.HTTP_201_CREATED)
def create_schedule_block(
    doctor_id: UUID,
    payload: ScheduleCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    doctor = doctors.get_doctor(db, doctor_id)
    doctors.ensure_can_manage_schedule(user, doctor)
    block = doctors.create_block(
        db,
        doctor,
        day_of_week=payload.day_of_week,
        start=dates.parse_clock(payload.start_time, field="start_time"),
        end=dates.parse_clock(payload.end_time, field="end_time"),
        location_id=payload.location_id,
        is_active=payload.is_active,
        notes=payload.notes,
    )
    return {"success": True, "data": doctors.serialize_block(block)}


@router.put("/{doctor_id}/schedule/{schedule_id}")
def update_schedule_block(
    doctor_id: UUID,
    schedule_id: UUID,
    payload: ScheduleUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    doctor = doctors.get_doctor(db, doctor_id)
    doctors.ensure_can_manage_schedule(user, doctor)
    block = doctors.get_block(db, doctor, schedule_id)

    changes = payload.model_dump(exclude_unset=True)
    for name in ("start_time", "end_time"):
        if changes.get(name) is not None:
            changes[name] = dates.parse_clock(changes[name], field=name)
        else:
            changes.pop(name, None)
    for name in ("day_of_week", "is_active"):
        if name in changes and changes[name] is None:
            changes.pop(name)

    doctors.update_block(db, doctor, block, changes)
    return {"success": True, "data": doctors.serialize_block(block)}


@router.delete("/{doctor_id}/schedule/{schedule_id}")
def delete_schedule_block(
    doctor_id: UUID,
    schedule_id: UUID,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    doctor = doctors.get_doctor(db, doctor_id)
    doctors.ensure_can_manage_schedule(user, doctor)
    block = doctors.get_block(db, doctor, schedule_id)
    doctors.delete_block(db, block)
    return {"success": True, "data": {"id": str(schedule_id), "deleted": True}}
