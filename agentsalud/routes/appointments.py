from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import (
    ensure_organization_access,
    get_current_user,
    load_organization,
    resolve_organization_id,
)
from agentsalud.errors import ForbiddenError, ValidationFailed
from agentsalud.models import AppointmentOrigin, Profile, Service, UserRole
from agentsalud.services import (
    appointment_status,
    appointments,
    availability,
    dates,
    entity_extraction,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


class AppointmentCreate(BaseModel):
    """Manual booking fields, or a free-text ``message`` to interpret."""

    model_config = ConfigDict(populate_by_name=True)

    message: str | None = Field(default=None, max_length=1000)
    patient_id: UUID | None = Field(default=None, alias="patientId")
    doctor_id: UUID | None = Field(default=None, alias="doctorId")
    service_id: UUID | None = Field(default=None, alias="serviceId")
    location_id: UUID | None = Field(default=None, alias="locationId")
    organization_id: UUID | None = Field(default=None, alias="organizationId")
    appointment_date: str | None = Field(default=None, alias="appointmentDate")
    start_time: str | None = Field(default=None, alias="startTime")
    end_time: str | None = Field(default=None, alias="endTime")
    duration_minutes: int | None = Field(default=None, alias="durationMinutes", ge=5, le=480)
    reason: str | None = Field(default=None, max_length=1000)
    notes: str | None = Field(default=None, max_length=2000)


class StatusChange(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=1000)


class RescheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_date: str = Field(..., alias="appointmentDate")
    start_time: str = Field(..., alias="startTime")
    reason: str | None = Field(default=None, max_length=1000)


def _origin_for(user: Profile) -> AppointmentOrigin:
    if user.role == UserRole.PATIENT:
        return AppointmentOrigin.WEB
    return AppointmentOrigin.STAFF


@router.get("")
def list_appointments(
    organization_id: UUID | None = Query(default=None, alias="organizationId"),
    appointment_date: str | None = Query(default=None, alias="date"),
    status_filter: str | None = Query(default=None, alias="status"),
    doctor_id: UUID | None = Query(default=None, alias="doctorId"),
    patient_id: UUID | None = Query(default=None, alias="patientId"),
    limit: int = Query(default=50, ge=1, le=appointments.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if organization_id is not None:
        ensure_organization_access(user, organization_id)
    filters = appointments.AppointmentFilters(
        organization_id=organization_id,
        appointment_date=dates.parse_iso_date(appointment_date) if appointment_date else None,
        status=appointment_status.coerce_status(status_filter) if status_filter else None,
        doctor_id=doctor_id,
        patient_id=patient_id,
        limit=limit,
        offset=offset,
    )
    items, total = appointments.list_appointments(db, user, filters)
    return {
        "success": True,
        "data": [appointments.serialize_appointment(db, item) for item in items],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(items) < total,
        },
    }


@router.get("/availability")
def get_availability(
    organization_id: UUID = Query(..., alias="organizationId"),
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    service_id: UUID | None = Query(default=None, alias="serviceId"),
    doctor_id: UUID | None = Query(default=None, alias="doctorId"),
    location_id: UUID | None = Query(default=None, alias="locationId"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    ensure_organization_access(user, organization_id)
    organization = load_organization(db, organization_id)
    data = availability.compute_availability(
        db,
        organization=organization,
        start_date=dates.parse_iso_date(start_date, field="startDate"),
        end_date=dates.parse_iso_date(end_date, field="endDate"),
        role=user.role,
        service_id=service_id,
        doctor_id=doctor_id,
        location_id=location_id,
    )
    return {"success": True, "data": data}


def _interpret_message(
    db: Session, user: Profile, payload: AppointmentCreate
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, payload.organization_id)
    organization = load_organization(db, organization_id)
    services = [
        (str(service.id), service.name)
        for service in db.query(Service)
        .filter(Service.organization_id == organization_id, Service.is_active.is_(True))
        .all()
    ]
    entities = entity_extraction.extract(
        payload.message or "",
        today=dates.organization_today(organization),
        services=services,
    )
    suggestions: list[dict[str, Any]] = []
    if entities.intent in (
        entity_extraction.INTENT_BOOK,
        entity_extraction.INTENT_AVAILABILITY,
        entity_extraction.INTENT_RESCHEDULE,
    ):
        suggestions = availability.suggest_slots(
            db,
            organization=organization,
            role=user.role,
            target_date=entities.date,
            service_id=UUID(entities.service_id) if entities.service_id else None,
            preferred_time=entities.time,
            period=entities.period,
        )
    logger.info(
        "booking message interpreted",
        extra={"intent": entities.intent, "suggestions": len(suggestions)},
    )
    return {
        "success": True,
        "data": {**entities.as_dict(), "suggestedSlots": suggestions},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate,
    response: Response,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if payload.message:
        # Interpreting a message creates nothing.
        response.status_code = status.HTTP_200_OK
        return _interpret_message(db, user, payload)

    missing = [
        alias
        for alias, value in (
            ("patientId", payload.patient_id),
            ("doctorId", payload.doctor_id),
            ("appointmentDate", payload.appointment_date),
            ("startTime", payload.start_time),
        )
        if value is None
    ]
    if missing:
        raise ValidationFailed(
            "Missing required fields",
            details={"fields": [{"field": name, "message": "Field required"} for name in missing]},
        )
    organization_id = payload.organization_id
    if organization_id is not None:
        ensure_organization_access(user, organization_id)
    elif user.role != UserRole.SUPERADMIN:
        organization_id = user.organization_id

    request = appointments.BookingRequest(
        patient_id=payload.patient_id,
        doctor_id=payload.doctor_id,
        appointment_date=dates.parse_iso_date(payload.appointment_date, field="appointmentDate"),
        start_time=dates.parse_clock(payload.start_time, field="startTime"),
        service_id=payload.service_id,
        location_id=payload.location_id,
        end_time=dates.parse_clock(payload.end_time, field="endTime") if payload.end_time else None,
        duration_minutes=payload.duration_minutes,
        reason=payload.reason,
        notes=payload.notes,
        organization_id=organization_id,
        origin=_origin_for(user),
    )
    appointment = appointments.create_appointment(db, request, actor=user)
    return {"success": True, "data": appointments.serialize_appointment(db, appointment)}


@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: UUID,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    appointment = appointments.get_visible_appointment(db, user, appointment_id)
    return {"success": True, "data": appointments.serialize_appointment(db, appointment)}


@router.patch("/{appointment_id}/status")
def change_status(
    appointment_id: UUID,
    payload: StatusChange,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    appointment = appointments.get_visible_appointment(db, user, appointment_id)
    target = appointment_status.coerce_status(payload.status)
    appointments.update_status(db, appointment, target, actor=user, reason=payload.reason)
    return {"success": True, "data": appointments.serialize_appointment(db, appointment)}


@router.get("/{appointment_id}/transitions")
def list_transitions(
    appointment_id: UUID,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    appointment = appointments.get_visible_appointment(db, user, appointment_id)
    transitions = appointment_status.get_available_transitions(appointment.status, user.role)
    return {
        "success": True,
        "data": {
            "currentStatus": appointment.status.value,
            "isFinal": appointment_status.is_final(appointment.status),
            "transitions": [
                {
                    "status": target.value,
                    "label": appointment_status.STATUS_CONFIGS[target].label,
                }
                for target in transitions
            ],
        },
    }


@router.get("/{appointment_id}/history")
def status_history(
    appointment_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if user.role.value not in appointment_status.HISTORY_VIEWER_ROLES:
        raise ForbiddenError("Patients cannot view the audit trail")
    appointment = appointments.get_visible_appointment(db, user, appointment_id)
    history = appointment_status.list_history(db, appointment.id, limit=limit)
    return {
        "success": True,
        "data": [appointment_status.serialize_history(entry) for entry in history],
    }


@router.patch("/{appointment_id}/reschedule")
def reschedule(
    appointment_id: UUID,
    payload: RescheduleRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    appointment = appointments.get_visible_appointment(db, user, appointment_id)
    appointments.reschedule_appointment(
        db,
        appointment,
        actor=user,
        new_date=dates.parse_iso_date(payload.appointment_date, field="appointmentDate"),
        new_start=dates.parse_clock(payload.start_time, field="startTime"),
        reason=payload.reason,
    )
    return {"success": True, "data": appointments.serialize_appointment(db, appointment)}
