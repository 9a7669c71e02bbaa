"""Doctor catalog: service assignment and weekly schedule blocks."""

from __future__ import annotations

import logging
from datetime import time
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from agentsalud.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from agentsalud.models import (
    Doctor,
    DoctorAvailability,
    DoctorService,
    Location,
    Profile,
    Service,
    UserRole,
)
from agentsalud.services import dates

logger = logging.getLogger(__name__)

DAY_NAMES = ("Domingo", "Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado")


def get_doctor(db: Session, doctor_id: UUID) -> Doctor:
    doctor = db.get(Doctor, doctor_id)
    if doctor is None:
        raise NotFoundError("Doctor not found", details={"doctorId": str(doctor_id)})
    return doctor


def ensure_can_manage_schedule(user: Profile, doctor: Doctor) -> None:
    """Clinic managers of the doctor's organization, or the doctor themselves."""

    if user.role == UserRole.SUPERADMIN:
        return
    if user.role == UserRole.DOCTOR:
        if doctor.profile_id != user.id:
            raise ForbiddenError("Doctors can only manage their own schedule")
        return
    if user.role not in (UserRole.STAFF, UserRole.ADMIN):
        raise ForbiddenError("Insufficient permissions", details={"userRole": user.role.value})
    if doctor.organization_id != user.organization_id:
        raise ForbiddenError(
            "Access to this organization is not allowed",
            details={"organizationId": str(doctor.organization_id)},
        )


def service_ids_for(db: Session, doctor_id: UUID) -> list[UUID]:
    return list(
        db.execute(select(DoctorService.service_id).where(DoctorService.doctor_id == doctor_id))
        .scalars()
        .all()
    )


def serialize_doctor(db: Session, doctor: Doctor) -> dict[str, Any]:
    profile = doctor.profile
    return {
        "id": str(doctor.id),
        "profile_id": str(doctor.profile_id),
        "organization_id": str(doctor.organization_id),
        "name": doctor.display_name,
        "first_name": profile.first_name if profile else None,
        "last_name": profile.last_name if profile else None,
        "email": profile.email if profile else None,
        "phone": profile.phone if profile else None,
        "specialization": doctor.specialization,
        "license_number": doctor.license_number,
        "is_available": doctor.is_available,
        "service_ids": [str(service_id) for service_id in service_ids_for(db, doctor.id)],
    }


def list_doctors(
    db: Session, organization_id: UUID, *, service_id: UUID | None = None
) -> list[Doctor]:
    stmt = (
        select(Doctor)
        .join(Profile, Profile.id == Doctor.profile_id)
        .where(Doctor.organization_id == organization_id, Profile.is_active.is_(True))
    )
    if service_id is not None:
        stmt = (
            stmt.join(DoctorService, DoctorService.doctor_id == Doctor.id)
            .join(Service, Service.id == DoctorService.service_id)
            .where(Service.id == service_id, Service.organization_id == organization_id)
        )
    stmt = stmt.order_by(Profile.last_name, Profile.first_name)
    return list(db.execute(stmt).unique().scalars().all())


def set_doctor_services(db: Session, doctor: Doctor, service_ids: list[UUID]) -> list[UUID]:
    """Replace the doctor's service set.

    Every service must exist and belong to the doctor's organization;
    nothing changes when one of them does not.
    """

    wanted = list(dict.fromkeys(service_ids))
    if wanted:
        found = {
            service.id: service
            for service in db.execute(select(Service).where(Service.id.in_(wanted))).scalars()
        }
        missing = [str(service_id) for service_id in wanted if service_id not in found]
        if missing:
            raise NotFoundError("Service not found", details={"serviceIds": missing})
        foreign = [
            str(service.id)
            for service in found.values()
            if service.organization_id != doctor.organization_id
        ]
        if foreign:
            raise ValidationFailed(
                "Services must belong to the doctor's organization",
                details={"serviceIds": foreign, "organizationId": str(doctor.organization_id)},
            )

    db.execute(delete(DoctorService).where(DoctorService.doctor_id == doctor.id))
    for service_id in wanted:
        db.add(DoctorService(doctor_id=doctor.id, service_id=service_id))
    db.flush()
    logger.info(
        "doctor services replaced",
        extra={"doctor_id": str(doctor.id), "service_count": len(wanted)},
    )
    return wanted


def serialize_block(block: DoctorAvailability) -> dict[str, Any]:
    return {
        "id": str(block.id),
        "doctor_id": str(block.doctor_id),
        "day_of_week": block.day_of_week,
        "day_name": DAY_NAMES[block.day_of_week],
        "start_time": dates.format_clock(block.start_time),
        "end_time": dates.format_clock(block.end_time),
        "location_id": str(block.location_id) if block.location_id else None,
        "is_active": block.is_active,
        "notes": block.notes,
    }


def list_schedule(db: Session, doctor_id: UUID) -> list[DoctorAvailability]:
    stmt = (
        select(DoctorAvailability)
        .where(DoctorAvailability.doctor_id == doctor_id)
        .order_by(DoctorAvailability.day_of_week, DoctorAvailability.start_time)
    )
    return list(db.execute(stmt).scalars().all())


def _validate_block(
    db: Session,
    doctor: Doctor,
    day_of_week: int,
    start: time,
    end: time,
    location_id: UUID | None,
) -> None:
    if not 0 <= day_of_week <= 6:
        raise ValidationFailed(
            "day_of_week must be between 0 (Sunday) and 6 (Saturday)",
            details={"field": "day_of_week", "value": day_of_week},
        )
    if start >= end:
        raise ValidationFailed(
            "start_time must be earlier than end_time",
            details={"startTime": dates.format_clock(start), "endTime": dates.format_clock(end)},
        )
    if location_id is not None:
        location = db.get(Location, location_id)
        if location is None or location.organization_id != doctor.organization_id:
            raise NotFoundError("Location not found", details={"locationId": str(location_id)})


def _ensure_no_overlap(
    db: Session,
    doctor_id: UUID,
    day_of_week: int,
    start: time,
    end: time,
    *,
    exclude_id: UUID | None = None,
) -> None:
    stmt = select(DoctorAvailability).where(
        DoctorAvailability.doctor_id == doctor_id,
        DoctorAvailability.day_of_week == day_of_week,
        DoctorAvailability.is_active.is_(True),
        DoctorAvailability.start_time < end,
        DoctorAvailability.end_time > start,
    )
    if exclude_id is not None:
        stmt = stmt.where(DoctorAvailability.id != exclude_id)
    existing = db.execute(stmt).scalars().first()
    if existing is not None:
        raise ConflictError(
            "El bloque se superpone con otro horario activo del doctor",
            details={"conflictingScheduleId": str(existing.id), **serialize_block(existing)},
        )


def create_block(
    db: Session,
    doctor: Doctor,
    *,
    day_of_week: int,
    start: time,
    end: time,
    location_id: UUID | None = None,
    is_active: bool = True,
    notes: str | None = None,
) -> DoctorAvailability:
    _validate_block(db, doctor, day_of_week, start, end, location_id)
    if is_active:
        _ensure_no_overlap(db, doctor.id, day_of_week, start, end)
    block = DoctorAvailability(
        doctor_id=doctor.id,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        location_id=location_id,
        is_active=is_active,
        notes=notes,
    )
    db.add(block)
    db.flush()
    logger.info(
        "schedule block created",
        extra={"doctor_id": str(doctor.id), "day_of_week": day_of_week},
    )
    return block


def get_block(db: Session, doctor: Doctor, block_id: UUID) -> DoctorAvailability:
    block = db.get(DoctorAvailability, block_id)
    if block is None or block.doctor_id != doctor.id:
        raise NotFoundError("Schedule block not found", details={"scheduleId": str(block_id)})
    return block


def update_block(
    db: Session, doctor: Doctor, block: DoctorAvailability, changes: dict[str, Any]
) -> DoctorAvailability:
    day_of_week = changes.get("day_of_week", block.day_of_week)
    start = changes.get("start_time", block.start_time)
    end = changes.get("end_time", block.end_time)
    location_id = changes.get("location_id", block.location_id)
    is_active = changes.get("is_active", block.is_active)

    _validate_block(db, doctor, day_of_week, start, end, location_id)
    if is_active:
        _ensure_no_overlap(db, doctor.id, day_of_week, start, end, exclude_id=block.id)

    block.day_of_week = day_of_week
    block.start_time = start
    block.end_time = end
    block.location_id = location_id
    block.is_active = is_active
    if "notes" in changes:
        block.notes = changes["notes"]
    db.flush()
    return block


def delete_block(db: Session, block: DoctorAvailability) -> None:
    db.delete(block)
    db.flush()
    logger.info("schedule block deleted", extra={"schedule_id": str(block.id)})
