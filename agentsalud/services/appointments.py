"""Appointment booking, rescheduling and role-scoped queries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from agentsalud.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationFailed,
)
from agentsalud.models import (
    Appointment,
    AppointmentOrigin,
    AppointmentStatus,
    Doctor,
    DoctorAvailability,
    DoctorService,
    Location,
    Organization,
    Profile,
    Service,
    UserRole,
)
from agentsalud.services import (
    appointment_status,
    availability,
    booking_rules,
    booking_settings,
    dates,
    notifications,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

RESCHEDULABLE_STATUSES = frozenset(
    {
        AppointmentStatus.PENDING,
        AppointmentStatus.PENDIENTE_PAGO,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.REAGENDADA,
    }
)

_CANCELLATION_STATUSES = frozenset(
    {
        AppointmentStatus.CANCELLED,
        AppointmentStatus.CANCELADA_PACIENTE,
        AppointmentStatus.CANCELADA_CLINICA,
    }
)


@dataclass
class BookingRequest:
    """Validated input for a manual booking."""

    patient_id: UUID
    doctor_id: UUID
    appointment_date: date
    start_time: time
    service_id: UUID | None = None
    location_id: UUID | None = None
    end_time: time | None = None
    duration_minutes: int | None = None
    reason: str | None = None
    notes: str | None = None
    organization_id: UUID | None = None
    origin: AppointmentOrigin = AppointmentOrigin.WEB


@dataclass
class AppointmentFilters:
    organization_id: UUID | None = None
    appointment_date: date | None = None
    status: AppointmentStatus | None = None
    doctor_id: UUID | None = None
    patient_id: UUID | None = None
    limit: int = 50
    offset: int = 0


def _lock_doctor(db: Session, doctor_id: UUID) -> Doctor:
    """Load the doctor row ``FOR UPDATE`` so concurrent bookings serialize."""

    doctor = db.execute(
        select(Doctor).where(Doctor.id == doctor_id).with_for_update()
    ).scalar_one_or_none()
    if doctor is None:
        raise NotFoundError("Doctor not found", details={"doctorId": str(doctor_id)})
    return doctor


def _load_in_organization(
    db: Session, model: type, entity_id: UUID | None, organization_id: UUID, label: str
) -> Any:
    if entity_id is None:
        return None
    entity = db.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{label} not found", details={f"{label.lower()}Id": str(entity_id)})
    if entity.organization_id != organization_id:
        raise ValidationFailed(
            f"{label} does not belong to the organization",
            details={f"{label.lower()}Id": str(entity_id), "organizationId": str(organization_id)},
        )
    return entity


def _resolve_interval(
    start: time,
    end: time | None,
    duration: int | None,
    service: Service | None,
) -> tuple[time, int]:
    if end is not None:
        minutes = dates.minutes_of(end) - dates.minutes_of(start)
        if minutes <= 0:
            raise ValidationFailed(
                "endTime must be later than startTime",
                details={"startTime": dates.format_clock(start), "endTime": dates.format_clock(end)},
            )
        return end, minutes
    minutes = duration or (service.duration_minutes if service else availability.DEFAULT_SLOT_MINUTES)
    if dates.minutes_of(start) + minutes > 24 * 60 - 1:
        raise ValidationFailed("Appointment must end on the same day")
    return dates.add_minutes(start, minutes), minutes


def _ensure_slot_free(
    db: Session,
    doctor: Doctor,
    target_date: date,
    interval: tuple[time, time],
    *,
    location_id: UUID | None = None,
    exclude_appointment_id: UUID | None = None,
) -> DoctorAvailability:
    block = availability.covering_block(
        db, doctor.id, target_date, interval, location_id=location_id
    )
    if block is None:
        raise ValidationFailed(
            "El horario solicitado está fuera del horario de atención del doctor",
            code="OUTSIDE_DOCTOR_SCHEDULE",
            details={
                "doctorId": str(doctor.id),
                "date": target_date.isoformat(),
                "startTime": dates.format_clock(interval[0]),
            },
        )
    conflict = availability.find_conflict(
        db, doctor.id, target_date, interval, exclude_appointment_id=exclude_appointment_id
    )
    if conflict is not None:
        raise ConflictError(
            "Ya existe una cita en este horario",
            details={
                "doctorId": str(doctor.id),
                "date": target_date.isoformat(),
                "conflictStart": dates.format_clock(conflict[0]),
                "conflictEnd": dates.format_clock(conflict[1]),
            },
        )
    return block


def create_appointment(
    db: Session,
    request: BookingRequest,
    *,
    actor: Profile,
    now: datetime | None = None,
    notify: bool = True,
) -> Appointment:
    """Validate and persist a booking made by ``actor``.

    ``notify=False`` skips the WhatsApp confirmation for channels that reply
    to the patient themselves.
    """

    doctor = _lock_doctor(db, request.doctor_id)
    organization_id = request.organization_id or doctor.organization_id
    if doctor.organization_id != organization_id:
        raise ValidationFailed(
            "Doctor does not belong to the organization",
            details={"doctorId": str(doctor.id), "organizationId": str(organization_id)},
        )
    if not doctor.is_available:
        raise ValidationFailed("Doctor is not accepting appointments")

    organization = db.get(Organization, organization_id)
    if organization is None or not organization.is_active:
        raise NotFoundError("Organization not found", details={"organizationId": str(organization_id)})

    if actor.role == UserRole.PATIENT and request.patient_id != actor.id:
        raise ForbiddenError("Patients can only book appointments for themselves")

    patient = _load_in_organization(db, Profile, request.patient_id, organization_id, "Patient")
    if not patient.is_active:
        raise ValidationFailed("Patient account is inactive")
    service = _load_in_organization(db, Service, request.service_id, organization_id, "Service")
    location = _load_in_organization(db, Location, request.location_id, organization_id, "Location")

    if service is not None:
        offered = db.execute(
            select(DoctorService.id).where(
                DoctorService.doctor_id == doctor.id,
                DoctorService.service_id == service.id,
            )
        ).first()
        if offered is None or not service.is_active:
            raise ValidationFailed(
                "Doctor does not offer this service",
                details={"doctorId": str(doctor.id), "serviceId": str(service.id)},
            )

    end_time, duration = _resolve_interval(
        request.start_time, request.end_time, request.duration_minutes, service
    )

    rules = booking_settings.get_booking_settings(db, organization)
    booking_rules.validate_booking(
        request.appointment_date,
        request.start_time,
        role=actor.role,
        booking_settings=rules,
        now_local=dates.local_now(organization, now),
    )

    block = _ensure_slot_free(
        db,
        doctor,
        request.appointment_date,
        (request.start_time, end_time),
        location_id=request.location_id,
    )

    status = AppointmentStatus.CONFIRMED if rules.auto_confirmation else AppointmentStatus.PENDING
    appointment = Appointment(
        organization_id=organization_id,
        patient_id=patient.id,
        doctor_id=doctor.id,
        service_id=service.id if service else None,
        location_id=location.id if location else block.location_id,
        appointment_date=request.appointment_date,
        start_time=request.start_time,
        end_time=end_time,
        duration_minutes=duration,
        status=status,
        origin=request.origin,
        reason=request.reason,
        notes=request.notes,
        created_by=actor.id,
    )
    db.add(appointment)
    db.flush()
    appointment_status.record_history(
        db,
        appointment,
        previous_status=None,
        new_status=status,
        actor=actor,
        reason="Cita creada",
        metadata={"origin": request.origin.value},
    )

    logger.info(
        "appointment booked",
        extra={
            "appointment_id": str(appointment.id),
            "doctor_id": str(doctor.id),
            "appointment_date": appointment.appointment_date.isoformat(),
            "start_time": dates.format_clock(appointment.start_time),
            "role": actor.role.value,
        },
    )

    if notify:
        template = (
            "cita_confirmada" if status == AppointmentStatus.CONFIRMED else "cita_pendiente"
        )
        notifications.notify_appointment(db, appointment, template)
    notifications.schedule_reminders(db, appointment, organization)
    return appointment


def update_status(
    db: Session,
    appointment: Appointment,
    target: AppointmentStatus,
    *,
    actor: Profile,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Apply a lifecycle transition, enforcing the patient cancellation deadline."""

    organization = db.get(Organization, appointment.organization_id)
    if target in _CANCELLATION_STATUSES:
        rules = booking_settings.get_booking_settings(db, organization)
        booking_rules.check_change_deadline(
            appointment_start(appointment, organization),
            role=actor.role,
            booking_settings=rules,
            now=now or dates.utcnow(),
            action="cancel",
        )

    appointment_status.change_status(db, appointment, target, actor=actor, reason=reason)
    if target in _CANCELLATION_STATUSES:
        notifications.notify_appointment(db, appointment, "cita_cancelada")
    return appointment


def reschedule_appointment(
    db: Session,
    appointment: Appointment,
    *,
    actor: Profile,
    new_date: date,
    new_start: time,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Move an appointment to a new slot of the same doctor."""

    if appointment.status not in RESCHEDULABLE_STATUSES:
        raise ValidationFailed(
            f"Appointments in status '{appointment.status.value}' cannot be rescheduled",
            details={"currentStatus": appointment.status.value},
        )

    organization = db.get(Organization, appointment.organization_id)
    rules = booking_settings.get_booking_settings(db, organization)
    booking_rules.check_change_deadline(
        appointment_start(appointment, organization),
        role=actor.role,
        booking_settings=rules,
        now=now or dates.utcnow(),
        action="reschedule",
    )

    doctor = _lock_doctor(db, appointment.doctor_id)
    booking_rules.validate_booking(
        new_date,
        new_start,
        role=actor.role,
        booking_settings=rules,
        now_local=dates.local_now(organization, now),
        rescheduling=True,
    )
    new_end, _ = _resolve_interval(new_start, None, appointment.duration_minutes, None)
    block = _ensure_slot_free(
        db,
        doctor,
        new_date,
        (new_start, new_end),
        location_id=appointment.location_id,
        exclude_appointment_id=appointment.id,
    )

    previous = {
        "previousDate": appointment.appointment_date.isoformat(),
        "previousStartTime": dates.format_clock(appointment.start_time),
        "newDate": new_date.isoformat(),
        "newStartTime": dates.format_clock(new_start),
    }
    if appointment.status == AppointmentStatus.CONFIRMED:
        appointment_status.change_status(
            db,
            appointment,
            AppointmentStatus.REAGENDADA,
            actor=actor,
            reason=reason,
            metadata=previous,
        )
    else:
        appointment_status.record_history(
            db,
            appointment,
            previous_status=appointment.status,
            new_status=appointment.status,
            actor=actor,
            reason=reason,
            metadata=previous,
        )

    appointment.appointment_date = new_date
    appointment.start_time = new_start
    appointment.end_time = new_end
    if block.location_id and appointment.location_id is None:
        appointment.location_id = block.location_id
    db.flush()

    logger.info("appointment rescheduled", extra={"appointment_id": str(appointment.id), **previous})
    notifications.notify_appointment(db, appointment, "cita_reagendada")
    notifications.schedule_reminders(db, appointment, organization)
    return appointment


def appointment_start(appointment: Appointment, organization: Organization | None) -> datetime:
    tz = dates.organization_timezone(organization)
    return dates.combine_local(appointment.appointment_date, appointment.start_time, tz)


def _scope_statement(stmt: Any, actor: Profile) -> Any:
    if actor.role == UserRole.PATIENT:
        return stmt.where(Appointment.patient_id == actor.id)
    if actor.role == UserRole.DOCTOR:
        return stmt.join(Doctor, Doctor.id == Appointment.doctor_id).where(
            Doctor.profile_id == actor.id
        )
    if actor.role == UserRole.SUPERADMIN:
        return stmt
    return stmt.where(Appointment.organization_id == actor.organization_id)


def list_appointments(
    db: Session, actor: Profile, filters: AppointmentFilters
) -> tuple[list[Appointment], int]:
    """Appointments visible to ``actor`` plus the total before paging."""

    stmt = _scope_statement(select(Appointment), actor)
    if filters.organization_id is not None:
        stmt = stmt.where(Appointment.organization_id == filters.organization_id)
    if filters.appointment_date is not None:
        stmt = stmt.where(Appointment.appointment_date == filters.appointment_date)
    if filters.status is not None:
        stmt = stmt.where(Appointment.status == filters.status)
    if filters.doctor_id is not None:
        stmt = stmt.where(Appointment.doctor_id == filters.doctor_id)
    if filters.patient_id is not None:
        stmt = stmt.where(Appointment.patient_id == filters.patient_id)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    limit = max(1, min(filters.limit, MAX_PAGE_SIZE))
    page = (
        stmt.order_by(Appointment.appointment_date, Appointment.start_time)
        .limit(limit)
        .offset(max(filters.offset, 0))
    )
    return list(db.execute(page).scalars().all()), int(total)


def get_visible_appointment(db: Session, actor: Profile, appointment_id: UUID) -> Appointment:
    """Fetch an appointment the actor may see; anything else is a 404."""

    stmt = _scope_statement(select(Appointment), actor).where(Appointment.id == appointment_id)
    appointment = db.execute(stmt).scalar_one_or_none()
    if appointment is None:
        raise NotFoundError(
            "Appointment not found", details={"appointmentId": str(appointment_id)}
        )
    return appointment


def serialize_appointment(db: Session, appointment: Appointment) -> dict[str, Any]:
    """Return a JSON-friendly representation of an appointment."""

    patient = db.get(Profile, appointment.patient_id)
    doctor = db.get(Doctor, appointment.doctor_id)
    service = db.get(Service, appointment.service_id) if appointment.service_id else None
    location = db.get(Location, appointment.location_id) if appointment.location_id else None
    config = appointment_status.STATUS_CONFIGS[appointment.status]
    return {
        "id": str(appointment.id),
        "organization_id": str(appointment.organization_id),
        "appointment_date": appointment.appointment_date.isoformat(),
        "start_time": dates.format_clock(appointment.start_time),
        "end_time": dates.format_clock(appointment.end_time),
        "duration_minutes": appointment.duration_minutes,
        "status": appointment.status.value,
        "status_label": config.label,
        "origin": appointment.origin.value,
        "reason": appointment.reason,
        "notes": appointment.notes,
        "patient": {
            "id": str(patient.id),
            "name": patient.full_name,
            "email": patient.email,
            "phone": patient.phone,
        }
        if patient
        else None,
        "doctor": {
            "id": str(doctor.id),
            "name": doctor.display_name,
            "specialization": doctor.specialization,
        }
        if doctor
        else None,
        "service": {
            "id": str(service.id),
            "name": service.name,
            "duration_minutes": service.duration_minutes,
        }
        if service
        else None,
        "location": {"id": str(location.id), "name": location.name} if location else None,
        "created_at": dates.ensure_utc(appointment.created_at).isoformat()
        if appointment.created_at
        else None,
    }
