"""Slot discovery from weekly doctor availability and booked appointments."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentsalud.errors import NotFoundError, ValidationFailed
from agentsalud.models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    DoctorAvailability,
    DoctorService,
    Organization,
    Profile,
    Service,
)
from agentsalud.services import booking_rules, booking_settings, dates
from agentsalud.services.entity_extraction import in_period

logger = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 30
MAX_RANGE_DAYS = 31

_INACTIVE_STATUSES = (
    AppointmentStatus.CANCELLED,
    AppointmentStatus.CANCELADA_PACIENTE,
    AppointmentStatus.CANCELADA_CLINICA,
)

Interval = tuple[time, time]


@dataclass
class SlotSummary:
    """Serialized view of a bookable slot."""

    doctor_id: UUID
    doctor_name: str
    target_date: date
    start: time
    end: time
    duration: int
    available: bool
    service_id: UUID | None = None
    location_id: UUID | None = None
    price_cents: int | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Convert the slot summary into JSON-friendly values."""

        start_text = dates.format_clock(self.start)
        return {
            "id": f"{self.doctor_id}-{self.target_date.isoformat()}-{start_text}",
            "time": start_text,
            "endTime": dates.format_clock(self.end),
            "doctorId": str(self.doctor_id),
            "doctorName": self.doctor_name,
            "available": self.available,
            "duration": self.duration,
            "serviceId": str(self.service_id) if self.service_id else None,
            "locationId": str(self.location_id) if self.location_id else None,
            "price": self.price_cents / 100 if self.price_cents is not None else None,
        }


def overlaps(first: Interval, second: Interval) -> bool:
    return first[0] < second[1] and second[0] < first[1]


def eligible_doctors(
    db: Session,
    organization_id: UUID,
    *,
    service_id: UUID | None = None,
    doctor_id: UUID | None = None,
) -> list[Doctor]:
    """Active doctors of the organization, optionally restricted to a service.

    The service filter goes through ``doctor_services`` and also requires the
    service to belong to the same organization.
    """

    stmt = (
        select(Doctor)
        .join(Profile, Profile.id == Doctor.profile_id)
        .where(
            Doctor.organization_id == organization_id,
            Doctor.is_available.is_(True),
            Profile.is_active.is_(True),
        )
    )
    if service_id is not None:
        stmt = (
            stmt.join(DoctorService, DoctorService.doctor_id == Doctor.id)
            .join(Service, Service.id == DoctorService.service_id)
            .where(
                Service.id == service_id,
                Service.organization_id == organization_id,
                Service.is_active.is_(True),
            )
        )
    if doctor_id is not None:
        stmt = stmt.where(Doctor.id == doctor_id)
    stmt = stmt.order_by(Profile.last_name, Profile.first_name)
    return list(db.execute(stmt).unique().scalars().all())


def availability_blocks(
    db: Session,
    doctor_ids: list[UUID],
    *,
    location_id: UUID | None = None,
) -> dict[tuple[UUID, int], list[DoctorAvailability]]:
    """Active weekly blocks grouped by ``(doctor_id, day_of_week)``."""

    grouped: dict[tuple[UUID, int], list[DoctorAvailability]] = defaultdict(list)
    if not doctor_ids:
        return grouped
    stmt = select(DoctorAvailability).where(
        DoctorAvailability.doctor_id.in_(doctor_ids),
        DoctorAvailability.is_active.is_(True),
    )
    if location_id is not None:
        stmt = stmt.where(DoctorAvailability.location_id == location_id)
    stmt = stmt.order_by(DoctorAvailability.start_time)
    for block in db.execute(stmt).scalars():
        grouped[(block.doctor_id, block.day_of_week)].append(block)
    return grouped


def booked_intervals(
    db: Session,
    doctor_ids: list[UUID],
    start_date: date,
    end_date: date,
    *,
    exclude_appointment_id: UUID | None = None,
) -> dict[tuple[UUID, date], list[Interval]]:
    """Intervals held by non-cancelled appointments grouped by doctor and day."""

    grouped: dict[tuple[UUID, date], list[Interval]] = defaultdict(list)
    if not doctor_ids:
        return grouped
    stmt = select(Appointment).where(
        Appointment.doctor_id.in_(doctor_ids),
        Appointment.appointment_date >= start_date,
        Appointment.appointment_date <= end_date,
        Appointment.status.not_in(_INACTIVE_STATUSES),
    )
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)
    for appointment in db.execute(stmt).scalars():
        grouped[(appointment.doctor_id, appointment.appointment_date)].append(
            (appointment.start_time, appointment.end_time)
        )
    return grouped


def find_conflict(
    db: Session,
    doctor_id: UUID,
    target_date: date,
    interval: Interval,
    *,
    exclude_appointment_id: UUID | None = None,
) -> Interval | None:
    """Return the first booked interval overlapping ``interval``, if any."""

    busy = booked_intervals(
        db,
        [doctor_id],
        target_date,
        target_date,
        exclude_appointment_id=exclude_appointment_id,
    )
    for existing in busy.get((doctor_id, target_date), []):
        if overlaps(existing, interval):
            return existing
    return None


def covering_block(
    db: Session,
    doctor_id: UUID,
    target_date: date,
    interval: Interval,
    *,
    location_id: UUID | None = None,
) -> DoctorAvailability | None:
    """Weekly block of the doctor that fully contains ``interval`` on that date."""

    blocks = availability_blocks(db, [doctor_id], location_id=location_id)
    for block in blocks.get((doctor_id, dates.day_of_week(target_date)), []):
        if block.start_time <= interval[0] and interval[1] <= block.end_time:
            return block
    return None


def _slot_starts(block: DoctorAvailability, duration: int) -> list[Interval]:
    slots: list[Interval] = []
    cursor = dates.minutes_of(block.start_time)
    block_end = dates.minutes_of(block.end_time)
    while cursor + duration <= block_end:
        start = time(cursor // 60, cursor % 60)
        end_minutes = cursor + duration
        end = time(end_minutes // 60, end_minutes % 60) if end_minutes < 24 * 60 else time.max
        slots.append((start, end))
        cursor += duration
    return slots


def resolve_service(
    db: Session, organization_id: UUID, service_id: UUID | None
) -> Service | None:
    if service_id is None:
        return None
    service = db.get(Service, service_id)
    if service is None or service.organization_id != organization_id:
        raise NotFoundError("Service not found", details={"serviceId": str(service_id)})
    return service


def compute_availability(
    db: Session,
    *,
    organization: Organization,
    start_date: date,
    end_date: date,
    role: Any,
    service_id: UUID | None = None,
    doctor_id: UUID | None = None,
    location_id: UUID | None = None,
    now: datetime | None = None,
) -> dict[str, dict[str, Any]]:
    """Build the per-day slot map for the requested range."""

    if end_date < start_date:
        raise ValidationFailed(
            "startDate must be on or before endDate",
            details={"startDate": start_date.isoformat(), "endDate": end_date.isoformat()},
        )
    if (end_date - start_date).days + 1 > MAX_RANGE_DAYS:
        raise ValidationFailed(
            f"Date range cannot exceed {MAX_RANGE_DAYS} days",
            details={"maxDays": MAX_RANGE_DAYS},
        )

    service = resolve_service(db, organization.id, service_id)
    duration = service.duration_minutes if service else DEFAULT_SLOT_MINUTES
    rules = booking_settings.get_booking_settings(db, organization)
    now_local = dates.local_now(organization, now)
    today = now_local.date()
    first_day = max(start_date, today)

    doctors = eligible_doctors(
        db, organization.id, service_id=service_id, doctor_id=doctor_id
    )
    result: dict[str, dict[str, Any]] = {}
    if not doctors or first_day > end_date:
        return result

    doctor_ids = [doctor.id for doctor in doctors]
    blocks = availability_blocks(db, doctor_ids, location_id=location_id)
    busy = booked_intervals(db, doctor_ids, first_day, end_date)

    for target_date in dates.iter_dates(first_day, end_date):
        day_rule = booking_rules.validate_date(
            target_date, role=role, booking_settings=rules, today=today
        )
        weekday = dates.day_of_week(target_date)
        slots: list[SlotSummary] = []
        for doctor in doctors:
            taken = busy.get((doctor.id, target_date), [])
            for block in blocks.get((doctor.id, weekday), []):
                for interval in _slot_starts(block, duration):
                    available = day_rule.is_valid and not any(
                        overlaps(interval, existing) for existing in taken
                    )
                    if available:
                        available = booking_rules.validate_slot(
                            target_date,
                            interval[0],
                            role=role,
                            booking_settings=rules,
                            now_local=now_local,
                        ).is_valid
                    slots.append(
                        SlotSummary(
                            doctor_id=doctor.id,
                            doctor_name=doctor.display_name,
                            target_date=target_date,
                            start=interval[0],
                            end=interval[1],
                            duration=duration,
                            available=available,
                            service_id=service.id if service else None,
                            location_id=block.location_id,
                            price_cents=service.price_cents if service else None,
                        )
                    )
        slots.sort(key=lambda slot: (slot.start, slot.doctor_name))
        day_entry: dict[str, Any] = {
            "slots": [slot.as_dict() for slot in slots],
            "totalSlots": len(slots),
            "availableSlots": sum(1 for slot in slots if slot.available),
        }
        if not day_rule.is_valid:
            day_entry["reason"] = day_rule.reason
            day_entry["code"] = day_rule.code
        result[target_date.isoformat()] = day_entry

    logger.info(
        "availability computed",
        extra={
            "organization_id": str(organization.id),
            "start_date": first_day.isoformat(),
            "end_date": end_date.isoformat(),
            "doctor_count": len(doctors),
        },
    )
    return result


def available_doctors_on(
    db: Session,
    *,
    organization: Organization,
    target_date: date,
    role: Any,
    service_id: UUID | None = None,
    location_id: UUID | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Doctors with at least one open slot on ``target_date``."""

    days = compute_availability(
        db,
        organization=organization,
        start_date=target_date,
        end_date=target_date,
        role=role,
        service_id=service_id,
        location_id=location_id,
        now=now,
    )
    day = days.get(target_date.isoformat())
    if not day:
        return []

    by_doctor: dict[str, dict[str, Any]] = {}
    for slot in day["slots"]:
        if not slot["available"]:
            continue
        entry = by_doctor.setdefault(
            slot["doctorId"],
            {"id": slot["doctorId"], "name": slot["doctorName"], "slots": []},
        )
        entry["slots"].append(
            {"time": slot["time"], "endTime": slot["endTime"], "locationId": slot["locationId"]}
        )

    doctors = {str(doctor.id): doctor for doctor in eligible_doctors(db, organization.id)}
    for doctor_id, entry in by_doctor.items():
        doctor = doctors.get(doctor_id)
        entry["specialization"] = doctor.specialization if doctor else None
        entry["availableSlots"] = len(entry["slots"])
    return sorted(by_doctor.values(), key=lambda item: item["name"])


def suggest_slots(
    db: Session,
    *,
    organization: Organization,
    role: Any,
    target_date: date | None = None,
    service_id: UUID | None = None,
    preferred_time: time | None = None,
    period: str | None = None,
    limit: int = 5,
    search_days: int = 7,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Open slots closest to what the caller asked for.

    Without a date the next ``search_days`` days are searched. An exact match
    on ``preferred_time`` is listed first, the rest keep calendar order.
    """

    today = dates.organization_today(organization, now)
    start = target_date or today
    end = target_date or start + timedelta(days=search_days - 1)
    days = compute_availability(
        db,
        organization=organization,
        start_date=start,
        end_date=end,
        role=role,
        service_id=service_id,
        now=now,
    )

    wanted = dates.format_clock(preferred_time) if preferred_time else None
    candidates: list[dict[str, Any]] = []
    for day_key in sorted(days):
        for slot in days[day_key]["slots"]:
            if not slot["available"]:
                continue
            if not in_period(dates.parse_clock(slot["time"]), period):
                continue
            candidates.append({**slot, "date": day_key})

    if wanted:
        candidates.sort(key=lambda slot: slot["time"] != wanted)
    return candidates[:limit]


__all__ = [
    "DEFAULT_SLOT_MINUTES",
    "MAX_RANGE_DAYS",
    "SlotSummary",
    "available_doctors_on",
    "booked_intervals",
    "compute_availability",
    "covering_block",
    "eligible_doctors",
    "find_conflict",
    "overlaps",
    "resolve_service",
    "suggest_slots",
]
