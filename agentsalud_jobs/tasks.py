from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from celery.utils.log import get_task_logger
from sqlalchemy import case, select
from sqlalchemy.orm import Session

from agentsalud.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusHistory,
    Organization,
    WhatsAppInstance,
    WhatsAppInstanceStatus,
)
from agentsalud_jobs import db
from agentsalud_jobs.celery_app import celery_app
from agentsalud_jobs.config import settings

logger = get_task_logger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=15.0, pool=5.0)

REMINDABLE_STATUSES = frozenset(
    {
        AppointmentStatus.PENDING,
        AppointmentStatus.PENDIENTE_PAGO,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.REAGENDADA,
    }
)
NO_SHOW_FROM = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.REAGENDADA})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_instant(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Invalid scheduled_start %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _resolve_when(scheduled_start: str | None, delta: timedelta) -> datetime:
    """Return the timestamp when a reminder should be dispatched."""

    start = _parse_instant(scheduled_start)
    if start is not None:
        return start - delta
    return _now()


def _load_appointment(session: Session, appointment_id: str) -> Appointment | None:
    try:
        key = UUID(str(appointment_id))
    except ValueError:
        logger.warning("Invalid appointment id %s", appointment_id)
        return None
    return session.get(Appointment, key)


def _appointment_window(
    session: Session, appointment: Appointment
) -> tuple[datetime, datetime]:
    """Start and end of the appointment as UTC instants."""

    organization = session.get(Organization, appointment.organization_id)
    tz_name = (organization.timezone if organization else None) or settings.timezone
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    start = datetime.combine(appointment.appointment_date, appointment.start_time, tzinfo=tz)
    end = datetime.combine(appointment.appointment_date, appointment.end_time, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _instance_for(session: Session, organization_id: UUID) -> str | None:
    return session.execute(
        select(WhatsAppInstance.instance_name)
        .where(
            WhatsAppInstance.organization_id == organization_id,
            WhatsAppInstance.status != WhatsAppInstanceStatus.SUSPENDED,
        )
        .order_by(
            case((WhatsAppInstance.status == WhatsAppInstanceStatus.ACTIVE, 0), else_=1),
            WhatsAppInstance.created_at.desc(),
        )
        .limit(1)
    ).scalar_one_or_none()


def send_whatsapp_text(phone: str, message: str, instance: str | None = None) -> str | None:
    """Deliver a text through the Evolution API; returns the provider message id."""

    number = re.sub(r"\D", "", phone)
    if settings.whatsapp_mock_mode:
        logger.info("Mocking reminder delivery to %s", number)
        return f"mocked-{number}"
    instance = instance or settings.evolution_instance_name
    if not instance or not settings.evolution_api_key:
        logger.warning("Evolution API is not configured, reminder not sent")
        return None

    url = (
        f"{settings.evolution_api_base_url.rstrip('/')}"
        f"/message/sendText/{quote(instance, safe='')}"
    )
    with httpx.Client(timeout=_TIMEOUT) as client:
        response = client.post(
            url,
            headers={"apikey": settings.evolution_api_key, "Content-Type": "application/json"},
            json={"number": number, "text": message},
        )
    response.raise_for_status()
    data = response.json()
    return (data.get("key") or {}).get("id") or data.get("id")


def _skip_reason(
    session: Session, appointment: Appointment | None, scheduled_start: str | None
) -> str | None:
    """Why a queued reminder no longer applies, or ``None`` when it does."""

    if appointment is None:
        return "missing"
    if appointment.status not in REMINDABLE_STATUSES:
        return "status"
    expected = _parse_instant(scheduled_start)
    if expected is not None:
        start, _end = _appointment_window(session, appointment)
        if start != expected:
            return "rescheduled"
    return None


def _emit_reminder(
    *,
    appointment_id: str,
    window: str,
    scheduled_start: str | None,
    delta: timedelta,
    phone: str | None,
    message: str | None,
) -> dict[str, Any]:
    dispatch_at = _resolve_when(scheduled_start, delta)
    result: dict[str, Any] = {
        "appointment_id": appointment_id,
        "reminder_window": window,
        "dispatch_at": dispatch_at.isoformat(),
        "sent": False,
        "message_id": None,
    }

    with db.session_scope() as session:
        appointment = _load_appointment(session, appointment_id)
        skipped = _skip_reason(session, appointment, scheduled_start)
        instance = _instance_for(session, appointment.organization_id) if appointment else None

    if skipped:
        logger.info("Skipping %s reminder for %s: %s", window, appointment_id, skipped)
        result["skipped"] = skipped
        return result

    logger.info(
        "Dispatching %s reminder for appointment %s at %s",
        window,
        appointment_id,
        dispatch_at.isoformat(),
    )
    if phone and message:
        try:
            result["message_id"] = send_whatsapp_text(phone, message, instance)
        except httpx.HTTPError as exc:
            logger.warning("Reminder delivery failed for %s: %s", appointment_id, exc)
    result["sent"] = result["message_id"] is not None
    return result


@celery_app.task(name="jobs.send_reminder_d1")
def send_reminder_d1(
    appointment_id: str,
    scheduled_start: str | None = None,
    phone: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    """Send the D-1 reminder (one day before)."""

    return _emit_reminder(
        appointment_id=appointment_id,
        window="D-1",
        scheduled_start=scheduled_start,
        delta=timedelta(days=1),
        phone=phone,
        message=message,
    )


@celery_app.task(name="jobs.send_reminder_h2")
def send_reminder_h2(
    appointment_id: str,
    scheduled_start: str | None = None,
    phone: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    """Send the H-2 reminder (two hours before)."""

    return _emit_reminder(
        appointment_id=appointment_id,
        window="H-2",
        scheduled_start=scheduled_start,
        delta=timedelta(hours=2),
        phone=phone,
        message=message,
    )


@celery_app.task(name="jobs.flag_no_show")
def flag_no_show(appointment_id: str) -> dict[str, Any]:
    """Mark a confirmed appointment nobody attended as ``no_show``.

    Appointments that were rescheduled to a later slot, or already moved on
    (in progress, completed, cancelled), are left alone.
    """

    result: dict[str, Any] = {"appointment_id": appointment_id, "flagged": False}
    with db.session_scope() as session:
        appointment = _load_appointment(session, appointment_id)
        if appointment is None:
            result["skipped"] = "missing"
            return result
        if appointment.status not in NO_SHOW_FROM:
            result["skipped"] = "status"
            result["status"] = appointment.status.value
            return result
        _start, end = _appointment_window(session, appointment)
        if _now() < end:
            result["skipped"] = "not_finished"
            return result

        previous = appointment.status
        appointment.status = AppointmentStatus.NO_SHOW
        session.add(
            AppointmentStatusHistory(
                appointment_id=appointment.id,
                previous_status=previous.value,
                new_status=AppointmentStatus.NO_SHOW.value,
                user_role="system",
                reason="El paciente no se presentó a la cita",
                metadata_json={"source": "jobs.flag_no_show", "scheduledEnd": end.isoformat()},
            )
        )
        result["flagged"] = True
        result["status"] = AppointmentStatus.NO_SHOW.value

    logger.warning("Appointment %s flagged as no-show", appointment_id)
    return result
