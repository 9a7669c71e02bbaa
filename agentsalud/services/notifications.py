"""Patient notifications: WhatsApp texts now, Celery reminders later."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx
from celery import Celery
from kombu.exceptions import OperationalError
from sqlalchemy.orm import Session

from agentsalud.core.config import settings
from agentsalud.models import Appointment, Doctor, MessageLog, Organization, Profile, Service
from agentsalud.services import dates, whatsapp_instances
from agentsalud.services.whatsapp_client import (
    WhatsAppDeliveryError,
    send_interactive_buttons,
    send_text,
)
from agentsalud.services.whatsapp_templates import render

logger = logging.getLogger(__name__)

# Producer side only; the worker lives in ``agentsalud_jobs``.
celery_client = Celery("agentsalud", broker=settings.redis_url)

REMINDER_TASKS: tuple[tuple[str, str, timedelta], ...] = (
    ("jobs.send_reminder_d1", "recordatorio_d1", timedelta(days=1)),
    ("jobs.send_reminder_h2", "recordatorio_h2", timedelta(hours=2)),
)
NO_SHOW_TASK = "jobs.flag_no_show"
NO_SHOW_GRACE = timedelta(minutes=30)


def _message_values(db: Session, appointment: Appointment) -> dict[str, Any]:
    patient = db.get(Profile, appointment.patient_id)
    doctor = db.get(Doctor, appointment.doctor_id)
    service = db.get(Service, appointment.service_id) if appointment.service_id else None
    return {
        "patient": patient.first_name if patient else "",
        "doctor": doctor.display_name if doctor else "",
        "service": service.name if service else "consulta",
        "date": appointment.appointment_date.strftime("%d/%m/%Y"),
        "time": dates.format_clock(appointment.start_time),
    }


def log_message(
    db: Session,
    *,
    organization_id: Any,
    recipient: str | None,
    payload: str | None,
    direction: str = "outbound",
    status: str = "sent",
    appointment_id: Any = None,
    metadata: dict[str, Any] | None = None,
    external_id: str | None = None,
) -> MessageLog:
    entry = MessageLog(
        organization_id=organization_id,
        appointment_id=appointment_id,
        external_id=external_id,
        channel="whatsapp",
        direction=direction,
        recipient=recipient,
        payload=payload,
        metadata_json=metadata,
        status=status,
        sent_at=dates.utcnow() if status == "sent" else None,
    )
    db.add(entry)
    return entry


def send_whatsapp(
    db: Session,
    *,
    organization_id: Any,
    to: str,
    text: str,
    appointment_id: Any = None,
    metadata: dict[str, Any] | None = None,
    buttons: list[str] | None = None,
) -> MessageLog:
    """Send a text (or a button prompt) and persist it.

    Delivery failures are recorded on the log row, not raised.
    """

    instance = whatsapp_instances.instance_name_for(db, organization_id)
    try:
        if buttons:
            message_id, response, _payload = send_interactive_buttons(
                to, text, buttons, instance=instance
            )
        else:
            message_id, response, _payload = send_text(to, text, instance=instance)
    except (httpx.HTTPError, WhatsAppDeliveryError) as exc:
        logger.warning(
            "whatsapp delivery failed",
            extra={"recipient": to, "error": str(exc)},
        )
        return log_message(
            db,
            organization_id=organization_id,
            recipient=to,
            payload=text,
            status="failed",
            appointment_id=appointment_id,
            metadata={**(metadata or {}), "error": str(exc), "instance": instance},
        )
    return log_message(
        db,
        organization_id=organization_id,
        recipient=to,
        payload=text,
        appointment_id=appointment_id,
        external_id=message_id,
        metadata={
            **(metadata or {}),
            "message_id": message_id,
            "instance": instance,
            "mocked": bool(response.get("mocked")),
        },
    )


def notify_appointment(
    db: Session, appointment: Appointment, template_name: str
) -> MessageLog | None:
    """Render ``template_name`` for the appointment's patient and send it."""

    if not settings.whatsapp_notifications_enabled:
        return None
    patient = db.get(Profile, appointment.patient_id)
    if patient is None or not patient.phone:
        logger.info(
            "patient has no phone, skipping whatsapp notification",
            extra={"appointment_id": str(appointment.id)},
        )
        return None
    text = render(template_name, **_message_values(db, appointment))
    return send_whatsapp(
        db,
        organization_id=appointment.organization_id,
        to=patient.phone,
        text=text,
        appointment_id=appointment.id,
        metadata={"template": template_name},
    )


def schedule_reminders(
    db: Session, appointment: Appointment, organization: Organization
) -> list[str]:
    """Enqueue the reminder and no-show tasks; returns the task names queued."""

    if not settings.reminders_enabled:
        return []

    tz = dates.organization_timezone(organization)
    start_utc = dates.combine_local(appointment.appointment_date, appointment.start_time, tz)
    end_utc = dates.combine_local(appointment.appointment_date, appointment.end_time, tz)
    now = dates.utcnow()
    patient = db.get(Profile, appointment.patient_id)
    values = _message_values(db, appointment)

    queued: list[str] = []
    try:
        for task_name, template_name, delta in REMINDER_TASKS:
            eta = start_utc - delta
            if eta <= now:
                continue
            celery_client.send_task(
                task_name,
                kwargs={
                    "appointment_id": str(appointment.id),
                    "scheduled_start": start_utc.isoformat(),
                    "phone": patient.phone if patient else None,
                    "message": render(template_name, **values),
                },
                eta=eta,
            )
            queued.append(task_name)
        celery_client.send_task(
            NO_SHOW_TASK,
            kwargs={"appointment_id": str(appointment.id)},
            eta=end_utc + NO_SHOW_GRACE,
        )
        queued.append(NO_SHOW_TASK)
    except OperationalError:
        logger.exception(
            "could not enqueue reminders",
            extra={"appointment_id": str(appointment.id)},
        )
    return queued
