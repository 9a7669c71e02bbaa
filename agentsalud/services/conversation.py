"""Inbound WhatsApp conversation flow.

Every contact moves through ``menu -> service -> date -> time -> booked``;
the stage lives in Redis (see :mod:`agentsalud.services.bot_state`). Bookings
are made as the patient, so the same-day restriction applies on this channel.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentsalud.errors import ApiError
from agentsalud.models import (
    Appointment,
    AppointmentOrigin,
    AppointmentStatus,
    Organization,
    Profile,
    Service,
    UserRole,
)
from agentsalud.services import (
    appointments,
    availability,
    booking_rules,
    booking_settings,
    bot_state,
    dates,
    entity_extraction,
    notifications,
)
from agentsalud.services.bot_state import BotState

logger = logging.getLogger(__name__)

SESSION_WINDOW = timedelta(hours=24)
SLOT_OPTIONS_LIMIT = 6
MENU_PROMPT = "¿En qué podemos ayudarte? Elige una opción para continuar:"
MENU_BUTTONS = ["Agendar cita", "Cancelar cita", "Hablar con un asesor"]
_RESET_WORDS = {"menu", "inicio", "salir", "hola", "buenas", "buenos dias", "buenas tardes"}
_UPCOMING_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.PENDIENTE_PAGO,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.REAGENDADA,
)


def parse_timestamp(raw_timestamp: Any) -> datetime:
    """Convert WhatsApp timestamps (seconds since epoch) to aware datetimes."""

    if not raw_timestamp:
        return dates.utcnow()
    try:
        return datetime.fromtimestamp(int(raw_timestamp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.debug("Invalid timestamp payload received: %s", raw_timestamp)
        return dates.utcnow()


def jid_to_phone(jid: str | None) -> str | None:
    """Extract the numeric portion of a WhatsApp JID."""

    if not jid:
        return None
    digits = re.sub(r"\D", "", jid.split("@", 1)[0])
    return digits or None


def extract_evolution_message(raw_message: dict[str, Any]) -> dict[str, Any] | None:
    """Flatten an Evolution ``MESSAGES_UPSERT`` item; ``None`` for our own echoes."""

    key = raw_message.get("key", {}) or {}
    if key.get("fromMe"):
        return None
    body = raw_message.get("message", {}) or {}
    text = (
        body.get("conversation")
        or (body.get("extendedTextMessage") or {}).get("text")
        or (body.get("buttonsResponseMessage") or {}).get("selectedDisplayText")
        or (body.get("listResponseMessage") or {}).get("title")
        or ""
    )
    return {
        "id": key.get("id") or raw_message.get("id"),
        "phone": jid_to_phone(key.get("remoteJid")),
        "text": text,
        "push_name": raw_message.get("pushName"),
        "timestamp": parse_timestamp(raw_message.get("messageTimestamp")),
        "message_type": raw_message.get("messageType"),
    }


def ensure_patient_profile(
    db: Session,
    *,
    organization: Organization,
    phone: str,
    display_name: str | None,
) -> Profile:
    """Return the patient for the phone number, creating a placeholder if needed."""

    stmt = select(Profile).where(
        Profile.organization_id == organization.id,
        Profile.phone == phone,
        Profile.role == UserRole.PATIENT,
    )
    patient = db.execute(stmt).scalars().first()
    if patient:
        return patient

    first_name, _, last_name = (display_name or f"Paciente {phone[-4:]}").partition(" ")
    patient = Profile(
        organization_id=organization.id,
        email=f"wa-{phone}@{organization.slug}.whatsapp.local",
        first_name=first_name or "Paciente",
        last_name=last_name or "WhatsApp",
        phone=phone,
        role=UserRole.PATIENT,
    )
    db.add(patient)
    db.flush()
    logger.info(
        "patient profile created from whatsapp",
        extra={"organization_id": str(organization.id), "patient_id": str(patient.id)},
    )
    return patient


def service_options(db: Session, organization_id: UUID) -> list[dict[str, Any]]:
    """Active services of the organization, in menu order."""

    stmt = (
        select(Service)
        .where(Service.organization_id == organization_id, Service.is_active.is_(True))
        .order_by(Service.name)
    )
    return [
        {"id": str(service.id), "name": service.name, "duration": service.duration_minutes}
        for service in db.execute(stmt).scalars()
    ]


def parse_choice(user_input: str, options: Sequence[dict[str, Any]]) -> dict[str, Any] | None:
    """Resolve a numbered menu answer."""

    normalized = user_input.strip().rstrip(".")
    if normalized.isdigit():
        index = int(normalized) - 1
        if 0 <= index < len(options):
            return options[index]
    return None


def format_service_prompt(options: Sequence[dict[str, Any]]) -> str:
    lines = ["¡Perfecto! Elige un servicio escribiendo el número correspondiente:"]
    for index, option in enumerate(options, start=1):
        lines.append(f"{index}. {option['name']} ({option['duration']} min)")
    return "\n".join(lines)


def format_slot_prompt(slots: Sequence[dict[str, Any]], service_name: str) -> str:
    lines = [f"Horarios disponibles para {service_name}:"]
    for index, slot in enumerate(slots, start=1):
        day = dates.parse_iso_date(slot["date"]).strftime("%d/%m/%Y")
        lines.append(f"{index}. {day} {slot['time']} con {slot['doctorName']}")
    lines.append("Responde con el número del horario que prefieras.")
    return "\n".join(lines)


class ConversationHandler:
    """Drive one inbound message through the conversation state machine."""

    def __init__(self, db: Session, organization: Organization, phone: str) -> None:
        self.db = db
        self.organization = organization
        self.phone = phone
        self.replies: list[str] = []

    def reply(self, text: str, *, stage: str, buttons: list[str] | None = None) -> None:
        notifications.send_whatsapp(
            self.db,
            organization_id=self.organization.id,
            to=self.phone,
            text=text,
            metadata={"stage": stage},
            buttons=buttons,
        )
        self.replies.append(text)

    def result(self, stage: str, **extra: Any) -> dict[str, Any]:
        return {"phone": self.phone, "stage": stage, "replies": self.replies, **extra}

    def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        org_id = self.organization.id
        text = message.get("text") or ""
        timestamp = message.get("timestamp") or dates.utcnow()
        notifications.log_message(
            self.db,
            organization_id=org_id,
            recipient=self.phone,
            payload=text,
            direction="inbound",
            status="received",
            external_id=message.get("id"),
            metadata={"type": message.get("message_type")},
        )

        returning = bot_state.last_interaction_within(org_id, self.phone, SESSION_WINDOW, timestamp)
        bot_state.record_last_interaction(org_id, self.phone, timestamp)

        patient = ensure_patient_profile(
            self.db,
            organization=self.organization,
            phone=self.phone,
            display_name=message.get("push_name"),
        )
        state = bot_state.get_state(org_id, self.phone)
        context = bot_state.get_context(org_id, self.phone)
        normalized = entity_extraction.normalize_text(text)

        if not returning and state != BotState.MENU_INICIAL:
            bot_state.reset(org_id, self.phone)
            state, context = BotState.MENU_INICIAL, {}

        if normalized in _RESET_WORDS:
            bot_state.reset(org_id, self.phone)
            return self.show_menu()

        if state == BotState.HUMANO:
            return self.result("human")

        if state == BotState.AGENDAR and context:
            return self.continue_booking(patient, context, text)
        if state == BotState.CANCELAR and context:
            return self.continue_cancellation(patient, context, text)

        today = dates.organization_today(self.organization)
        services = service_options(self.db, org_id)
        entities = entity_extraction.extract(
            text,
            today=today,
            services=[(option["id"], option["name"]) for option in services],
        )
        if normalized in {"1", "agendar cita"}:
            entities.intent = entity_extraction.INTENT_BOOK
        elif normalized in {"2", "cancelar cita"}:
            entities.intent = entity_extraction.INTENT_CANCEL
        elif normalized in {"3", "hablar con un asesor"}:
            entities.intent = entity_extraction.INTENT_HUMAN

        if entities.intent == entity_extraction.INTENT_HUMAN:
            bot_state.set_state(org_id, self.phone, BotState.HUMANO)
            self.reply("Un asesor se comunicará contigo en breve.", stage="human")
            return self.result("human")
        if entities.intent == entity_extraction.INTENT_CANCEL:
            return self.start_cancellation(patient)
        if entities.intent in (
            entity_extraction.INTENT_BOOK,
            entity_extraction.INTENT_AVAILABILITY,
            entity_extraction.INTENT_RESCHEDULE,
        ):
            return self.start_booking(patient, services, entities)
        return self.show_menu()

    def show_menu(self) -> dict[str, Any]:
        self.reply(MENU_PROMPT, stage="menu", buttons=MENU_BUTTONS)
        return self.result("menu")

    def start_booking(
        self,
        patient: Profile,
        services: list[dict[str, Any]],
        entities: entity_extraction.ExtractedEntities,
    ) -> dict[str, Any]:
        if not services:
            self.reply(
                "Estamos actualizando nuestra agenda. Intenta nuevamente más tarde.",
                stage="unavailable",
            )
            bot_state.reset(self.organization.id, self.phone)
            return self.result("unavailable")

        context: dict[str, Any] = {
            "stage": "service_selection",
            "services": services,
            "patient_id": str(patient.id),
            "period": entities.period,
            "time": dates.format_clock(entities.time) if entities.time else None,
        }
        bot_state.set_state(self.organization.id, self.phone, BotState.AGENDAR)

        if entities.service_id:
            context["service_id"] = entities.service_id
            context["service_name"] = entities.service_name
            if entities.date:
                return self.offer_slots(context, entities.date.isoformat())
            context["stage"] = "date_selection"
            bot_state.set_context(self.organization.id, self.phone, context)
            self.reply(self._date_prompt(entities.service_name), stage="date_selection")
            return self.result("date_selection")

        if entities.date:
            context["date"] = entities.date.isoformat()
        bot_state.set_context(self.organization.id, self.phone, context)
        self.reply(format_service_prompt(services), stage="service_selection")
        return self.result("service_selection")

    def continue_booking(
        self, patient: Profile, context: dict[str, Any], text: str
    ) -> dict[str, Any]:
        stage = context.get("stage")
        if stage == "service_selection":
            options = context.get("services", [])
            selection = parse_choice(text, options)
            if selection is None:
                match = entity_extraction.match_service(
                    text, [(option["id"], option["name"]) for option in options]
                )
                selection = {"id": match[0], "name": match[1]} if match else None
            if selection is None:
                self.reply(
                    "No entendí la opción. Responde con el número del servicio.",
                    stage="service_selection",
                )
                return self.result("service_selection", error="invalid_choice")
            context["service_id"] = selection["id"]
            context["service_name"] = selection["name"]
            if context.get("date"):
                return self.offer_slots(context, context["date"])
            context["stage"] = "date_selection"
            bot_state.set_context(self.organization.id, self.phone, context)
            self.reply(self._date_prompt(selection["name"]), stage="date_selection")
            return self.result("date_selection")

        if stage == "date_selection":
            today = dates.organization_today(self.organization)
            selected = entity_extraction.extract_date(text, today)
            if selected is None:
                self.reply(
                    "Fecha inválida. Escribe por ejemplo 'mañana', 'viernes' o 15/03.",
                    stage="date_selection",
                )
                return self.result("date_selection", error="invalid_date")
            context["period"] = entity_extraction.extract_period(text) or context.get("period")
            requested = entity_extraction.extract_time(text)
            if requested:
                context["time"] = dates.format_clock(requested)
            return self.offer_slots(context, selected.isoformat())

        if stage == "time_selection":
            return self.book(patient, context, text)

        bot_state.reset(self.organization.id, self.phone)
        return self.show_menu()

    def offer_slots(self, context: dict[str, Any], date_text: str) -> dict[str, Any]:
        target_date = dates.parse_iso_date(date_text)
        rules = booking_settings.get_booking_settings(self.db, self.organization)
        verdict = booking_rules.validate_date(
            target_date,
            role=UserRole.PATIENT,
            booking_settings=rules,
            today=dates.organization_today(self.organization),
        )
        if not verdict.is_valid:
            context["stage"] = "date_selection"
            context.pop("date", None)
            bot_state.set_context(self.organization.id, self.phone, context)
            self.reply(f"{verdict.reason}. Indica otra fecha.", stage="date_selection")
            return self.result("date_selection", error=verdict.code)

        preferred = dates.parse_clock(context["time"]) if context.get("time") else None
        slots = availability.suggest_slots(
            self.db,
            organization=self.organization,
            role=UserRole.PATIENT,
            target_date=target_date,
            service_id=UUID(context["service_id"]),
            preferred_time=preferred,
            period=context.get("period"),
            limit=SLOT_OPTIONS_LIMIT,
        )
        if not slots:
            context["stage"] = "date_selection"
            bot_state.set_context(self.organization.id, self.phone, context)
            self.reply(
                f"No encontramos horarios disponibles el {target_date.strftime('%d/%m/%Y')}. "
                "Indica otra fecha.",
                stage="date_selection",
            )
            return self.result("date_selection", error="no_slots")

        context["stage"] = "time_selection"
        context["slot_options"] = [
            {
                "date": slot["date"],
                "time": slot["time"],
                "doctorId": slot["doctorId"],
                "doctorName": slot["doctorName"],
                "locationId": slot["locationId"],
            }
            for slot in slots
        ]
        bot_state.set_context(self.organization.id, self.phone, context)
        self.reply(
            format_slot_prompt(context["slot_options"], context.get("service_name", "tu cita")),
            stage="time_selection",
        )
        return self.result("time_selection", slot_count=len(slots))

    def book(self, patient: Profile, context: dict[str, Any], text: str) -> dict[str, Any]:
        options = context.get("slot_options", [])
        choice = parse_choice(text, options)
        if choice is None:
            requested = entity_extraction.extract_time(text)
            wanted = dates.format_clock(requested) if requested else None
            choice = next((option for option in options if option["time"] == wanted), None)
        if choice is None:
            self.reply(
                "No entendí el horario. Elige uno de los horarios de la lista.",
                stage="time_selection",
            )
            return self.result("time_selection", error="invalid_slot")

        request = appointments.BookingRequest(
            patient_id=patient.id,
            doctor_id=UUID(choice["doctorId"]),
            appointment_date=dates.parse_iso_date(choice["date"]),
            start_time=dates.parse_clock(choice["time"]),
            service_id=UUID(context["service_id"]),
            location_id=UUID(choice["locationId"]) if choice.get("locationId") else None,
            organization_id=self.organization.id,
            origin=AppointmentOrigin.WHATSAPP,
        )
        try:
            appointment = appointments.create_appointment(
                self.db, request, actor=patient, notify=False
            )
        except ApiError as exc:
            logger.info(
                "whatsapp booking rejected",
                extra={"code": exc.code, "organization_id": str(self.organization.id)},
            )
            context["stage"] = "date_selection"
            context.pop("slot_options", None)
            bot_state.set_context(self.organization.id, self.phone, context)
            self.reply(f"{exc.message}. Indica otra fecha.", stage="date_selection")
            return self.result("date_selection", error=exc.code)

        day = appointment.appointment_date.strftime("%d/%m/%Y")
        status_text = (
            "confirmada" if appointment.status == AppointmentStatus.CONFIRMED else "registrada"
        )
        self.reply(
            f"Tu cita de {context.get('service_name', 'consulta')} con {choice['doctorName']} "
            f"quedó {status_text} para el {day} a las {choice['time']}.",
            stage="completed",
        )
        bot_state.reset(self.organization.id, self.phone)
        return self.result(
            "completed",
            appointment=appointments.serialize_appointment(self.db, appointment),
        )

    def start_cancellation(self, patient: Profile) -> dict[str, Any]:
        today = dates.organization_today(self.organization)
        stmt = (
            select(Appointment)
            .where(
                Appointment.patient_id == patient.id,
                Appointment.appointment_date >= today,
                Appointment.status.in_(_UPCOMING_STATUSES),
            )
            .order_by(Appointment.appointment_date, Appointment.start_time)
            .limit(5)
        )
        upcoming = list(self.db.execute(stmt).scalars())
        if not upcoming:
            self.reply("No tienes citas próximas para cancelar.", stage="menu")
            bot_state.reset(self.organization.id, self.phone)
            return self.result("menu")

        options = [
            {
                "id": str(item.id),
                "label": f"{item.appointment_date.strftime('%d/%m/%Y')} {dates.format_clock(item.start_time)}",
            }
            for item in upcoming
        ]
        bot_state.set_state(self.organization.id, self.phone, BotState.CANCELAR)
        bot_state.set_context(
            self.organization.id,
            self.phone,
            {"stage": "cancel_selection", "appointments": options},
        )
        lines = ["¿Qué cita deseas cancelar?"]
        lines.extend(f"{index}. {option['label']}" for index, option in enumerate(options, start=1))
        self.reply("\n".join(lines), stage="cancel_selection")
        return self.result("cancel_selection")

    def continue_cancellation(
        self, patient: Profile, context: dict[str, Any], text: str
    ) -> dict[str, Any]:
        choice = parse_choice(text, context.get("appointments", []))
        if choice is None:
            self.reply("Responde con el número de la cita a cancelar.", stage="cancel_selection")
            return self.result("cancel_selection", error="invalid_choice")

        appointment = self.db.get(Appointment, UUID(choice["id"]))
        if appointment is None or appointment.patient_id != patient.id:
            bot_state.reset(self.organization.id, self.phone)
            return self.show_menu()
        try:
            appointments.update_status(
                self.db,
                appointment,
                AppointmentStatus.CANCELADA_PACIENTE,
                actor=patient,
                reason="Cancelada por WhatsApp",
            )
        except ApiError as exc:
            bot_state.reset(self.organization.id, self.phone)
            self.reply(exc.message, stage="menu")
            return self.result("menu", error=exc.code)

        bot_state.reset(self.organization.id, self.phone)
        return self.result("cancelled", appointment_id=choice["id"])

    @staticmethod
    def _date_prompt(service_name: str | None) -> str:
        return (
            f"¡Muy bien! ¿Para qué fecha quieres tu cita de {service_name or 'consulta'}? "
            "Puedes escribir 'mañana', un día de la semana o una fecha como 15/03."
        )


def handle_inbound_message(
    db: Session, organization: Organization, message: dict[str, Any]
) -> dict[str, Any] | None:
    """Process one normalized inbound message; ``None`` when it has no sender."""

    phone = message.get("phone")
    if not phone:
        return None
    return ConversationHandler(db, organization, phone).handle(message)
