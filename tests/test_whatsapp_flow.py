import pytest
from sqlalchemy import select

from agentsalud.core.config import settings
from agentsalud.models import Appointment, AppointmentStatus, MessageLog, Profile, UserRole

from conftest import TOMORROW

PHONE = "573001234567"


def upsert(text: str, *, from_me: bool = False, message_id: str = "MSG1") -> dict:
    return {
        "event": "messages.upsert",
        "data": {
            "key": {
                "remoteJid": f"{PHONE}@s.whatsapp.net",
                "fromMe": from_me,
                "id": message_id,
            },
            "pushName": "Carlos Ruiz",
            "message": {"conversation": text},
        },
    }


@pytest.fixture
def clinic(factory):
    organization = factory.organization()
    service = factory.service(organization)
    doctor = factory.doctor(organization, services=(service,))
    return {"organization": organization, "service": service, "doctor": doctor}


def send(client, organization, text, **kwargs):
    response = client.post(
        f"/api/webhooks/evolution/{organization.id}", json=upsert(text, **kwargs)
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_greeting_shows_menu_and_creates_patient(client, clinic, db_session):
    organization = clinic["organization"]

    body = send(client, organization, "Hola")

    assert body["status"] == "ok"
    assert body["processed"][0]["stage"] == "menu"
    assert body["processed"][0]["phone"] == PHONE
    patient = db_session.execute(
        select(Profile).where(Profile.phone == PHONE)
    ).scalar_one()
    assert patient.role == UserRole.PATIENT
    assert patient.email == f"wa-{PHONE}@{organization.slug}.whatsapp.local"
    assert patient.first_name == "Carlos"


def test_full_booking_conversation(client, clinic, db_session):
    organization = clinic["organization"]

    assert send(client, organization, "Quiero agendar una cita")["processed"][0]["stage"] == (
        "service_selection"
    )
    assert send(client, organization, "1")["processed"][0]["stage"] == "date_selection"

    offered = send(client, organization, "mañana")["processed"][0]
    assert offered["stage"] == "time_selection"
    assert offered["slot_count"] == 6

    booked = send(client, organization, "1")["processed"][0]
    assert booked["stage"] == "completed"
    appointment = booked["appointment"]
    assert appointment["origin"] == "whatsapp"
    assert appointment["appointment_date"] == TOMORROW.isoformat()
    assert appointment["start_time"] == "08:00"
    assert appointment["status"] == AppointmentStatus.CONFIRMED.value

    stored = db_session.execute(select(Appointment)).scalar_one()
    assert stored.service_id == clinic["service"].id


def test_same_day_request_is_refused(client, clinic, db_session):
    body = send(client, clinic["organization"], "Quiero agendar una consulta general hoy")

    result = body["processed"][0]
    assert result["stage"] == "date_selection"
    assert result["error"] == "ADVANCE_BOOKING_REQUIRED"
    assert db_session.execute(select(Appointment)).first() is None


def test_cancel_conversation(client, clinic, factory, db_session):
    organization = clinic["organization"]
    patient = factory.user(organization, phone=PHONE)
    appointment = factory.appointment(clinic["doctor"], patient, service=clinic["service"])

    assert send(client, organization, "Necesito cancelar mi cita")["processed"][0]["stage"] == (
        "cancel_selection"
    )
    result = send(client, organization, "1")["processed"][0]

    assert result["stage"] == "cancelled"
    assert result["appointment_id"] == str(appointment.id)
    db_session.refresh(appointment)
    assert appointment.status == AppointmentStatus.CANCELADA_PACIENTE


def test_cancel_without_upcoming_appointments_returns_menu(client, clinic):
    result = send(client, clinic["organization"], "cancelar")["processed"][0]

    assert result["stage"] == "menu"


def test_human_handoff_silences_bot(client, clinic):
    organization = clinic["organization"]

    assert send(client, organization, "Quiero hablar con un asesor")["processed"][0]["stage"] == "human"
    follow_up = send(client, organization, "gracias")["processed"][0]

    assert follow_up["stage"] == "human"
    assert follow_up["replies"] == []


def test_own_messages_are_ignored(client, clinic):
    body = send(client, clinic["organization"], "hola", from_me=True)

    assert body["processed"] == []


def test_inbound_messages_are_logged(client, clinic, db_session):
    send(client, clinic["organization"], "hola", message_id="ABC123")

    inbound = db_session.execute(
        select(MessageLog).where(MessageLog.direction == "inbound")
    ).scalar_one()
    assert inbound.external_id == "ABC123"
    assert inbound.payload == "hola"


def test_status_update_marks_message_log(client, clinic, db_session):
    organization = clinic["organization"]
    log = MessageLog(
        organization_id=organization.id,
        channel="whatsapp",
        recipient=PHONE,
        external_id="OUT-1",
        payload="Tu cita quedó confirmada",
        status="sent",
    )
    db_session.add(log)
    db_session.commit()

    response = client.post(
        f"/api/webhooks/evolution/{organization.id}",
        json={"event": "messages.update", "data": [{"keyId": "OUT-1", "status": "READ"}]},
    )

    assert response.status_code == 200
    assert response.json()["statusUpdates"] == 1
    db_session.refresh(log)
    assert log.status == "read"
    assert log.metadata_json["status_history"][0]["status"] == "READ"


def test_missing_event_is_rejected(client, clinic):
    response = client.post(
        f"/api/webhooks/evolution/{clinic['organization'].id}", json={"data": {}}
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_unknown_organization_is_not_found(client, clinic):
    response = client.post(
        "/api/webhooks/evolution/00000000-0000-0000-0000-000000000000", json=upsert("hola")
    )

    assert response.status_code == 404


def test_inactive_organization_is_not_found(client, clinic, db_session):
    organization = clinic["organization"]
    organization.is_active = False
    db_session.commit()

    response = client.post(f"/api/webhooks/evolution/{organization.id}", json=upsert("hola"))

    assert response.status_code == 404


def test_verification_handshake(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_verify_token", "secreto")
    params = {"hub.mode": "subscribe", "hub.challenge": "12345", "hub.verify_token": "secreto"}

    response = client.get("/api/webhooks/evolution", params=params)

    assert response.status_code == 200
    assert response.text == "12345"


def test_verification_rejects_wrong_token(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_verify_token", "secreto")
    params = {"hub.mode": "subscribe", "hub.challenge": "12345", "hub.verify_token": "otro"}

    response = client.get("/api/webhooks/evolution", params=params)

    assert response.status_code == 403
