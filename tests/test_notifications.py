import httpx
import pytest
from sqlalchemy import select

from agentsalud.core.config import settings
from agentsalud.models import MessageLog
from agentsalud.services import notifications, whatsapp_client
from agentsalud.services.whatsapp_templates import render


def test_mock_mode_never_leaves_the_process():
    message_id, response, payload = whatsapp_client.send_text("+57 300-123-4567", "Hola")

    assert message_id.startswith("mocked-")
    assert response["mocked"] is True
    assert payload == {"number": "573001234567", "text": "Hola"}


def test_buttons_are_limited_to_three():
    with pytest.raises(ValueError):
        whatsapp_client.send_interactive_buttons("573001234567", "Elige", ["a", "b", "c", "d"])


def test_live_mode_requires_credentials(monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_mock_mode", False)
    monkeypatch.setattr(settings, "evolution_api_key", "")

    with pytest.raises(whatsapp_client.WhatsAppConfigurationError):
        whatsapp_client.send_text("573001234567", "Hola")


def test_live_mode_posts_to_evolution(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["apikey"] = request.headers["apikey"]
        return httpx.Response(200, json={"key": {"id": "EVO-1"}})

    real_client = httpx.Client
    monkeypatch.setattr(settings, "whatsapp_mock_mode", False)
    monkeypatch.setattr(settings, "evolution_api_key", "clave")
    monkeypatch.setattr(settings, "evolution_instance_name", "clinica")
    monkeypatch.setattr(settings, "evolution_api_base_url", "http://evolution.local/")
    monkeypatch.setattr(
        whatsapp_client.httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    message_id, _response, _payload = whatsapp_client.send_text("573001234567", "Hola")

    assert message_id == "EVO-1"
    assert seen["url"] == "http://evolution.local/message/sendText/clinica"
    assert seen["apikey"] == "clave"


def test_failed_delivery_is_logged_not_raised(monkeypatch, factory, db_session):
    organization = factory.organization()
    monkeypatch.setattr(settings, "whatsapp_mock_mode", False)
    monkeypatch.setattr(settings, "evolution_api_key", "")

    entry = notifications.send_whatsapp(
        db_session, organization_id=organization.id, to="573001234567", text="Hola"
    )

    assert entry.status == "failed"
    assert "EVOLUTION_API_KEY" in entry.metadata_json["error"]


def test_notify_appointment_renders_template(factory, db_session):
    organization = factory.organization()
    service = factory.service(organization)
    doctor = factory.doctor(organization, services=(service,))
    patient = factory.user(organization, first_name="Lucía", phone="573001234567")
    appointment = factory.appointment(doctor, patient, service=service)

    entry = notifications.notify_appointment(db_session, appointment, "cita_confirmada")
    db_session.commit()

    assert entry.status == "sent"
    assert entry.external_id.startswith("mocked-")
    assert "Lucía" in entry.payload
    assert "06/03/2025" in entry.payload
    stored = db_session.execute(select(MessageLog)).scalar_one()
    assert stored.appointment_id == appointment.id


def test_notify_appointment_without_phone(factory, db_session):
    organization = factory.organization()
    doctor = factory.doctor(organization)
    appointment = factory.appointment(doctor, factory.user(organization))

    assert notifications.notify_appointment(db_session, appointment, "cita_confirmada") is None


def test_unknown_template_raises():
    with pytest.raises(KeyError):
        render("no_existe")
