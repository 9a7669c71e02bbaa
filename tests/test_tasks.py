from datetime import datetime, time, timezone

import httpx
import pytest
from sqlalchemy import select

from agentsalud.core.config import settings as api_settings
from agentsalud.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusHistory,
    WhatsAppInstance,
    WhatsAppInstanceStatus,
)
from agentsalud.services import notifications
from agentsalud_jobs import db as jobs_db
from agentsalud_jobs import tasks
from agentsalud_jobs.config import settings as worker_settings

from conftest import FROZEN_NOW, SATURDAY, TestingSessionLocal

# TOMORROW 09:00 in America/Bogota.
TOMORROW_9AM_UTC = "2025-03-06T14:00:00+00:00"


@pytest.fixture
def mock_delivery(monkeypatch):
    monkeypatch.setattr(worker_settings, "whatsapp_mock_mode", True)


@pytest.fixture
def worker_db(monkeypatch, db_session):
    monkeypatch.setattr(jobs_db, "SessionLocal", TestingSessionLocal)
    return db_session


@pytest.fixture
def booked(factory, worker_db):
    organization = factory.organization()
    doctor = factory.doctor(organization)
    patient = factory.user(organization, phone="573001234567")
    return factory.appointment(doctor, patient)


def test_d1_reminder_is_dispatched_one_day_early(mock_delivery, booked):
    result = tasks.send_reminder_d1(
        str(booked.id),
        scheduled_start=TOMORROW_9AM_UTC,
        phone="+57 300 123 4567",
        message="Recordatorio",
    )

    assert result["reminder_window"] == "D-1"
    assert result["dispatch_at"] == "2025-03-05T14:00:00+00:00"
    assert result["sent"] is True
    assert result["message_id"] == "mocked-573001234567"


def test_h2_reminder_is_dispatched_two_hours_early(mock_delivery, booked):
    result = tasks.send_reminder_h2(
        str(booked.id), scheduled_start="2025-03-06T14:00:00", phone="3001234567", message="Hoy"
    )

    assert result["reminder_window"] == "H-2"
    assert result["dispatch_at"] == "2025-03-06T12:00:00+00:00"
    assert result["sent"] is True


def test_reminder_without_phone_is_not_sent(mock_delivery, booked):
    result = tasks.send_reminder_h2(str(booked.id), scheduled_start=TOMORROW_9AM_UTC)

    assert result["sent"] is False
    assert result["message_id"] is None
    assert "skipped" not in result


def test_reminder_for_cancelled_appointment_is_skipped(mock_delivery, booked, worker_db):
    booked.status = AppointmentStatus.CANCELADA_PACIENTE
    worker_db.commit()

    result = tasks.send_reminder_h2(
        str(booked.id), scheduled_start=TOMORROW_9AM_UTC, phone="3001234567", message="Hoy"
    )

    assert result["sent"] is False
    assert result["skipped"] == "status"


def test_reminder_for_moved_appointment_is_skipped(mock_delivery, booked, worker_db):
    booked.start_time = time(11, 0)
    booked.end_time = time(11, 30)
    worker_db.commit()

    result = tasks.send_reminder_d1(
        str(booked.id), scheduled_start=TOMORROW_9AM_UTC, phone="3001234567", message="Mañana"
    )

    assert result["sent"] is False
    assert result["skipped"] == "rescheduled"


def test_reminder_for_unknown_appointment_is_skipped(mock_delivery, worker_db):
    result = tasks.send_reminder_h2(
        "appt-1", scheduled_start=TOMORROW_9AM_UTC, phone="3001234567", message="Hoy"
    )

    assert result["skipped"] == "missing"
    assert result["sent"] is False


def test_reminder_goes_through_the_organization_instance(monkeypatch, booked, worker_db):
    worker_db.add(
        WhatsAppInstance(
            organization_id=booked.organization_id,
            instance_name="clinica-norte",
            status=WhatsAppInstanceStatus.ACTIVE,
        )
    )
    worker_db.commit()
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"key": {"id": "EVO-9"}})

    real_client = httpx.Client
    monkeypatch.setattr(worker_settings, "whatsapp_mock_mode", False)
    monkeypatch.setattr(worker_settings, "evolution_api_key", "clave")
    monkeypatch.setattr(worker_settings, "evolution_instance_name", "global")
    monkeypatch.setattr(worker_settings, "evolution_api_base_url", "http://evolution.local")
    monkeypatch.setattr(
        tasks.httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    result = tasks.send_reminder_h2(
        str(booked.id), scheduled_start=TOMORROW_9AM_UTC, phone="3001234567", message="Hoy"
    )

    assert result["message_id"] == "EVO-9"
    assert seen["url"] == "http://evolution.local/message/sendText/clinica-norte"


def test_unconfigured_provider_skips_delivery(monkeypatch):
    monkeypatch.setattr(worker_settings, "whatsapp_mock_mode", False)
    monkeypatch.setattr(worker_settings, "evolution_instance_name", "")

    assert tasks.send_whatsapp_text("3001234567", "hola") is None


def test_flag_no_show_marks_missed_appointment(monkeypatch, booked, worker_db):
    # 10:00 in Bogota, half an hour after the 09:00-09:30 slot ended.
    monkeypatch.setattr(tasks, "_now", lambda: datetime(2025, 3, 6, 15, 0, tzinfo=timezone.utc))

    result = tasks.flag_no_show(str(booked.id))

    assert result["flagged"] is True
    worker_db.expire_all()
    assert worker_db.get(Appointment, booked.id).status == AppointmentStatus.NO_SHOW
    entry = worker_db.execute(select(AppointmentStatusHistory)).scalar_one()
    assert entry.previous_status == "confirmed"
    assert entry.new_status == "no_show"
    assert entry.user_role == "system"


def test_flag_no_show_waits_for_the_slot_to_end(monkeypatch, booked, worker_db):
    monkeypatch.setattr(tasks, "_now", lambda: FROZEN_NOW)

    result = tasks.flag_no_show(str(booked.id))

    assert result == {"appointment_id": str(booked.id), "flagged": False, "skipped": "not_finished"}
    worker_db.expire_all()
    assert worker_db.get(Appointment, booked.id).status == AppointmentStatus.CONFIRMED


def test_flag_no_show_leaves_attended_appointments(monkeypatch, booked, worker_db):
    booked.status = AppointmentStatus.COMPLETED
    worker_db.commit()
    monkeypatch.setattr(tasks, "_now", lambda: datetime(2025, 3, 6, 15, 0, tzinfo=timezone.utc))

    result = tasks.flag_no_show(str(booked.id))

    assert result["flagged"] is False
    assert result["skipped"] == "status"
    assert result["status"] == "completed"


class RecordingProducer:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def send_task(self, name, kwargs=None, eta=None):
        self.calls.append((name, {"kwargs": kwargs, "eta": eta}))


@pytest.fixture
def producer(monkeypatch):
    recorder = RecordingProducer()
    monkeypatch.setattr(api_settings, "reminders_enabled", True)
    monkeypatch.setattr(notifications.celery_client, "send_task", recorder.send_task)
    return recorder


def test_schedule_reminders_skips_past_windows(producer, factory, db_session):
    organization = factory.organization()
    doctor = factory.doctor(organization)
    patient = factory.user(organization, phone="573001234567")
    appointment = factory.appointment(doctor, patient)

    queued = notifications.schedule_reminders(db_session, appointment, organization)

    assert queued == ["jobs.send_reminder_h2", "jobs.flag_no_show"]
    h2_kwargs = producer.calls[0][1]["kwargs"]
    assert h2_kwargs["phone"] == "573001234567"
    assert h2_kwargs["scheduled_start"] == "2025-03-06T14:00:00+00:00"
    assert "09:00" in h2_kwargs["message"]


def test_schedule_reminders_queues_everything_for_later_dates(producer, factory, db_session):
    organization = factory.organization()
    doctor = factory.doctor(organization)
    patient = factory.user(organization)
    appointment = factory.appointment(doctor, patient, on=SATURDAY, start=time(11, 0))

    queued = notifications.schedule_reminders(db_session, appointment, organization)

    assert queued == ["jobs.send_reminder_d1", "jobs.send_reminder_h2", "jobs.flag_no_show"]


def test_schedule_reminders_disabled(factory, db_session):
    organization = factory.organization()
    doctor = factory.doctor(organization)
    appointment = factory.appointment(doctor, factory.user(organization))

    assert notifications.schedule_reminders(db_session, appointment, organization) == []
