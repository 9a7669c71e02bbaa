from datetime import time

import pytest
from conftest import TODAY, TOMORROW, auth_headers

from agentsalud.models import Appointment, AppointmentStatus, UserRole


@pytest.fixture
def clinic(factory):
    organization = factory.organization()
    service = factory.service(organization)
    doctor = factory.doctor(organization, services=(service,))
    patient = factory.user(organization, first_name="María")
    admin = factory.user(organization, UserRole.ADMIN)
    return {
        "organization": organization,
        "service": service,
        "doctor": doctor,
        "patient": patient,
        "admin": admin,
    }


def _booking(clinic, *, day=TOMORROW, start="09:00", **extra):
    payload = {
        "patientId": str(clinic["patient"].id),
        "doctorId": str(clinic["doctor"].id),
        "serviceId": str(clinic["service"].id),
        "appointmentDate": day.isoformat(),
        "startTime": start,
    }
    payload.update(extra)
    return payload


def test_patient_books_tomorrow(client, clinic):
    response = client.post(
        "/api/appointments", json=_booking(clinic), headers=auth_headers(clinic["patient"])
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["appointment_date"] == TOMORROW.isoformat()
    assert data["start_time"] == "09:00"
    assert data["end_time"] == "09:30"
    assert data["status"] == "confirmed"
    assert data["origin"] == "web"
    assert data["service"]["name"] == "Consulta General"


def test_patient_same_day_booking_is_rejected(client, clinic):
    response = client.post(
        "/api/appointments",
        json=_booking(clinic, day=TODAY, start="16:00"),
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 400
    body = response.json()
    assert set(body) == {"error", "code", "details"}
    assert body["code"] == "ADVANCE_BOOKING_REQUIRED"
    assert body["details"]["userRole"] == "patient"
    assert body["details"]["appliedRule"] == "standard"


def test_admin_same_day_booking_is_accepted(client, clinic, db_session):
    response = client.post(
        "/api/appointments",
        json=_booking(clinic, day=TODAY, start="16:00"),
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["appointment_date"] == TODAY.isoformat()
    assert data["origin"] == "staff"
    assert db_session.query(Appointment).count() == 1


def test_admin_cannot_book_a_slot_that_already_started(client, clinic):
    response = client.post(
        "/api/appointments",
        json=_booking(clinic, day=TODAY, start="09:00"),
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "PAST_TIME"


def test_double_booking_conflicts(client, clinic, factory):
    factory.appointment(clinic["doctor"], clinic["patient"], on=TOMORROW, start=time(9, 0))

    response = client.post(
        "/api/appointments",
        json=_booking(clinic, start="09:15"),
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "CONFLICT"
    assert body["details"]["conflictStart"] == "09:00"


def test_booking_outside_doctor_schedule(client, factory):
    organization = factory.organization()
    doctor = factory.doctor(organization, blocks=((time(8, 0), time(12, 0)),))
    patient = factory.user(organization)

    response = client.post(
        "/api/appointments",
        json={
            "patientId": str(patient.id),
            "doctorId": str(doctor.id),
            "appointmentDate": TOMORROW.isoformat(),
            "startTime": "15:00",
        },
        headers=auth_headers(patient),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "OUTSIDE_DOCTOR_SCHEDULE"


def test_doctor_must_offer_the_service(client, clinic, factory):
    other_service = factory.service(clinic["organization"], "Dermatología")

    response = client.post(
        "/api/appointments",
        json=_booking(clinic, serviceId=str(other_service.id)),
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 400
    assert response.json()["details"]["serviceId"] == str(other_service.id)


def test_patient_cannot_book_for_someone_else(client, clinic, factory):
    other_patient = factory.user(clinic["organization"])

    response = client.post(
        "/api/appointments",
        json=_booking(clinic, patientId=str(other_patient.id)),
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_cross_organization_booking_is_forbidden(client, clinic, factory):
    outsider = factory.user(factory.organization(), UserRole.ADMIN)

    response = client.post(
        "/api/appointments",
        json=_booking(clinic, organizationId=str(clinic["organization"].id)),
        headers=auth_headers(outsider),
    )
    assert response.status_code == 403
    assert set(response.json()) == {"error", "code", "details"}


def test_missing_fields_are_listed(client, clinic):
    response = client.post(
        "/api/appointments",
        json={"doctorId": str(clinic["doctor"].id)},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 400
    fields = {item["field"] for item in response.json()["details"]["fields"]}
    assert fields == {"patientId", "appointmentDate", "startTime"}


def test_malformed_payload_uses_envelope(client, clinic):
    response = client.post(
        "/api/appointments",
        json={"durationMinutes": 1},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_unauthenticated_requests_get_401(client):
    response = client.get("/api/appointments")
    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "UNAUTHORIZED"
    assert set(body) == {"error", "code", "details"}


def test_invalid_token_gets_401(client):
    response = client.get("/api/appointments", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_unknown_appointment_is_404(client, clinic):
    response = client.get(
        "/api/appointments/6f1c2a44-7d7e-4b55-9d0c-3f8e2b1a9c10",
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_list_is_scoped_by_role(client, clinic, factory):
    other_patient = factory.user(clinic["organization"])
    factory.appointment(clinic["doctor"], clinic["patient"], start=time(9, 0))
    factory.appointment(clinic["doctor"], other_patient, start=time(10, 0))

    mine = client.get("/api/appointments", headers=auth_headers(clinic["patient"])).json()
    assert [item["patient"]["id"] for item in mine["data"]] == [str(clinic["patient"].id)]

    everything = client.get("/api/appointments", headers=auth_headers(clinic["admin"])).json()
    assert everything["pagination"]["total"] == 2
    assert [item["start_time"] for item in everything["data"]] == ["09:00", "10:00"]

    doctor_profile = clinic["doctor"].profile
    for_doctor = client.get("/api/appointments", headers=auth_headers(doctor_profile)).json()
    assert for_doctor["pagination"]["total"] == 2


def test_list_filters_by_date(client, clinic, factory):
    factory.appointment(clinic["doctor"], clinic["patient"], on=TOMORROW)
    response = client.get(
        "/api/appointments",
        params={"date": TODAY.isoformat()},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.json()["data"] == []


def test_patient_cancels_own_appointment(client, clinic, factory):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])

    response = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "cancelada_paciente", "reason": "Viaje"},
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelada_paciente"


def test_patient_cannot_cancel_inside_deadline(client, clinic, factory):
    appointment = factory.appointment(
        clinic["doctor"], clinic["patient"], on=TODAY, start=time(11, 0)
    )

    response = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "cancelada_paciente"},
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "DEADLINE_PASSED"


def test_status_change_permission_matrix(client, clinic, factory):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])
    patient_headers = auth_headers(clinic["patient"])

    not_in_table = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "completed"},
        headers=patient_headers,
    )
    assert not_in_table.status_code == 400

    not_for_role = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "en_curso"},
        headers=patient_headers,
    )
    assert not_for_role.status_code == 403
    assert not_for_role.json()["details"]["userRole"] == "patient"

    doctor_headers = auth_headers(clinic["doctor"].profile)
    started = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "en_curso"},
        headers=doctor_headers,
    )
    assert started.status_code == 200
    finished = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "completed"},
        headers=doctor_headers,
    )
    assert finished.json()["data"]["status"] == "completed"


def test_unknown_status_value(client, clinic, factory):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])
    response = client.patch(
        f"/api/appointments/{appointment.id}/status",
        json={"status": "archived"},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 400


def test_transitions_endpoint(client, clinic, factory):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])

    response = client.get(
        f"/api/appointments/{appointment.id}/transitions",
        headers=auth_headers(clinic["patient"]),
    )
    data = response.json()["data"]
    assert data["currentStatus"] == "confirmed"
    assert data["isFinal"] is False
    assert [item["status"] for item in data["transitions"]] == ["reagendada", "cancelada_paciente"]


def test_history_is_hidden_from_patients(client, clinic, factory):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])

    response = client.get(
        f"/api/appointments/{appointment.id}/history", headers=auth_headers(clinic["patient"])
    )
    assert response.status_code == 403


def test_history_after_booking_and_cancelling(client, clinic):
    admin_headers = auth_headers(clinic["admin"])
    created = client.post("/api/appointments", json=_booking(clinic), headers=admin_headers)
    appointment_id = created.json()["data"]["id"]
    client.patch(
        f"/api/appointments/{appointment_id}/status",
        json={"status": "cancelada_clinica", "reason": "Agenda bloqueada"},
        headers=admin_headers,
    )

    response = client.get(f"/api/appointments/{appointment_id}/history", headers=admin_headers)
    assert response.status_code == 200
    statuses = sorted(entry["new_status"] for entry in response.json()["data"])
    assert statuses == ["cancelada_clinica", "confirmed"]


def test_patient_reschedules(client, clinic, factory, db_session):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])

    response = client.patch(
        f"/api/appointments/{appointment.id}/reschedule",
        json={"appointmentDate": TOMORROW.isoformat(), "startTime": "11:00"},
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["start_time"] == "11:00"
    assert data["end_time"] == "11:30"
    assert data["status"] == AppointmentStatus.REAGENDADA.value


def test_patient_cannot_reschedule_into_today(client, clinic, factory):
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])

    response = client.patch(
        f"/api/appointments/{appointment.id}/reschedule",
        json={"appointmentDate": TODAY.isoformat(), "startTime": "16:00"},
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "ADVANCE_BOOKING_REQUIRED"


def test_message_is_interpreted_without_booking(client, clinic, db_session):
    response = client.post(
        "/api/appointments",
        json={"message": "Quiero agendar una consulta general mañana a las 3pm"},
        headers=auth_headers(clinic["patient"]),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["intent"] == "book"
    assert data["entities"]["date"] == TOMORROW.isoformat()
    assert data["entities"]["time"] == "15:00"
    assert data["entities"]["serviceId"] == str(clinic["service"].id)
    assert data["suggestedSlots"][0]["time"] == "15:00"
    assert db_session.query(Appointment).count() == 0


def test_booking_at_a_location_the_doctor_does_not_attend(client, factory):
    organization = factory.organization()
    norte = factory.location(organization, "Sede Norte")
    sur = factory.location(organization, "Sede Sur")
    doctor = factory.doctor(organization, location=norte)
    patient = factory.user(organization)
    payload = {
        "patientId": str(patient.id),
        "doctorId": str(doctor.id),
        "appointmentDate": TOMORROW.isoformat(),
        "startTime": "09:00",
    }

    rejected = client.post(
        "/api/appointments",
        json={**payload, "locationId": str(sur.id)},
        headers=auth_headers(patient),
    )
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "OUTSIDE_DOCTOR_SCHEDULE"

    accepted = client.post(
        "/api/appointments",
        json={**payload, "locationId": str(norte.id)},
        headers=auth_headers(patient),
    )
    assert accepted.status_code == 201


def test_reschedule_cannot_run_past_midnight(client, factory):
    organization = factory.organization(booking_window_end="23:59")
    doctor = factory.doctor(organization, blocks=((time(0, 0), time(23, 59)),))
    patient = factory.user(organization)
    admin = factory.user(organization, UserRole.ADMIN)
    appointment = factory.appointment(doctor, patient, minutes=30)

    response = client.patch(
        f"/api/appointments/{appointment.id}/reschedule",
        json={"appointmentDate": TOMORROW.isoformat(), "startTime": "23:45"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_reschedule_into_a_taken_slot_conflicts(client, clinic, factory):
    factory.appointment(clinic["doctor"], factory.user(clinic["organization"]), start=time(11, 0))
    appointment = factory.appointment(clinic["doctor"], clinic["patient"])

    response = client.patch(
        f"/api/appointments/{appointment.id}/reschedule",
        json={"appointmentDate": TOMORROW.isoformat(), "startTime": "11:15"},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "CONFLICT"
    assert body["details"]["conflictStart"] == "11:00"
