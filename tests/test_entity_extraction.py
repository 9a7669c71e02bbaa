from datetime import date, time

import pytest

from agentsalud.services import entity_extraction as ee

TODAY = date(2025, 3, 5)  # Wednesday
SERVICES = [("svc-1", "Consulta General"), ("svc-2", "Control Pediátrico")]


@pytest.mark.parametrize(
    "text, intent",
    [
        ("Quiero agendar una cita", ee.INTENT_BOOK),
        ("Necesito cancelar mi cita del viernes", ee.INTENT_CANCEL),
        ("Puedo reagendar para otro día?", ee.INTENT_RESCHEDULE),
        ("Qué disponibilidad tienen el lunes?", ee.INTENT_AVAILABILITY),
        ("Quiero hablar con un asesor", ee.INTENT_HUMAN),
        ("Cuánto cuesta?", ee.INTENT_INFO),
        ("Cuál es la dirección?", ee.INTENT_INFO),
    ],
)
def test_detect_intent(text, intent):
    assert ee.detect_intent(text) == intent


@pytest.mark.parametrize(
    "text, expected",
    [
        ("hoy", date(2025, 3, 5)),
        ("mañana", date(2025, 3, 6)),
        ("pasado mañana", date(2025, 3, 7)),
        ("el viernes", date(2025, 3, 7)),
        ("el miércoles", date(2025, 3, 12)),
        ("el 15 de marzo", date(2025, 3, 15)),
        ("15/03", date(2025, 3, 15)),
        ("02/03", date(2026, 3, 2)),
        ("10/04/2025", date(2025, 4, 10)),
        ("2025-03-20", date(2025, 3, 20)),
    ],
)
def test_extract_date(text, expected):
    assert ee.extract_date(text, TODAY) == expected


def test_morning_period_is_not_tomorrow():
    assert ee.extract_date("en la mañana", TODAY) is None
    assert ee.extract_date("mañana en la mañana", TODAY) == date(2025, 3, 6)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("a las 3pm", time(15, 0)),
        ("3:30 pm", time(15, 30)),
        ("15:45", time(15, 45)),
        ("a las 10 de la mañana", time(10, 0)),
        ("a las 4", time(16, 0)),
        ("a las 8 y media", time(8, 30)),
        ("a las 7 de la noche", time(19, 0)),
        ("12 am", time(0, 0)),
    ],
)
def test_extract_time(text, expected):
    assert ee.extract_time(text) == expected


def test_extract_time_without_clock():
    assert ee.extract_time("cuando puedan") is None


def test_extract_period():
    assert ee.extract_period("el viernes por la tarde") == ee.PERIOD_AFTERNOON
    assert ee.extract_period("en la mañana") == ee.PERIOD_MORNING
    assert ee.extract_period("el viernes") is None


def test_match_service_prefers_full_name():
    assert ee.match_service("necesito un control pediátrico", SERVICES) == SERVICES[1]
    assert ee.match_service("una consulta por favor", SERVICES) == SERVICES[0]
    assert ee.match_service("hola", SERVICES) is None


def test_extract_combines_entities():
    entities = ee.extract(
        "Necesito un control pediatrico el viernes en la tarde a las 3pm",
        today=TODAY,
        services=SERVICES,
    )
    assert entities.intent == ee.INTENT_BOOK
    assert entities.date == date(2025, 3, 7)
    assert entities.time == time(15, 0)
    assert entities.period == ee.PERIOD_AFTERNOON
    assert entities.service_id == "svc-2"
    payload = entities.as_dict()
    assert payload["entities"]["date"] == "2025-03-07"
    assert payload["entities"]["time"] == "15:00"
    assert payload["confidence"] == 0.95


def test_date_mention_upgrades_info_to_booking():
    assert ee.extract("mañana a las 9", today=TODAY).intent == ee.INTENT_BOOK


def test_normalize_text():
    assert ee.normalize_text("  Mañana   a las 3 P.M. ") == "manana a las 3 pm"


def test_in_period():
    assert ee.in_period(time(9, 0), ee.PERIOD_MORNING)
    assert not ee.in_period(time(13, 0), ee.PERIOD_MORNING)
    assert ee.in_period(time(13, 0), None)
