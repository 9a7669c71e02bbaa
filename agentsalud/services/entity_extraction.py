"""Rule-based extraction of booking intents and entities from Spanish text.

Handles the phrasing patients actually send over chat: relative days
(``hoy``, ``mañana``, ``pasado mañana``, weekday names), explicit dates
(``15/03``, ``15 de marzo``, ISO), clock times (``3pm``, ``15:30``,
``a las 10 de la mañana``) and day periods.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from typing import Any, Iterable, Sequence

INTENT_BOOK = "book"
INTENT_RESCHEDULE = "reschedule"
INTENT_CANCEL = "cancel"
INTENT_AVAILABILITY = "availability"
INTENT_INFO = "info"
INTENT_HUMAN = "human"

PERIOD_MORNING = "morning"
PERIOD_AFTERNOON = "afternoon"
PERIOD_EVENING = "evening"

PERIOD_RANGES: dict[str, tuple[time, time]] = {
    PERIOD_MORNING: (time(0, 0), time(12, 0)),
    PERIOD_AFTERNOON: (time(12, 0), time(18, 0)),
    PERIOD_EVENING: (time(18, 0), time(23, 59)),
}

# Checked in order; the first list with a hit wins.
_INTENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (INTENT_HUMAN, ("humano", "asesor", "agente", "operador", "hablar con alguien", "persona real")),
    (INTENT_CANCEL, ("cancelar", "cancela", "anular", "no podre asistir", "no puedo asistir")),
    (INTENT_RESCHEDULE, ("reagendar", "reprogramar", "cambiar mi cita", "cambiar la cita", "mover mi cita")),
    (
        INTENT_AVAILABILITY,
        ("disponibilidad", "disponible", "horarios libres", "que horarios", "hay cupo", "hay espacio"),
    ),
    (INTENT_BOOK, ("agendar", "agenda", "reservar", "cita", "turno", "consulta", "apartar")),
    (INTENT_INFO, ("precio", "costo", "cuanto cuesta", "direccion", "ubicacion", "informacion")),
)

_WEEKDAYS = {
    "lunes": 0,
    "martes": 1,
    "miercoles": 2,
    "jueves": 3,
    "viernes": 4,
    "sabado": 5,
    "domingo": 6,
}

_MONTHS = {
    "enero": 1,
    "febrero": 2,
    "marzo": 3,
    "abril": 4,
    "mayo": 5,
    "junio": 6,
    "julio": 7,
    "agosto": 8,
    "septiembre": 9,
    "setiembre": 9,
    "octubre": 10,
    "noviembre": 11,
    "diciembre": 12,
}

_PERIOD_PHRASE_RE = re.compile(r"\b(?:por|en|de|a) la (manana|tarde|noche)\b")
_ISO_RE = re.compile(r"(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)")
_NUMERIC_DATE_RE = re.compile(r"(?<![\d:])(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2,4}))?(?![\d:])")
_MONTH_DATE_RE = re.compile(
    r"\b(\d{1,2}) de (" + "|".join(_MONTHS) + r")(?: de (\d{4}))?\b"
)
_CLOCK_RE = re.compile(r"(?<!\d)(\d{1,2}):(\d{2})\s*(am|pm)?(?!\d)")
_MERIDIEM_RE = re.compile(r"(?<![\d:])(\d{1,2})\s*(am|pm)\b")
_A_LAS_RE = re.compile(r"\ba las? (\d{1,2})(?: y (media|cuarto))?(?: de la (manana|tarde|noche))?\b")


@dataclass
class ExtractedEntities:
    """Result of parsing one free-text message."""

    text: str
    intent: str
    date: date | None = None
    time: time | None = None
    period: str | None = None
    service_id: str | None = None
    service_name: str | None = None
    matched: list[str] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        score = 0.3 + 0.2 * len(self.matched)
        return round(min(score, 0.95), 2)

    def as_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "entities": {
                "date": self.date.isoformat() if self.date else None,
                "time": self.time.strftime("%H:%M") if self.time else None,
                "period": self.period,
                "serviceId": self.service_id,
                "serviceName": self.service_name,
            },
        }


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""

    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    lowered = stripped.casefold()
    lowered = re.sub(r"\ba\.?\s?m\.?(?=\s|$|[,;!?])", "am", lowered)
    lowered = re.sub(r"\bp\.?\s?m\.?(?=\s|$|[,;!?])", "pm", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def detect_intent(text: str) -> str:
    normalized = normalize_text(text)
    for intent, keywords in _INTENT_KEYWORDS:
        if any(re.search(rf"\b{re.escape(keyword)}\b", normalized) for keyword in keywords):
            return intent
    return INTENT_INFO


def extract_period(text: str) -> str | None:
    normalized = normalize_text(text)
    match = _PERIOD_PHRASE_RE.search(normalized)
    if not match:
        return None
    return {
        "manana": PERIOD_MORNING,
        "tarde": PERIOD_AFTERNOON,
        "noche": PERIOD_EVENING,
    }[match.group(1)]


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _roll_forward(candidate: date | None, today: date, explicit_year: bool) -> date | None:
    if candidate is None or explicit_year or candidate >= today:
        return candidate
    return _safe_date(candidate.year + 1, candidate.month, candidate.day)


def extract_date(text: str, today: date) -> date | None:
    """Resolve the calendar date mentioned in ``text`` relative to ``today``."""

    normalized = normalize_text(text)

    iso = _ISO_RE.search(normalized)
    if iso:
        return _safe_date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))

    spelled = _MONTH_DATE_RE.search(normalized)
    if spelled:
        year = int(spelled.group(3)) if spelled.group(3) else today.year
        candidate = _safe_date(year, _MONTHS[spelled.group(2)], int(spelled.group(1)))
        return _roll_forward(candidate, today, bool(spelled.group(3)))

    numeric = _NUMERIC_DATE_RE.search(normalized)
    if numeric:
        raw_year = numeric.group(3)
        year = today.year
        if raw_year:
            year = int(raw_year) + (2000 if len(raw_year) == 2 else 0)
        candidate = _safe_date(year, int(numeric.group(2)), int(numeric.group(1)))
        return _roll_forward(candidate, today, bool(raw_year))

    # "en la mañana" is a period, not tomorrow.
    without_periods = _PERIOD_PHRASE_RE.sub(" ", normalized)
    if re.search(r"\bpasado manana\b", without_periods):
        return today + timedelta(days=2)
    if re.search(r"\bmanana\b", without_periods):
        return today + timedelta(days=1)
    if re.search(r"\bhoy\b", without_periods):
        return today

    for name, weekday in _WEEKDAYS.items():
        if re.search(rf"\b{name}\b", without_periods):
            days_ahead = (weekday - today.weekday()) % 7 or 7
            return today + timedelta(days=days_ahead)
    return None


def _to_24h(hour: int, meridiem: str | None) -> int:
    if meridiem == "pm" and hour < 12:
        return hour + 12
    if meridiem == "am" and hour == 12:
        return 0
    return hour


def extract_time(text: str) -> time | None:
    """Resolve a clock time; bare hours before 7 are read as afternoon."""

    normalized = normalize_text(text)

    clock = _CLOCK_RE.search(normalized)
    if clock:
        hour = _to_24h(int(clock.group(1)), clock.group(3))
        minute = int(clock.group(2))
        if hour < 24 and minute < 60:
            return time(hour, minute)

    meridiem = _MERIDIEM_RE.search(normalized)
    if meridiem:
        hour = _to_24h(int(meridiem.group(1)), meridiem.group(2))
        if hour < 24:
            return time(hour, 0)

    spoken = _A_LAS_RE.search(normalized)
    if spoken:
        hour = int(spoken.group(1))
        minute = {"media": 30, "cuarto": 15}.get(spoken.group(2) or "", 0)
        period = spoken.group(3)
        if period in ("tarde", "noche") and hour < 12:
            hour += 12
        elif period is None and 1 <= hour < 7:
            hour += 12
        if hour < 24:
            return time(hour, minute)
    return None


def match_service(
    text: str, services: Iterable[tuple[str, str]]
) -> tuple[str, str] | None:
    """Return the ``(id, name)`` whose name best matches ``text``.

    A full name match wins; otherwise the service sharing the most
    significant words (four letters or more) with the message is chosen.
    """

    normalized = normalize_text(text)
    words = set(re.findall(r"[a-z0-9]+", normalized))
    best: tuple[int, tuple[str, str]] | None = None
    for service_id, name in services:
        service_name = normalize_text(name)
        if service_name and service_name in normalized:
            score = 100 + len(service_name)
        else:
            significant = {word for word in re.findall(r"[a-z0-9]+", service_name) if len(word) >= 4}
            score = len(significant & words)
        if score and (best is None or score > best[0]):
            best = (score, (service_id, name))
    return best[1] if best else None


def extract(
    text: str,
    *,
    today: date,
    services: Sequence[tuple[str, str]] = (),
) -> ExtractedEntities:
    """Parse intent and every entity in one pass."""

    entities = ExtractedEntities(text=text, intent=detect_intent(text))
    entities.date = extract_date(text, today)
    entities.time = extract_time(text)
    entities.period = extract_period(text)
    service = match_service(text, services) if services else None
    if service:
        entities.service_id, entities.service_name = service

    for name in ("date", "time", "period", "service_id"):
        if getattr(entities, name) is not None:
            entities.matched.append(name)
    # A booking request that names a day or time is clearly about booking.
    if entities.intent == INTENT_INFO and (entities.date or entities.time):
        entities.intent = INTENT_BOOK
    return entities


def in_period(clock: time, period: str | None) -> bool:
    if period is None:
        return True
    start, end = PERIOD_RANGES[period]
    return start <= clock < end


__all__ = [
    "ExtractedEntities",
    "detect_intent",
    "extract",
    "extract_date",
    "extract_period",
    "extract_time",
    "in_period",
    "match_service",
    "normalize_text",
]
