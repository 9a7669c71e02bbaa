"""Spanish message bodies sent over WhatsApp."""

from __future__ import annotations

from typing import Any, Dict

MESSAGE_TEMPLATES: Dict[str, str] = {
    "cita_confirmada": (
        "Hola {patient}, tu cita de {service} con {doctor} quedó confirmada para el "
        "{date} a las {time}."
    ),
    "cita_pendiente": (
        "Hola {patient}, recibimos tu solicitud de cita de {service} con {doctor} para el "
        "{date} a las {time}. Te avisaremos cuando sea confirmada."
    ),
    "cita_cancelada": (
        "Hola {patient}, tu cita del {date} a las {time} con {doctor} fue cancelada."
    ),
    "cita_reagendada": (
        "Hola {patient}, tu cita con {doctor} fue reagendada para el {date} a las {time}."
    ),
    "recordatorio_d1": (
        "Recordatorio: tienes una cita mañana {date} a las {time}. Responde 1 para confirmar."
    ),
    "recordatorio_h2": "Recordatorio: tu cita es hoy a las {time}. ¡Te esperamos!",
}


def render(template_name: str, **values: Any) -> str:
    """Fill a template; unknown names raise ``KeyError``."""

    return MESSAGE_TEMPLATES[template_name].format(**values)


__all__ = ["MESSAGE_TEMPLATES", "render"]
