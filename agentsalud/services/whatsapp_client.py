"""Outbound calls to the Evolution WhatsApp API.

With ``WHATSAPP_MOCK_MODE`` enabled nothing leaves the process: every send
returns a synthetic ``mocked-`` message id so conversations and reminders can
be exercised locally.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Sequence
from urllib.parse import quote

import httpx

from agentsalud.core.config import settings

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=15.0, pool=5.0)
MAX_BUTTONS = 3


class WhatsAppDeliveryError(RuntimeError):
    """The provider did not accept the message."""


class WhatsAppConfigurationError(WhatsAppDeliveryError):
    """Live delivery was requested without Evolution credentials."""


def normalize_phone(phone: str | None) -> str:
    """Digits only; Evolution expects numbers without ``+`` or spaces."""

    return re.sub(r"\D", "", phone or "")


def _instance_path(instance: str | None) -> str:
    name = instance or settings.evolution_instance_name
    if not name:
        raise WhatsAppConfigurationError("EVOLUTION_INSTANCE_NAME is not configured")
    return quote(name, safe="")


def _request(method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    if not settings.evolution_api_key:
        raise WhatsAppConfigurationError("EVOLUTION_API_KEY is not configured")

    url = f"{settings.evolution_api_base_url.rstrip('/')}{path}"
    with httpx.Client(timeout=_TIMEOUT) as client:
        response = client.request(
            method,
            url,
            headers={"apikey": settings.evolution_api_key, "Content-Type": "application/json"},
            json=payload,
        )
    response.raise_for_status()
    if not response.content:
        return {}
    return response.json()


def _message_id(data: dict[str, Any]) -> str | None:
    return (
        (data.get("key") or {}).get("id")
        or data.get("id")
        or ((data.get("message") or {}).get("key") or {}).get("id")
    )



def _post(
    action: str, payload: dict[str, Any], instance: str | None = None
) -> tuple[str, dict[str, Any]]:
    if settings.whatsapp_mock_mode:
        message_id = f"mocked-{uuid.uuid4()}"
        logger.debug("mocking evolution %s to %s", action, payload.get("number"))
        return message_id, {
            "key": {"id": message_id, "remoteJid": f"{payload.get('number') or '0'}@mock"},
            "messageType": action,
            "mocked": True,
        }

    if not settings.evolution_api_key:
        raise WhatsAppConfigurationError("EVOLUTION_API_KEY is not configured")
    data = _request("POST", f"/message/{action}/{_instance_path(instance)}", payload)
    message_id = _message_id(data)
    if not message_id:
        raise WhatsAppDeliveryError("Evolution API response did not include a message id")
    return message_id, data


def send_text(
    to: str, text: str, *, instance: str | None = None
) -> tuple[str, dict[str, Any], dict[str, Any]]:
    """Send a plain text message; returns ``(message_id, response, payload)``.

    ``instance`` selects the organization's Evolution instance; without it the
    deployment-wide ``EVOLUTION_INSTANCE_NAME`` is used.
    """

    payload = {"number": normalize_phone(to), "text": text}
    message_id, response = _post("sendText", payload, instance)
    return message_id, response, payload


def send_interactive_buttons(
    to: str, body: str, buttons: Sequence[str], *, instance: str | None = None
) -> tuple[str, dict[str, Any], dict[str, Any]]:
    """Send a prompt with quick-reply buttons (WhatsApp allows three)."""

    if not buttons:
        raise ValueError("At least one button title must be provided")
    if len(buttons) > MAX_BUTTONS:
        raise ValueError(f"WhatsApp supports at most {MAX_BUTTONS} buttons per message")

    payload = {
        "number": normalize_phone(to),
        "title": body,
        "buttons": [
            {"type": "reply", "id": f"option_{index}", "displayText": title}
            for index, title in enumerate(buttons, start=1)
        ],
    }
    message_id, response = _post("sendButtons", payload, instance)
    return message_id, response, payload


# Instance management


def _mock_qr(instance_name: str) -> dict[str, Any]:
    code = f"mocked-{instance_name}-{uuid.uuid4().hex[:8]}"
    return {"code": code, "base64": f"data:image/png;base64,{code}", "mocked": True}


def create_instance(
    instance_name: str, *, number: str | None = None, qrcode: bool = True
) -> dict[str, Any]:
    """Register a new Baileys instance; the reply carries a QR when ``qrcode``."""

    if settings.whatsapp_mock_mode:
        return {
            "instance": {
                "instanceName": instance_name,
                "instanceId": f"mocked-{uuid.uuid4()}",
                "status": "connecting" if qrcode else "close",
                "integration": "WHATSAPP-BAILEYS",
            },
            "qrcode": _mock_qr(instance_name) if qrcode else None,
            "mocked": True,
        }

    payload: dict[str, Any] = {
        "instanceName": instance_name,
        "integration": "WHATSAPP-BAILEYS",
        "qrcode": qrcode,
    }
    if number:
        payload["number"] = normalize_phone(number)
    return _request("POST", "/instance/create", payload)


def connect_instance(instance_name: str) -> dict[str, Any]:
    """Ask Evolution for a fresh pairing QR code."""

    if settings.whatsapp_mock_mode:
        return _mock_qr(instance_name)
    return _request("GET", f"/instance/connect/{_instance_path(instance_name)}")


def connection_state(instance_name: str) -> str | None:
    """Return Evolution's ``open``/``connecting``/``close`` state for the instance."""

    if settings.whatsapp_mock_mode:
        return "connecting"
    data = _request("GET", f"/instance/connectionState/{_instance_path(instance_name)}")
    return (data.get("instance") or {}).get("state") or data.get("state")


def restart_instance(instance_name: str) -> None:
    if settings.whatsapp_mock_mode:
        return
    _request("PUT", f"/instance/restart/{_instance_path(instance_name)}")


def delete_instance(instance_name: str) -> None:
    if settings.whatsapp_mock_mode:
        return
    _request("DELETE", f"/instance/delete/{_instance_path(instance_name)}")
