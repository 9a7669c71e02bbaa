"""Conversation state management backed by Redis."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Final
from uuid import UUID

from agentsalud.services import cache

_STATE_KEY_TEMPLATE: Final[str] = "agentsalud:wa:{organization_id}:state:{phone}"
_LAST_INTERACTION_KEY_TEMPLATE: Final[str] = (
    "agentsalud:wa:{organization_id}:last_interaction:{phone}"
)
_CONTEXT_KEY_TEMPLATE: Final[str] = "agentsalud:wa:{organization_id}:context:{phone}"
_STATE_TTL_SECONDS: Final[int] = 60 * 60 * 24  # one day


class BotState(str, Enum):
    """Enumerated conversation states for the WhatsApp assistant."""

    MENU_INICIAL = "MENU_INICIAL"
    AGENDAR = "AGENDAR"
    CANCELAR = "CANCELAR"
    HUMANO = "HUMANO"


def _key(template: str, organization_id: UUID | str, phone: str) -> str:
    return template.format(organization_id=organization_id, phone=phone)


def get_state(organization_id: UUID | str, phone: str) -> BotState:
    """Fetch the current state for a WhatsApp contact."""

    raw_state = cache.get_client().get(_key(_STATE_KEY_TEMPLATE, organization_id, phone))
    if not raw_state:
        return BotState.MENU_INICIAL
    try:
        return BotState(raw_state)
    except ValueError:
        return BotState.MENU_INICIAL


def set_state(organization_id: UUID | str, phone: str, state: BotState) -> None:
    """Persist the bot state for a contact."""

    cache.get_client().setex(
        _key(_STATE_KEY_TEMPLATE, organization_id, phone),
        _STATE_TTL_SECONDS,
        state.value,
    )


def record_last_interaction(
    organization_id: UUID | str, phone: str, timestamp: datetime
) -> None:
    """Store the timestamp of the latest interaction for the contact."""

    cache.get_client().setex(
        _key(_LAST_INTERACTION_KEY_TEMPLATE, organization_id, phone),
        _STATE_TTL_SECONDS,
        timestamp.isoformat(),
    )


def last_interaction_within(
    organization_id: UUID | str, phone: str, delta: timedelta, reference: datetime
) -> bool:
    """Return whether the last interaction was within the provided time delta."""

    raw_value = cache.get_client().get(
        _key(_LAST_INTERACTION_KEY_TEMPLATE, organization_id, phone)
    )
    if not raw_value:
        return False
    try:
        last_seen = datetime.fromisoformat(raw_value)
    except ValueError:
        return False
    return reference - last_seen <= delta


def get_context(organization_id: UUID | str, phone: str) -> dict[str, Any]:
    """Return the structured context stored for the contact."""

    raw_value = cache.get_client().get(_key(_CONTEXT_KEY_TEMPLATE, organization_id, phone))
    if not raw_value:
        return {}
    try:
        data = json.loads(raw_value)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def set_context(organization_id: UUID | str, phone: str, context: dict[str, Any]) -> None:
    """Persist conversation context for the contact."""

    cache.get_client().setex(
        _key(_CONTEXT_KEY_TEMPLATE, organization_id, phone),
        _STATE_TTL_SECONDS,
        json.dumps(context, ensure_ascii=False),
    )


def reset(organization_id: UUID | str, phone: str) -> None:
    """Drop the context and return the contact to the main menu."""

    cache.get_client().delete(_key(_CONTEXT_KEY_TEMPLATE, organization_id, phone))
    set_state(organization_id, phone, BotState.MENU_INICIAL)
