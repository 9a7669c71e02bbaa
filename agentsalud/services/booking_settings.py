"""Per-organization booking configuration with a Redis read-through cache."""

from __future__ import annotations

import json
import logging
from datetime import time
from typing import Any, Final
from uuid import UUID

import redis
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy.orm import Session

from agentsalud.core.config import settings
from agentsalud.errors import NotFoundError, ValidationFailed
from agentsalud.models import Organization
from agentsalud.services import cache, dates

logger = logging.getLogger(__name__)

_CACHE_KEY_TEMPLATE: Final[str] = "agentsalud:booking_settings:{organization_id}"


class BookingSettings(BaseModel):
    """Scheduling knobs an organization admin can tune."""

    model_config = ConfigDict(extra="ignore")

    advance_booking_hours: int = Field(default=4, ge=0, le=72)
    max_advance_booking_days: int = Field(default=90, ge=1, le=365)
    allow_same_day_booking: bool = True
    booking_window_start: str = "08:00"
    booking_window_end: str = "18:00"
    weekend_booking_enabled: bool = False
    auto_confirmation: bool = True
    cancellation_deadline_hours: int = Field(default=2, ge=0, le=168)
    reschedule_deadline_hours: int = Field(default=2, ge=0, le=168)

    @field_validator("booking_window_start", "booking_window_end")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        try:
            clock = dates.parse_clock(value, field="booking_window")
        except ValidationFailed as exc:
            raise ValueError(exc.message) from exc
        return dates.format_clock(clock)

    @model_validator(mode="after")
    def _validate_window(self) -> "BookingSettings":
        if self.booking_window_start >= self.booking_window_end:
            raise ValueError("booking_window_start must be earlier than booking_window_end")
        return self

    @property
    def window_start(self) -> time:
        return dates.parse_clock(self.booking_window_start)

    @property
    def window_end(self) -> time:
        return dates.parse_clock(self.booking_window_end)


def _cache_key(organization_id: UUID) -> str:
    return _CACHE_KEY_TEMPLATE.format(organization_id=organization_id)


def _read_cache(organization_id: UUID) -> BookingSettings | None:
    try:
        raw_value = cache.get_client().get(_cache_key(organization_id))
    except redis.RedisError:
        logger.warning(
            "booking settings cache unavailable",
            extra={"organization_id": str(organization_id)},
        )
        return None
    if not raw_value:
        return None
    try:
        return BookingSettings.model_validate(json.loads(raw_value))
    except (json.JSONDecodeError, ValidationError):
        return None


def _write_cache(organization_id: UUID, value: BookingSettings) -> None:
    try:
        cache.get_client().setex(
            _cache_key(organization_id),
            settings.booking_settings_cache_ttl_seconds,
            value.model_dump_json(),
        )
    except redis.RedisError:
        logger.warning(
            "booking settings cache write failed",
            extra={"organization_id": str(organization_id)},
        )


def invalidate(organization_id: UUID) -> None:
    """Drop the cached settings for an organization."""

    try:
        cache.get_client().delete(_cache_key(organization_id))
    except redis.RedisError:
        logger.warning(
            "booking settings cache invalidation failed",
            extra={"organization_id": str(organization_id)},
        )


def from_organization(organization: Organization) -> BookingSettings:
    """Merge stored overrides over the defaults.

    Stored values that no longer validate are ignored so a bad row never
    blocks scheduling.
    """

    stored: dict[str, Any] = organization.booking_settings or {}
    try:
        return BookingSettings.model_validate(stored)
    except ValidationError:
        logger.warning(
            "invalid stored booking settings, using defaults",
            extra={"organization_id": str(organization.id)},
        )
        return BookingSettings()


def get_booking_settings(db: Session, organization: Organization | UUID) -> BookingSettings:
    """Return the effective booking settings for an organization."""

    organization_id = organization.id if isinstance(organization, Organization) else organization
    cached = _read_cache(organization_id)
    if cached is not None:
        return cached

    if not isinstance(organization, Organization):
        organization = db.get(Organization, organization_id)
        if organization is None:
            raise NotFoundError("Organization not found")

    value = from_organization(organization)
    _write_cache(organization_id, value)
    return value


def update_booking_settings(
    db: Session, organization: Organization, changes: dict[str, Any]
) -> BookingSettings:
    """Apply a partial update, persist it and refresh the cache."""

    current = from_organization(organization).model_dump()
    current.update({key: value for key, value in changes.items() if value is not None})
    try:
        updated = BookingSettings.model_validate(current)
    except ValidationError as exc:
        raise ValidationFailed(
            "Invalid booking settings",
            details={
                "fields": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ]
            },
        ) from exc

    organization.booking_settings = updated.model_dump()
    db.flush()
    invalidate(organization.id)
    logger.info(
        "booking settings updated",
        extra={"organization_id": str(organization.id), "changes": sorted(changes)},
    )
    return updated
