"""Platform configuration and health checks for superadmins."""

from __future__ import annotations

import logging
import time
from typing import Any

import redis
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agentsalud import __version__
from agentsalud.models import Appointment, Organization, Profile, SystemConfig
from agentsalud.services import cache, dates

logger = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()
SLOW_DATABASE_MS = 1000.0

BACKUP_FREQUENCIES = ("hourly", "daily", "weekly")


def get_config(db: Session) -> SystemConfig:
    """Return the single configuration row, creating it with defaults."""

    config = db.execute(select(SystemConfig).limit(1)).scalar_one_or_none()
    if config is None:
        config = SystemConfig()
        db.add(config)
        db.flush()
    return config


def update_config(db: Session, changes: dict[str, Any]) -> SystemConfig:
    config = get_config(db)
    for key, value in changes.items():
        if value is not None and hasattr(config, key):
            setattr(config, key, value)
    db.flush()
    logger.info("system config updated", extra={"changes": sorted(changes)})
    return config


def serialize_config(config: SystemConfig) -> dict[str, Any]:
    return {
        "maintenance_mode": config.maintenance_mode,
        "registration_enabled": config.registration_enabled,
        "email_notifications": config.email_notifications,
        "backup_frequency": config.backup_frequency,
        "max_organizations": config.max_organizations,
        "max_users_per_org": config.max_users_per_org,
        "session_timeout": config.session_timeout,
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
    }


def check_database(db: Session) -> dict[str, Any]:
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("database health check failed")
        return {"status": "disconnected", "response_time_ms": None}
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    status = "connected" if elapsed_ms < SLOW_DATABASE_MS else "slow"
    return {"status": status, "response_time_ms": elapsed_ms}


def check_redis() -> dict[str, Any]:
    started = time.perf_counter()
    try:
        cache.get_client().ping()
    except redis.RedisError as exc:
        logger.warning("redis health check failed", extra={"error": str(exc)})
        return {"status": "disconnected", "response_time_ms": None}
    return {
        "status": "connected",
        "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
    }


def _count(db: Session, column: Any) -> int:
    return int(db.execute(select(func.count(column))).scalar_one())


def collect_health(db: Session) -> dict[str, Any]:
    """Run every check and derive the overall platform status."""

    database = check_database(db)
    redis_status = check_redis()

    if database["status"] == "disconnected":
        overall = "critical"
    elif database["status"] == "slow" or redis_status["status"] != "connected":
        overall = "warning"
    else:
        overall = "healthy"

    counts: dict[str, int | None] = {"organizations": None, "users": None, "appointments": None}
    if database["status"] != "disconnected":
        counts = {
            "organizations": _count(db, Organization.id),
            "users": _count(db, Profile.id),
            "appointments": _count(db, Appointment.id),
        }

    return {
        "status": overall,
        "database": database,
        "redis": redis_status,
        "uptime_seconds": int(time.monotonic() - _STARTED_AT),
        "version": __version__,
        "counts": counts,
        "checked_at": dates.utcnow().isoformat(),
    }
