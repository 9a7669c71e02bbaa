"""Shared Redis client accessor."""

from __future__ import annotations

import redis

from agentsalud.core.config import settings


def get_client() -> redis.Redis:
    """Return a Redis client configured via application settings."""

    return redis.Redis.from_url(settings.redis_url, decode_responses=True)
