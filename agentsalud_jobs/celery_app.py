from __future__ import annotations

from celery import Celery

from agentsalud_jobs.config import settings

celery_app = Celery(
    "agentsalud",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["agentsalud_jobs.tasks"],
)

celery_app.conf.timezone = settings.timezone
celery_app.conf.enable_utc = True
celery_app.conf.broker_connection_retry_on_startup = True
