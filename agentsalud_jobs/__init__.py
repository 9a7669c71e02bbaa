"""Celery worker for appointment reminders and no-show follow-ups."""
