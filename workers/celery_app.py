"""Celery application configuration."""
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from shared.config import get_settings

MAINTENANCE_QUEUE = "tryon.maintenance"

settings = get_settings()

celery_app = Celery(
    "tryon",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=["workers.tasks"],
)

celery_app.conf.task_default_queue = "tryon"
celery_app.conf.task_queues = (
    Queue("tryon", routing_key="tryon"),
    Queue(MAINTENANCE_QUEUE, routing_key=MAINTENANCE_QUEUE),
)
celery_app.conf.task_routes = {
    "maintenance.*": {
        "queue": MAINTENANCE_QUEUE,
        "routing_key": MAINTENANCE_QUEUE,
    }
}

# Usage resets are evaluated lazily by the ledger and have no schedule here.
celery_app.conf.beat_schedule = {
    "request-retention-nightly": {
        "task": "maintenance.cleanup_old_requests",
        "schedule": crontab(hour=3, minute=15),
    }
}
celery_app.conf.update(task_serializer="json", accept_content=["json"], result_serializer="json")
