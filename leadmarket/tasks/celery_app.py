"""Celery application configuration."""
from celery import Celery

from leadmarket.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadmarket",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["leadmarket.tasks.batch_tasks", "leadmarket.tasks.settlement_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # A batch is owned by one worker; redelivery is handled by the status claim
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "reconcile-settlements": {
            "task": "leadmarket.tasks.settlement_tasks.reconcile_settlements",
            "schedule": float(settings.reconcile_interval_seconds),
        },
    },
)
