from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from givingcore.core.config import settings


def _create_celery() -> Celery:
    celery = Celery(
        "givingcore",
        broker=settings.REDIS_URL,
        backend=settings.REDIS_URL,
        include=["givingcore.workers.tasks"],
    )
    celery.conf.update(
        task_default_queue="default",
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_always_eager=settings.ENV.lower() in {"test"},
    )
    # Beat schedule (only active outside test env)
    if settings.ENV.lower() not in {"test"}:
        celery.conf.beat_schedule = {
            "subscription-dunning": {
                "task": "billing.run_dunning",
                "schedule": crontab(minute=0, hour=9),  # 09:00 UTC daily
            },
            "dispute-deadlines": {
                "task": "disputes.monitor_deadlines",
                "schedule": crontab(minute=15),  # hourly
            },
        }
    return celery


celery_app = _create_celery()
