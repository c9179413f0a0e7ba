"""
Dispute Tasks.

Evidence deadline alerts, run hourly by beat.
"""
from __future__ import annotations

from celery import Task

from givingcore.core.config import settings
from givingcore.db.session import session_scope
from givingcore.services.dispute_monitoring import monitor_disputes
from givingcore.services.dunning import SubscriptionMetadataDirectory
from givingcore.services.messaging import BrevoMessenger
from givingcore.workers.celery_app import celery_app


@celery_app.task(bind=True, name="disputes.monitor_deadlines")
def monitor_dispute_deadlines(self: Task, limit: int = 100) -> dict[str, int]:
    messenger = BrevoMessenger.from_settings(settings)
    with session_scope() as db:
        return monitor_disputes(db, SubscriptionMetadataDirectory(db), messenger, limit=limit)
