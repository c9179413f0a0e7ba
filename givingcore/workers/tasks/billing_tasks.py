"""
Billing Tasks.

Past-due notices for platform subscriptions and the provider id backfill.
"""
from __future__ import annotations

from typing import Any

from celery import Task

from givingcore.core.config import settings
from givingcore.db.session import session_scope
from givingcore.services.dunning import SubscriptionMetadataDirectory, run_subscription_dunning
from givingcore.services.messaging import BrevoMessenger
from givingcore.services.payment_providers import ProviderClients
from givingcore.services.subscription_backfill import DEFAULT_LIMIT, SubscriptionMetadataBackfill
from givingcore.workers.celery_app import celery_app


@celery_app.task(bind=True, name="billing.run_dunning")
def run_dunning(
    self: Task,
    grace_days: int | None = None,
    limit: int | None = None,
    dry_run: bool = False,
    tenant_ids: list[str] | None = None,
) -> dict[str, Any]:
    messenger = BrevoMessenger.from_settings(settings)
    with session_scope() as db:
        summary = run_subscription_dunning(
            db,
            SubscriptionMetadataDirectory(db),
            messenger,
            grace_days=grace_days,
            limit=limit,
            dry_run=dry_run,
            tenant_ids=tenant_ids,
        )
    return summary


@celery_app.task(bind=True, name="billing.backfill_subscription_metadata")
def backfill_subscription_metadata(
    self: Task,
    tenant_ids: list[str] | None = None,
    subscription_ids: list[int] | None = None,
    limit: int = DEFAULT_LIMIT,
    dry_run: bool = False,
) -> dict[str, Any]:
    clients = ProviderClients.from_settings(settings)
    with session_scope() as db:
        return SubscriptionMetadataBackfill(db, clients).run(
            tenant_ids=tenant_ids,
            subscription_ids=subscription_ids,
            limit=limit,
            dry_run=dry_run,
        )
