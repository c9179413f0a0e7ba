"""
Reconciliation Tasks.

The external scheduler enqueues one ``reconciliation.sync_payouts`` per tenant
(and optionally per provider). Rows already upserted survive a failed run, so
a retry simply re-reads the same window.
"""
from __future__ import annotations

import datetime as dt
import logging

from celery import Task

from givingcore.core.config import settings
from givingcore.core.exceptions import ProviderCallError
from givingcore.db.session import session_scope
from givingcore.models.enums import PaymentProvider
from givingcore.services.payment_providers import ProviderClients
from givingcore.services.reconciliation import ReconciliationEngine
from givingcore.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _parse_date(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)


@celery_app.task(
    bind=True,
    name="reconciliation.sync_payouts",
    autoretry_for=(ProviderCallError,),
    retry_backoff=60,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
)
def sync_payouts(
    self: Task,
    tenant_id: str,
    provider: str | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
) -> dict[str, int]:
    """Dates are ISO-8601 strings so the task stays JSON-serializable."""
    clients = ProviderClients.from_settings(settings)
    with session_scope() as db:
        result = ReconciliationEngine(db, clients).sync_payouts(
            tenant_id,
            provider=PaymentProvider(provider) if provider else None,
            from_date=_parse_date(from_date),
            to_date=_parse_date(to_date),
        )
    logger.info("Payout sync for tenant %s finished: %s", tenant_id, result)
    return result
