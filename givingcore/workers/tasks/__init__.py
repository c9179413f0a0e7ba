"""
Celery Tasks Module.

Sub-modules:
- reconciliation_tasks: payout / settlement sync per tenant
- billing_tasks: past-due subscription notices, provider id backfill
- dispute_tasks: evidence deadline alerts
"""
from __future__ import annotations

from .billing_tasks import backfill_subscription_metadata, run_dunning
from .dispute_tasks import monitor_dispute_deadlines
from .reconciliation_tasks import sync_payouts

__all__ = [
    "backfill_subscription_metadata",
    "monitor_dispute_deadlines",
    "run_dunning",
    "sync_payouts",
]
