"""Metrics facade.

Service code calls the semantic helpers here only, so the backend can change
without touching the webhook, dispute or reconciliation code.

Metrics:
- webhook_events_total            Webhook deliveries by provider and outcome
- dispute_evidence_total          Evidence submissions by provider and result
- reconciled_payouts_total        Payout rows upserted by reconciliation
- reconciled_transactions_total   Payout transactions upserted, by match state
- dunning_notices_total           Past-due billing notices by result
- dispute_alerts_total            Evidence deadline alerts by stage and result
- subscription_backfill_total     Subscription metadata backfill results
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger("metrics")

_WEBHOOK_EVENTS = Counter(
    "webhook_events_total", "Webhook deliveries by provider and outcome", ["provider", "outcome"]
)
_WEBHOOK_LATENCY = Histogram(
    "webhook_processing_seconds",
    "Time spent verifying and dispatching a webhook",
    ["provider"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
_DISPUTE_EVIDENCE = Counter(
    "dispute_evidence_total", "Dispute evidence submissions", ["provider", "result"]
)
_RECONCILED_PAYOUTS = Counter(
    "reconciled_payouts_total", "Payouts upserted by reconciliation", ["provider"]
)
_RECONCILED_TRANSACTIONS = Counter(
    "reconciled_transactions_total", "Payout transactions upserted", ["provider", "matched"]
)
_DUNNING_NOTICES = Counter("dunning_notices_total", "Past-due billing notices", ["result"])
_DISPUTE_ALERTS = Counter("dispute_alerts_total", "Dispute evidence deadline alerts", ["stage", "result"])
_SUBSCRIPTION_BACKFILL = Counter(
    "subscription_backfill_total", "Subscription metadata backfill results", ["provider", "result"]
)


def webhook_outcome(provider: str, outcome: str, seconds: float | None = None):
    _WEBHOOK_EVENTS.labels(provider=provider, outcome=outcome).inc()
    if seconds is not None:
        _WEBHOOK_LATENCY.labels(provider=provider).observe(seconds)
    logger.debug("metric webhook_events_total{provider=%s,outcome=%s} += 1", provider, outcome)


def dispute_evidence(provider: str, result: str):
    _DISPUTE_EVIDENCE.labels(provider=provider, result=result).inc()


def payouts_reconciled(provider: str, payouts: int, matched: int, unmatched: int):
    if payouts:
        _RECONCILED_PAYOUTS.labels(provider=provider).inc(payouts)
    if matched:
        _RECONCILED_TRANSACTIONS.labels(provider=provider, matched="yes").inc(matched)
    if unmatched:
        _RECONCILED_TRANSACTIONS.labels(provider=provider, matched="no").inc(unmatched)


def dunning_notice(result: str):
    _DUNNING_NOTICES.labels(result=result).inc()


def dispute_alert(stage: str, result: str):
    _DISPUTE_ALERTS.labels(stage=stage, result=result).inc()


def subscription_backfill(provider: str, result: str):
    _SUBSCRIPTION_BACKFILL.labels(provider=provider, result=result).inc()
