"""Past-due notices for platform subscriptions.

``run_subscription_dunning`` selects PAST_DUE tenant subscriptions whose
period ended at least ``grace_days`` ago, resolves billing contacts through a
``TenantDirectory`` and sends one email per contact. A subscription already
notified within the last day is skipped; the notice time is kept on the
subscription metadata under ``lastDunningAt``.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from givingcore import metrics
from givingcore.core.audit import log_audit_event
from givingcore.core.config import settings
from givingcore.models.enums import TenantSubscriptionStatus
from givingcore.models.models import TenantSubscription
from givingcore.services.messaging import Messenger
from givingcore.services.transitions import merge_metadata

logger = logging.getLogger(__name__)

RENOTIFY_AFTER = dt.timedelta(hours=24)


@dataclass(frozen=True)
class BillingContact:
    email: str
    church_id: str | None = None


class TenantDirectory(Protocol):
    def billing_contacts(self, tenant_id: str) -> list[BillingContact]: ...

    def tenant_name(self, tenant_id: str) -> str | None: ...


class SubscriptionMetadataDirectory:
    """Contacts learned from billing webhooks (``billingEmail`` on the subscription)."""

    def __init__(self, db: Session):
        self.db = db

    def billing_contacts(self, tenant_id: str) -> list[BillingContact]:
        rows = self.db.scalars(select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id))
        return [
            BillingContact(email=row.provider_metadata["billingEmail"])
            for row in rows
            if (row.provider_metadata or {}).get("billingEmail")
        ]

    def dispute_contacts(self, tenant_id: str | None, church_id: str | None) -> list[BillingContact]:
        # Church-level staff are not known here; tenant billing contacts stand in.
        return self.billing_contacts(tenant_id) if tenant_id else []

    def tenant_name(self, tenant_id: str) -> str | None:
        return None


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _aware(value: dt.datetime | None) -> dt.datetime | None:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def unique_contacts(contacts: Iterable[BillingContact]) -> list[BillingContact]:
    seen: set[tuple[str | None, str]] = set()
    unique = []
    for contact in contacts:
        if not contact.email:
            continue
        key = (contact.church_id, contact.email.lower())
        if key in seen:
            continue
        seen.add(key)
        unique.append(contact)
    return unique


def build_dunning_body(tenant_name: str, plan_name: str, period_end: dt.datetime | None, billing_url: str) -> str:
    due_text = period_end.date().isoformat() if period_end else "the current billing cycle"
    return "\n".join(
        [
            f"Hello {tenant_name} team,",
            "",
            f"Your {plan_name} subscription is currently past due as of {due_text}.",
            "Please update your payment method or change plan to avoid service suspension.",
            "",
            f"Manage billing: {billing_url}",
            "",
            "If payment has already been completed, you can ignore this notice.",
            "",
            "Billing Operations",
        ]
    )


def _recently_notified(subscription: TenantSubscription, now: dt.datetime) -> bool:
    raw = (subscription.provider_metadata or {}).get("lastDunningAt")
    if not raw:
        return False
    try:
        last = _aware(dt.datetime.fromisoformat(raw))
    except (TypeError, ValueError):
        return False
    return now - last < RENOTIFY_AFTER


def run_subscription_dunning(
    db: Session,
    directory: TenantDirectory,
    messenger: Messenger,
    grace_days: int | None = None,
    limit: int | None = None,
    dry_run: bool = False,
    tenant_ids: list[str] | None = None,
    billing_url: str | None = None,
) -> dict[str, Any]:
    grace_days = settings.DUNNING_GRACE_DAYS if grace_days is None else grace_days
    limit = settings.DUNNING_BATCH_LIMIT if limit is None else limit
    billing_url = billing_url or settings.BILLING_PORTAL_URL
    now = utcnow()
    cutoff = now - dt.timedelta(days=grace_days)

    stmt = select(TenantSubscription).where(
        TenantSubscription.status == TenantSubscriptionStatus.PAST_DUE,
        or_(TenantSubscription.current_period_end.is_(None), TenantSubscription.current_period_end <= cutoff),
    )
    if tenant_ids:
        stmt = stmt.where(TenantSubscription.tenant_id.in_(tenant_ids))
    stmt = stmt.order_by(TenantSubscription.current_period_end.asc(), TenantSubscription.updated_at.asc()).limit(limit)
    subscriptions = list(db.scalars(stmt))

    targets = []
    for subscription in subscriptions:
        contacts = unique_contacts(directory.billing_contacts(subscription.tenant_id))
        targets.append((subscription, contacts))

    summary: dict[str, Any] = {
        "dry_run": dry_run,
        "grace_days": grace_days,
        "inspected": len(subscriptions),
        "queued": 0,
        "failed": 0,
        "targets": [
            {
                "tenant_id": subscription.tenant_id,
                "subscription_id": subscription.id,
                "plan_code": subscription.plan_code,
                "recipient_count": len(contacts),
            }
            for subscription, contacts in targets
        ],
    }
    if dry_run:
        return summary

    for subscription, contacts in targets:
        if not contacts or _recently_notified(subscription, now):
            continue
        plan = subscription.plan_code or "platform"
        subject = f"Action required: subscription payment issue ({plan})"
        body = build_dunning_body(
            directory.tenant_name(subscription.tenant_id) or subscription.tenant_id,
            plan,
            _aware(subscription.current_period_end),
            billing_url,
        )
        sent = 0
        for contact in contacts:
            result = messenger.send_email(contact.email, subject, body, tags=["subscription_past_due"])
            if result.ok:
                sent += 1
                summary["queued"] += 1
                metrics.dunning_notice("sent")
            else:
                summary["failed"] += 1
                metrics.dunning_notice("failed")
        if sent:
            subscription.provider_metadata = merge_metadata(
                subscription.provider_metadata, {"lastDunningAt": now.isoformat()}
            )
            db.commit()
        log_audit_event(
            "billing.dunning_queued",
            tenant_id=subscription.tenant_id,
            actor_type="system",
            target_type="TenantSubscription",
            target_id=str(subscription.id),
            status="success" if sent == len(contacts) else "failure",
            recipient_count=len(contacts),
            sent_count=sent,
            grace_days=grace_days,
        )

    logger.info(
        "Dunning run inspected=%s queued=%s failed=%s",
        summary["inspected"],
        summary["queued"],
        summary["failed"],
    )
    return summary
