"""Evidence deadline alerts for open disputes.

``monitor_disputes`` walks disputes with an ``evidence_due_by`` in due-date
order and emails the church's finance contacts when a deadline is 7, 3 or 1
day away, or already passed. Each stage is sent once per dispute; sent stages
are kept on ``Dispute.alert_stages``.
"""
from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from givingcore import metrics
from givingcore.core.audit import log_audit_event
from givingcore.models.payment_models import Dispute
from givingcore.services.dunning import BillingContact, unique_contacts
from givingcore.services.messaging import Messenger

logger = logging.getLogger(__name__)

CLOSED_STATUS_FRAGMENTS = ("won", "lost", "closed", "resolved", "charge_refunded", "refunded")

# (stage, days remaining at most), checked in order.
ALERT_RULES = (
    ("overdue", 0),
    ("one_day", 1),
    ("three_days", 3),
    ("seven_days", 7),
)


class DisputeContactDirectory(Protocol):
    def dispute_contacts(self, tenant_id: str | None, church_id: str | None) -> list[BillingContact]: ...


@dataclass
class MonitorResult:
    scanned: int = 0
    alerted: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"scanned": self.scanned, "alerted": self.alerted, "skipped": self.skipped}


def alert_stage(days_until: int) -> str | None:
    for stage, max_days in ALERT_RULES:
        if days_until <= max_days:
            return stage
    return None


def is_closed_status(status: str | None) -> bool:
    normalized = (status or "").lower()
    return any(fragment in normalized for fragment in CLOSED_STATUS_FRAGMENTS)


def days_until(due_by: dt.datetime, now: dt.datetime) -> int:
    if due_by.tzinfo is None:
        due_by = due_by.replace(tzinfo=dt.timezone.utc)
    return math.ceil((due_by - now).total_seconds() / 86400)


def format_due_date(due_by: dt.datetime) -> str:
    if due_by.tzinfo is None:
        due_by = due_by.replace(tzinfo=dt.timezone.utc)
    return due_by.strftime("%b %d, %Y %H:%M UTC")


def build_subject(stage: str, days: int) -> str:
    if stage == "overdue":
        return "Action needed: dispute evidence overdue"
    label = "1 day" if days <= 1 else f"{days} days"
    return f"Dispute evidence due in {label}"


def build_body(dispute: Dispute, stage: str, days: int, due_text: str) -> str:
    if stage == "overdue":
        urgency = "Evidence deadline has passed. Please respond immediately."
    else:
        urgency = f"Evidence deadline is {due_text} ({days} day{'' if days == 1 else 's'} remaining)."
    donation = dispute.donation
    donor = (donation.donor_name if donation else None) or "Unknown"
    if donation is not None and donation.donor_email:
        donor = f"{donor} ({donation.donor_email})"
    amount = f"{dispute.amount} {dispute.currency or ''}".strip() if dispute.amount is not None else "N/A"
    return "\n".join(
        [
            urgency,
            "",
            f"Dispute {dispute.provider_ref} ({dispute.provider.value})",
            f"Status: {dispute.status}",
            f"Amount: {amount}",
            f"Donor: {donor}",
            f"Due by: {due_text}",
            "",
            "Open Finance > Refunds & disputes to upload evidence.",
        ]
    )


def monitor_disputes(
    db: Session,
    directory: DisputeContactDirectory,
    messenger: Messenger,
    limit: int = 100,
    now: dt.datetime | None = None,
) -> dict[str, int]:
    now = now or dt.datetime.now(dt.timezone.utc)
    disputes = list(
        db.scalars(
            select(Dispute)
            .where(Dispute.evidence_due_by.is_not(None))
            .order_by(Dispute.evidence_due_by.asc())
            .limit(limit)
        )
    )
    result = MonitorResult(scanned=len(disputes))

    for dispute in disputes:
        if is_closed_status(dispute.status) or dispute.closed_at is not None:
            result.skipped += 1
            continue
        days = days_until(dispute.evidence_due_by, now)
        stage = alert_stage(days)
        if stage is None or stage in (dispute.alert_stages or []):
            result.skipped += 1
            continue
        recipients = unique_contacts(directory.dispute_contacts(dispute.tenant_id, dispute.church_id))
        if not recipients:
            logger.info("No finance contacts for dispute %s; alert %s skipped", dispute.id, stage)
            result.skipped += 1
            continue

        remaining = max(days, 0)
        due_text = format_due_date(dispute.evidence_due_by)
        subject = build_subject(stage, remaining)
        body = build_body(dispute, stage, remaining, due_text)
        sent = 0
        for contact in recipients:
            outcome = messenger.send_email(contact.email, subject, body, tags=["dispute_alert", stage])
            if outcome.ok:
                sent += 1
        if not sent:
            logger.warning("Dispute %s alert %s could not be delivered", dispute.id, stage)
            metrics.dispute_alert(stage, "failed")
            result.skipped += 1
            continue

        dispute.alert_stages = [*(dispute.alert_stages or []), stage]
        db.commit()
        metrics.dispute_alert(stage, "sent")
        log_audit_event(
            f"dispute.alert.{stage}",
            tenant_id=dispute.tenant_id,
            church_id=dispute.church_id,
            actor_type="system",
            target_type="Dispute",
            target_id=str(dispute.id),
            stage=stage,
            due_by=due_text,
            recipients=len(recipients),
            sent_count=sent,
        )
        result.alerted += 1

    logger.info(
        "Dispute monitor scanned=%s alerted=%s skipped=%s", result.scanned, result.alerted, result.skipped
    )
    return result.as_dict()
