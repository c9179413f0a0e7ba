import datetime as dt
import json
from decimal import Decimal
from pathlib import Path

import pytest

from givingcore.core.config import settings
from givingcore.models.enums import PaymentProvider
from givingcore.models.payment_models import Dispute
from givingcore.services.dispute_monitoring import alert_stage, days_until, is_closed_status, monitor_disputes
from givingcore.services.dunning import BillingContact, SubscriptionMetadataDirectory
from givingcore.services.messaging import MessageResult
from givingcore.workers.tasks import dispute_tasks, monitor_dispute_deadlines

NOW = dt.datetime(2024, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


class FakeDirectory:
    def __init__(self, contacts):
        self.contacts = contacts
        self.lookups = []

    def dispute_contacts(self, tenant_id, church_id):
        self.lookups.append((tenant_id, church_id))
        return self.contacts


class FakeMessenger:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send_email(self, to, subject, body, tags=None):
        self.sent.append({"to": to, "subject": subject, "body": body, "tags": tags})
        return MessageResult(ok=self.ok, error=None if self.ok else "boom")


@pytest.fixture
def make_dispute(db_session):
    def _make(**overrides) -> Dispute:
        values = {
            "tenant_id": "tenant-1",
            "church_id": "church-1",
            "provider": PaymentProvider.STRIPE,
            "provider_ref": "dp_1",
            "status": "needs_response",
            "amount": Decimal("20.00"),
            "currency": "USD",
            "evidence_due_by": NOW + dt.timedelta(days=2, hours=3),
        }
        values.update(overrides)
        dispute = Dispute(**values)
        db_session.add(dispute)
        db_session.commit()
        return dispute

    return _make


@pytest.mark.parametrize(
    "days, stage",
    [
        (-2, "overdue"),
        (0, "overdue"),
        (1, "one_day"),
        (2, "three_days"),
        (3, "three_days"),
        (7, "seven_days"),
        (8, None),
    ],
)
def test_alert_stage_thresholds(days, stage):
    assert alert_stage(days) == stage


def test_days_until_rounds_up_partial_days():
    assert days_until(NOW + dt.timedelta(days=2, hours=3), NOW) == 3
    assert days_until(NOW - dt.timedelta(hours=5), NOW) == 0


def test_closed_statuses_are_recognized():
    assert is_closed_status("won")
    assert is_closed_status("charge_refunded")
    assert not is_closed_status("needs_response")


def test_stage_alert_sent_once(db_session, make_dispute):
    dispute = make_dispute()
    directory = FakeDirectory([BillingContact("finance@church.org"), BillingContact("FINANCE@church.org")])
    messenger = FakeMessenger()

    first = monitor_disputes(db_session, directory, messenger, now=NOW)
    second = monitor_disputes(db_session, directory, messenger, now=NOW)

    assert first == {"scanned": 1, "alerted": 1, "skipped": 0}
    assert second == {"scanned": 1, "alerted": 0, "skipped": 1}
    assert len(messenger.sent) == 1
    assert messenger.sent[0]["subject"] == "Dispute evidence due in 3 days"
    assert messenger.sent[0]["tags"] == ["dispute_alert", "three_days"]
    assert "Dispute dp_1 (stripe)" in messenger.sent[0]["body"]
    assert directory.lookups[0] == ("tenant-1", "church-1")
    db_session.refresh(dispute)
    assert dispute.alert_stages == ["three_days"]

    audit_lines = [json.loads(line) for line in Path(settings.AUDIT_LOG_FILE).read_text().splitlines()]
    assert audit_lines[-1]["action"] == "dispute.alert.three_days"
    assert audit_lines[-1]["target_id"] == str(dispute.id)


def test_next_stage_alerts_after_earlier_one(db_session, make_dispute):
    dispute = make_dispute(alert_stages=["seven_days", "three_days"], evidence_due_by=NOW - dt.timedelta(hours=1))
    messenger = FakeMessenger()

    summary = monitor_disputes(db_session, FakeDirectory([BillingContact("finance@church.org")]), messenger, now=NOW)

    assert summary["alerted"] == 1
    assert messenger.sent[0]["subject"] == "Action needed: dispute evidence overdue"
    db_session.refresh(dispute)
    assert dispute.alert_stages == ["seven_days", "three_days", "overdue"]


def test_closed_far_or_unreachable_disputes_are_skipped(db_session, make_dispute):
    make_dispute(provider_ref="dp_won", status="won")
    make_dispute(provider_ref="dp_far", evidence_due_by=NOW + dt.timedelta(days=20))
    make_dispute(provider_ref="dp_none", evidence_due_by=None)
    messenger = FakeMessenger()

    summary = monitor_disputes(db_session, FakeDirectory([BillingContact("finance@church.org")]), messenger, now=NOW)

    assert summary == {"scanned": 2, "alerted": 0, "skipped": 2}
    assert messenger.sent == []


def test_failed_delivery_does_not_mark_stage(db_session, make_dispute):
    dispute = make_dispute()

    summary = monitor_disputes(
        db_session, FakeDirectory([BillingContact("finance@church.org")]), FakeMessenger(ok=False), now=NOW
    )

    assert summary["alerted"] == 0
    db_session.refresh(dispute)
    assert dispute.alert_stages == []


def test_default_directory_uses_tenant_billing_email(db_session, make_subscription):
    make_subscription(provider_metadata={"billingEmail": "billing@church.org"})
    directory = SubscriptionMetadataDirectory(db_session)

    assert directory.dispute_contacts("tenant-1", "church-1") == [BillingContact("billing@church.org")]
    assert directory.dispute_contacts(None, "church-1") == []


def test_monitor_task_runs_eagerly(make_dispute, make_subscription, monkeypatch):
    make_dispute(evidence_due_by=dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=6))
    make_subscription(provider_metadata={"billingEmail": "billing@church.org"})
    messenger = FakeMessenger()
    monkeypatch.setattr(dispute_tasks.BrevoMessenger, "from_settings", lambda settings: messenger)

    summary = monitor_dispute_deadlines.apply(kwargs={"limit": 10}).get()

    assert summary == {"scanned": 1, "alerted": 1, "skipped": 0}
    assert messenger.sent[0]["to"] == "billing@church.org"
