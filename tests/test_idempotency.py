import json

from sqlalchemy import func, select

from givingcore.models.enums import RecurringStatus, WebhookEventStatus, WebhookProvider
from givingcore.models.payment_models import WebhookEvent
from givingcore.services.idempotency import IdempotencyLedger
from givingcore.services.webhook_service import WebhookService


def _disable_payload():
    return {
        "event": "subscription.disable",
        "data": {"id": 7, "subscription_code": "SUB_123", "reference": "ref_1", "status": "complete"},
    }


def test_ledger_begin_detects_duplicate(db_session):
    ledger = IdempotencyLedger(db_session)
    first = ledger.begin(WebhookProvider.PAYSTACK, "evt-1", "charge.success", b"{}")
    second = ledger.begin(WebhookProvider.PAYSTACK, "evt-1", "charge.success", b"{}")

    assert first.proceed and first.record is not None
    assert second.duplicate and second.record is None


def test_same_id_under_another_provider_is_not_a_duplicate(db_session):
    ledger = IdempotencyLedger(db_session)
    assert ledger.begin(WebhookProvider.PAYSTACK, "evt-1", "x", b"{}").proceed
    assert ledger.begin(WebhookProvider.PAYSTACK_PLATFORM, "evt-1", "x", b"{}").proceed


def test_failed_row_blocks_reprocessing(db_session):
    ledger = IdempotencyLedger(db_session)
    gate = ledger.begin(WebhookProvider.STRIPE, "evt_fail", "charge.refunded", b"{}")
    ledger.mark_failed(gate.record, "Donation not found")

    again = ledger.begin(WebhookProvider.STRIPE, "evt_fail", "charge.refunded", b"{}")
    assert again.duplicate
    row = ledger.get(WebhookProvider.STRIPE, "evt_fail")
    assert row.status == WebhookEventStatus.FAILED
    assert row.error == "Donation not found"


def test_redelivered_subscription_disable_is_processed_once(db_session, providers, make_recurring, signer):
    recurring = make_recurring(provider_ref="SUB_123")
    raw, signature = signer.paystack(_disable_payload())
    service = WebhookService(db_session, providers)

    first = service.handle(WebhookProvider.PAYSTACK, raw, signature)
    second = service.handle(WebhookProvider.PAYSTACK, raw, signature)

    assert first.status == "processed"
    assert second.duplicate
    assert second.to_response() == {
        "ok": True,
        "status": "duplicate",
        "event": "subscription.disable",
        "duplicate": True,
    }

    db_session.refresh(recurring)
    assert recurring.status == RecurringStatus.CANCELED
    assert recurring.canceled_at is not None

    rows = db_session.scalars(select(WebhookEvent)).all()
    assert len(rows) == 1
    assert rows[0].status == WebhookEventStatus.PROCESSED
    assert rows[0].tenant_id == recurring.tenant_id


def test_list_events_filters_by_status(db_session):
    ledger = IdempotencyLedger(db_session)
    ok = ledger.begin(WebhookProvider.STRIPE, "evt_ok", "ping", b"{}")
    ledger.mark_processed(ok.record, {"event": "ping"})
    bad = ledger.begin(WebhookProvider.STRIPE, "evt_bad", "ping", json.dumps({"x": 1}).encode())
    ledger.mark_failed(bad.record, "boom")

    failed = ledger.list_events(status=WebhookEventStatus.FAILED)
    assert [row.external_event_id for row in failed] == ["evt_bad"]
    assert db_session.scalar(select(func.count()).select_from(WebhookEvent)) == 2
