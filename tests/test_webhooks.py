import asyncio
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import select

from givingcore.api.main import create_app
from givingcore.models.enums import (
    DonationStatus,
    PaymentProvider,
    RecurringStatus,
    TenantSubscriptionStatus,
    WebhookEventStatus,
    WebhookProvider,
)
from givingcore.models.models import Donation, DonationReceipt, TenantSubscription
from givingcore.models.payment_models import Dispute, WebhookEvent
from givingcore.services import realtime
from givingcore.services.payment_providers import ProviderClients
from givingcore.services.webhook_service import WebhookService

PLATFORM_PAYSTACK_SECRET = "sk_test_paystack_platform"


def _checkout_completed(event_id="evt_checkout_1", session_id="cs_test_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "mode": "payment",
                "amount_total": 2000,
                "currency": "usd",
                "payment_intent": "pi_1",
                "payment_status": "paid",
                "customer_details": {"email": "donor@example.com"},
            }
        },
    }


def test_stripe_checkout_completes_donation_once(client, db_session, make_donation, signer):
    donation = make_donation()
    published = []
    realtime.subscribe("donation.created", published.append)
    raw, signature = signer.stripe(_checkout_completed())

    first = client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})
    second = client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})

    assert first.status_code == 200
    assert first.json() == {"ok": True, "status": "processed", "event": "checkout.session.completed"}
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    db_session.refresh(donation)
    assert donation.status == DonationStatus.COMPLETED
    assert donation.donor_email == "donor@example.com"

    receipts = db_session.scalars(select(DonationReceipt)).all()
    assert len(receipts) == 1
    assert receipts[0].donation_id == donation.id
    assert len(published) == 1
    assert published[0]["data"]["id"] == donation.id


def test_completed_donation_ignores_late_failure(client, db_session, make_donation, signer):
    donation = make_donation(status=DonationStatus.COMPLETED)
    payload = {
        "id": "evt_late_fail",
        "type": "checkout.session.async_payment_failed",
        "data": {"object": {"id": "cs_test_1", "currency": "usd", "status": "complete"}},
    }
    raw, signature = signer.stripe(payload)

    res = client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})

    assert res.status_code == 200
    assert res.json()["status"] == "processed"
    db_session.refresh(donation)
    assert donation.status == DonationStatus.COMPLETED


def test_partial_then_full_refund(client, db_session, make_donation, signer):
    donation = make_donation(status=DonationStatus.COMPLETED, provider_ref="pi_refund")

    def refund(event_id, refunded):
        return {
            "id": event_id,
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_1",
                    "payment_intent": "pi_refund",
                    "amount": 2000,
                    "amount_refunded": refunded,
                    "currency": "usd",
                }
            },
        }

    raw, signature = signer.stripe(refund("evt_refund_partial", 500))
    client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})
    db_session.refresh(donation)
    assert donation.status == DonationStatus.COMPLETED
    assert donation.refunded_amount == Decimal("5.00")

    raw, signature = signer.stripe(refund("evt_refund_full", 2000))
    client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})
    db_session.refresh(donation)
    assert donation.status == DonationStatus.REFUNDED
    assert donation.refunded_amount == Decimal("20.00")


def test_unknown_donation_is_recorded_failed(client, db_session, signer):
    payload = {
        "id": "evt_orphan",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_unknown", "amount_received": 1000, "currency": "usd"}},
    }
    raw, signature = signer.stripe(payload)

    res = client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})

    assert res.status_code == 200
    assert res.json() == {
        "ok": True,
        "status": "failed",
        "event": "payment_intent.succeeded",
        "error": "entity_not_found",
    }
    listed = client.get("/webhooks/events", params={"status": "failed"})
    assert listed.status_code == 200
    rows = listed.json()
    assert [row["external_event_id"] for row in rows] == ["evt_orphan"]
    assert "Donation not found" in rows[0]["error"]


def test_unhandled_event_is_acknowledged_as_ignored(client, db_session, signer):
    raw, signature = signer.stripe({"id": "evt_cus", "type": "customer.created", "data": {"object": {}}})

    res = client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})

    assert res.status_code == 200
    body = res.json()
    assert body["ignored"] is True
    assert body["reason"] == "unhandled_event_type"
    row = db_session.scalar(select(WebhookEvent).where(WebhookEvent.external_event_id == "evt_cus"))
    assert row.status == WebhookEventStatus.PROCESSED


def test_bad_signature_returns_400_and_writes_nothing(client, db_session, signer):
    raw, _ = signer.paystack({"event": "charge.success", "data": {"reference": "ref_1"}})

    res = client.post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": "deadbeef"})

    assert res.status_code == 400
    assert res.json()["error"]["kind"] == "signature_invalid"
    assert db_session.scalars(select(WebhookEvent)).all() == []


def test_giving_secret_does_not_verify_platform_route(client, signer):
    raw, signature = signer.paystack({"event": "subscription.disable", "data": {"subscription_code": "SUB_1"}})

    res = client.post("/webhooks/platform/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 400


def test_missing_secret_is_server_error(evidence_store, signer):
    app = create_app(providers=ProviderClients(webhook_secrets={}), evidence_store=evidence_store)
    raw, signature = signer.paystack({"event": "charge.success", "data": {"reference": "ref_1"}})

    res = TestClient(app).post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 500
    assert res.json()["error"]["kind"] == "provider_configuration_missing"


def test_authentic_malformed_payload_is_recorded_and_rejected(client, db_session, signer):
    raw, signature = signer.paystack({"event": "charge.success", "data": {"id": 1}})

    res = client.post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 400
    assert res.json()["error"]["kind"] == "normalization_failure"
    row = db_session.scalar(select(WebhookEvent))
    assert row.status == WebhookEventStatus.FAILED
    assert row.provider == WebhookProvider.PAYSTACK


def test_platform_invoice_failure_marks_subscription_past_due(client, db_session, make_subscription, signer):
    subscription = make_subscription(provider_ref="SUB_abc", provider_metadata={})
    payload = {
        "event": "invoice.payment_failed",
        "data": {
            "id": 3001,
            "amount": 1500000,
            "currency": "NGN",
            "subscription": {"subscription_code": "SUB_abc", "email_token": "tok_1"},
            "customer": {"customer_code": "CUS_1", "email": "billing@church.org"},
            "plan": {"plan_code": "PLN_growth"},
        },
    }
    raw, signature = signer.paystack(payload, secret=PLATFORM_PAYSTACK_SECRET)

    res = client.post("/webhooks/platform/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 200
    assert res.json()["status"] == "processed"
    db_session.refresh(subscription)
    assert subscription.status == TenantSubscriptionStatus.PAST_DUE
    assert subscription.provider_metadata == {
        "paystackSubscriptionCode": "SUB_abc",
        "paystackCustomerCode": "CUS_1",
        "paystackPlanCode": "PLN_growth",
        "paystackEmailToken": "tok_1",
        "billingEmail": "billing@church.org",
    }


def test_platform_subscription_created_from_tenant_metadata(client, db_session, signer):
    payload = {
        "id": "evt_sub_created",
        "type": "customer.subscription.created",
        "data": {
            "object": {
                "id": "sub_new",
                "customer": "cus_1",
                "status": "trialing",
                "metadata": {"tenantId": "tenant-9", "planCode": "starter"},
                "items": {"data": [{"price": {"id": "price_1"}, "current_period_end": 1893456000}]},
            }
        },
    }
    raw, signature = signer.stripe(payload, secret="whsec_test_platform")

    res = client.post("/webhooks/platform/stripe", content=raw, headers={"stripe-signature": signature})

    assert res.status_code == 200
    subscription = db_session.scalar(select(TenantSubscription).where(TenantSubscription.provider_ref == "sub_new"))
    assert subscription.tenant_id == "tenant-9"
    assert subscription.plan_code == "starter"
    assert subscription.status == TenantSubscriptionStatus.TRIALING
    assert subscription.provider_metadata["stripeCustomerId"] == "cus_1"


def test_paystack_dispute_links_to_donation(client, db_session, make_donation, signer):
    donation = make_donation(provider=PaymentProvider.PAYSTACK, provider_ref="ref_d1", currency="NGN")
    payload = {
        "event": "charge.dispute.create",
        "data": {
            "id": 555,
            "reference": "ref_d1",
            "amount": 500000,
            "currency": "NGN",
            "status": "awaiting-merchant-feedback",
            "category": "fraud",
            "due_at": "2030-01-01T00:00:00.000Z",
        },
    }
    raw, signature = signer.paystack(payload)

    res = client.post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 200
    dispute = db_session.scalar(select(Dispute).where(Dispute.provider_ref == "555"))
    assert dispute.donation_id == donation.id
    assert dispute.tenant_id == donation.tenant_id
    assert dispute.status == "awaiting-merchant-feedback"
    assert dispute.reason == "fraud"
    assert dispute.amount == Decimal("5000.00")


def test_paystack_renewal_charge_creates_donation(client, db_session, make_recurring, signer):
    recurring = make_recurring(provider_ref="SUB_123")
    payload = {
        "event": "charge.success",
        "data": {
            "id": 8,
            "reference": "ref_renewal_1",
            "amount": 500000,
            "currency": "NGN",
            "subscription": {"subscription_code": "SUB_123"},
            "customer": {"email": "giver@example.com"},
        },
    }
    raw, signature = signer.paystack(payload)

    res = client.post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 200
    donation = db_session.scalar(select(Donation).where(Donation.provider_ref == "ref_renewal_1"))
    assert donation.status == DonationStatus.COMPLETED
    assert donation.recurring_donation_id == recurring.id
    assert donation.amount == Decimal("5000.00")


def test_plan_only_charge_keeps_subscription_code(client, db_session, make_recurring, signer):
    recurring = make_recurring(provider_ref="SUB_123")
    charge = {
        "event": "charge.success",
        "data": {
            "id": 9,
            "reference": "ref_plan_only",
            "amount": 500000,
            "currency": "NGN",
            "plan": {"plan_code": "PLN_abc"},
            "metadata": {"recurringDonationId": recurring.id},
        },
    }
    raw, signature = signer.paystack(charge)
    res = client.post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": signature})
    assert res.status_code == 200
    db_session.refresh(recurring)
    assert recurring.provider_ref == "SUB_123"

    disable = {"event": "subscription.disable", "data": {"subscription_code": "SUB_123", "status": "complete"}}
    raw, signature = signer.paystack(disable)
    res = client.post("/webhooks/paystack", content=raw, headers={"x-paystack-signature": signature})

    assert res.status_code == 200
    db_session.refresh(recurring)
    assert recurring.status == RecurringStatus.CANCELED
    assert recurring.provider_ref == "SUB_123"


def test_webhook_handling_runs_off_the_event_loop(client, make_donation, signer, monkeypatch):
    make_donation()
    seen = {}
    original = WebhookService.handle

    def handle(self, provider, raw_body, signature):
        try:
            asyncio.get_running_loop()
            seen["on_loop"] = True
        except RuntimeError:
            seen["on_loop"] = False
        seen["raw_body"] = raw_body
        return original(self, provider, raw_body, signature)

    monkeypatch.setattr(WebhookService, "handle", handle)
    raw, signature = signer.stripe(_checkout_completed())

    res = client.post("/webhooks/stripe", content=raw, headers={"stripe-signature": signature})

    assert res.status_code == 200
    assert seen == {"on_loop": False, "raw_body": raw}
