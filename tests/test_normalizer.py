from decimal import Decimal

import pytest

from givingcore.core.exceptions import NormalizationError
from givingcore.models.enums import TenantSubscriptionStatus, WebhookProvider
from givingcore.services.normalizer import (
    EventKind,
    map_paystack_subscription_status,
    map_stripe_subscription_status,
    normalize,
)


def test_stripe_checkout_completed_is_charge_succeeded():
    payload = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "mode": "payment",
                "amount_total": 2000,
                "currency": "usd",
                "payment_intent": "pi_1",
                "payment_status": "paid",
                "metadata": {"donationId": "5"},
                "customer_details": {"email": "donor@example.com"},
            }
        },
    }
    event = normalize(payload, WebhookProvider.STRIPE)
    assert event.kind is EventKind.CHARGE_SUCCEEDED
    assert event.external_ref == "cs_test_1"
    assert event.amount == Decimal("20.00")
    assert event.currency == "USD"
    assert event.related_ids["payment_intent"] == "pi_1"
    assert event.metadata == {"donationId": "5"}
    assert event.customer_email == "donor@example.com"


def test_stripe_zero_decimal_amount():
    payload = {
        "id": "evt_2",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_2", "amount_received": 5000, "currency": "jpy"}},
    }
    event = normalize(payload, WebhookProvider.STRIPE)
    assert event.amount == Decimal("5000.00")


def test_stripe_refund_carries_refunded_amount():
    payload = {
        "id": "evt_3",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "payment_intent": "pi_1",
                "amount": 2000,
                "amount_refunded": 500,
                "currency": "usd",
            }
        },
    }
    event = normalize(payload, WebhookProvider.STRIPE)
    assert event.kind is EventKind.CHARGE_REFUNDED
    assert event.external_ref == "pi_1"
    assert event.refunded_amount == Decimal("5.00")


def test_stripe_unhandled_type_is_ignored():
    payload = {"id": "evt_4", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
    assert normalize(payload, WebhookProvider.STRIPE) is None


def test_stripe_missing_data_object_raises():
    with pytest.raises(NormalizationError):
        normalize({"id": "evt_5", "type": "charge.refunded", "data": {}}, WebhookProvider.STRIPE)


def test_stripe_dispute_created():
    payload = {
        "id": "evt_6",
        "type": "charge.dispute.created",
        "data": {
            "object": {
                "id": "dp_1",
                "charge": "ch_1",
                "payment_intent": "pi_1",
                "amount": 2000,
                "currency": "usd",
                "reason": "fraudulent",
                "status": "needs_response",
                "evidence_details": {"due_by": 1893456000},
            }
        },
    }
    event = normalize(payload, WebhookProvider.STRIPE)
    assert event.kind is EventKind.DISPUTE_CREATED
    assert event.external_ref == "dp_1"
    assert event.reason == "fraudulent"
    assert event.due_by is not None and event.due_by.year == 2030


def test_stripe_platform_subscription_update_maps_status():
    payload = {
        "id": "evt_7",
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "unpaid",
                "items": {"data": [{"price": {"id": "price_1"}, "current_period_end": 1893456000}]},
                "metadata": {"tenantId": "tenant-1"},
            }
        },
    }
    event = normalize(payload, WebhookProvider.STRIPE_PLATFORM)
    assert event.kind is EventKind.SUBSCRIPTION_UPDATED
    assert event.subscription_status is TenantSubscriptionStatus.PAST_DUE
    assert event.related_ids == {"subscription": "sub_1", "customer": "cus_1", "price": "price_1"}
    assert event.period_end is not None


def test_stripe_subscription_checkout_carries_subscription_id():
    payload = {
        "id": "evt_8",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_sub_1",
                "mode": "subscription",
                "subscription": "sub_9",
                "customer": "cus_9",
                "currency": "usd",
                "metadata": {"recurringDonationId": "3"},
            }
        },
    }
    event = normalize(payload, WebhookProvider.STRIPE)
    assert event.kind is EventKind.SUBSCRIPTION_RENEWED
    assert event.related_ids == {"checkout_session": "cs_sub_1", "customer": "cus_9", "subscription": "sub_9"}


def test_paystack_plain_charge_success():
    payload = {
        "event": "charge.success",
        "data": {"id": 1, "reference": "ref_1", "amount": 500000, "currency": "NGN", "status": "success"},
    }
    event = normalize(payload, WebhookProvider.PAYSTACK)
    assert event.kind is EventKind.CHARGE_SUCCEEDED
    assert event.external_ref == "ref_1"
    assert event.amount == Decimal("5000.00")


def test_paystack_subscription_charge_is_renewal():
    payload = {
        "event": "charge.success",
        "data": {
            "id": 2,
            "reference": "ref_2",
            "amount": 500000,
            "currency": "NGN",
            "plan": {"plan_code": "PLN_1"},
            "subscription": {"subscription_code": "SUB_123"},
        },
    }
    event = normalize(payload, WebhookProvider.PAYSTACK)
    assert event.kind is EventKind.SUBSCRIPTION_RENEWED
    assert event.external_ref == "SUB_123"
    assert event.related_ids["charge"] == "ref_2"


def test_paystack_charge_without_reference_raises():
    with pytest.raises(NormalizationError):
        normalize({"event": "charge.success", "data": {"id": 3}}, WebhookProvider.PAYSTACK)


def test_paystack_subscription_disable_requires_code():
    event = normalize(
        {"event": "subscription.disable", "data": {"subscription_code": "SUB_123"}}, WebhookProvider.PAYSTACK
    )
    assert event.kind is EventKind.SUBSCRIPTION_CANCELED
    with pytest.raises(NormalizationError):
        normalize({"event": "subscription.disable", "data": {}}, WebhookProvider.PAYSTACK)


def test_paystack_refund_processed_only():
    processed = {
        "event": "refund.processed",
        "data": {"id": 11, "transaction_reference": "ref_1", "amount": 100000, "currency": "NGN"},
    }
    pending = dict(processed, event="refund.pending")
    event = normalize(processed, WebhookProvider.PAYSTACK)
    assert event.kind is EventKind.CHARGE_REFUNDED
    assert event.external_ref == "ref_1"
    assert event.refunded_amount == Decimal("1000.00")
    assert normalize(pending, WebhookProvider.PAYSTACK) is None


def test_paystack_platform_invoice_failure():
    payload = {
        "event": "invoice.payment_failed",
        "data": {
            "amount": 1500000,
            "currency": "NGN",
            "subscription": {"subscription_code": "SUB_abc", "email_token": "tok_1"},
            "customer": {"customer_code": "CUS_1", "email": "billing@church.org"},
            "plan": {"plan_code": "PLN_growth"},
        },
    }
    event = normalize(payload, WebhookProvider.PAYSTACK_PLATFORM)
    assert event.kind is EventKind.INVOICE_PAYMENT_FAILED
    assert event.subscription_status is TenantSubscriptionStatus.PAST_DUE
    assert event.related_ids == {
        "subscription": "SUB_abc",
        "customer": "CUS_1",
        "plan": "PLN_growth",
        "email_token": "tok_1",
    }
    assert event.customer_email == "billing@church.org"


def test_paystack_platform_without_subscription_is_ignored():
    payload = {"event": "charge.success", "data": {"reference": "ref_9"}}
    assert normalize(payload, WebhookProvider.PAYSTACK_PLATFORM) is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("incomplete_expired", TenantSubscriptionStatus.CANCELED),
        ("trialing", TenantSubscriptionStatus.TRIALING),
        (None, TenantSubscriptionStatus.ACTIVE),
        ("something_new", TenantSubscriptionStatus.ACTIVE),
    ],
)
def test_stripe_status_table(raw, expected):
    assert map_stripe_subscription_status(raw) is expected


def test_paystack_status_table():
    assert map_paystack_subscription_status("non-renewing") is TenantSubscriptionStatus.PAUSED
    assert map_paystack_subscription_status("attention") is TenantSubscriptionStatus.PAST_DUE
