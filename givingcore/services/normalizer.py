"""Provider payload -> internal event.

Only the subset of provider event types that drive the donation, recurring
donation, tenant subscription and dispute state machines is normalized.
Anything else comes back as ``None`` and is acknowledged as ignored.
The dispatcher never sees raw provider JSON.
"""
from __future__ import annotations

import datetime as dt
import enum
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from givingcore.core.exceptions import NormalizationError
from givingcore.models.enums import PaymentProvider, TenantSubscriptionStatus, WebhookProvider
from givingcore.utils.currency import from_minor_units

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    CHARGE_REFUNDED = "charge_refunded"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_CLOSED = "dispute_closed"


@dataclass(frozen=True)
class NormalizedEvent:
    kind: EventKind
    provider: WebhookProvider
    event_type: str
    external_ref: str | None
    """Primary reference: checkout / charge reference, subscription code or dispute id."""
    amount: Decimal | None = None
    currency: str | None = None
    status: str | None = None
    """Provider-reported status string, when the payload carries one."""
    related_ids: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    """Checkout metadata echoed back by the provider (tenantId, donationId, ...)."""
    refunded_amount: Decimal | None = None
    reason: str | None = None
    period_end: dt.datetime | None = None
    due_by: dt.datetime | None = None
    customer_email: str | None = None
    subscription_status: TenantSubscriptionStatus | None = None

    def refs(self, *keys: str) -> list[str]:
        """Non-empty references in lookup order: external_ref then ``related_ids[key]``."""
        out: list[str] = []
        for value in (self.external_ref, *(self.related_ids.get(k) for k in keys)):
            if value and value not in out:
                out.append(value)
        return out


# ---------------------------------------------------------------------------
# Platform subscription status tables
# ---------------------------------------------------------------------------

STRIPE_SUBSCRIPTION_STATUS: dict[str, TenantSubscriptionStatus] = {
    "trialing": TenantSubscriptionStatus.TRIALING,
    "active": TenantSubscriptionStatus.ACTIVE,
    "past_due": TenantSubscriptionStatus.PAST_DUE,
    "unpaid": TenantSubscriptionStatus.PAST_DUE,
    "paused": TenantSubscriptionStatus.PAUSED,
    "canceled": TenantSubscriptionStatus.CANCELED,
    "incomplete": TenantSubscriptionStatus.PAST_DUE,
    "incomplete_expired": TenantSubscriptionStatus.CANCELED,
}

PAYSTACK_SUBSCRIPTION_STATUS: dict[str, TenantSubscriptionStatus] = {
    "active": TenantSubscriptionStatus.ACTIVE,
    "non-renewing": TenantSubscriptionStatus.PAUSED,
    "attention": TenantSubscriptionStatus.PAST_DUE,
    "complete": TenantSubscriptionStatus.CANCELED,
    "cancelled": TenantSubscriptionStatus.CANCELED,
    "canceled": TenantSubscriptionStatus.CANCELED,
}

_PAYSTACK_SUBSCRIPTION_CODE = re.compile(r"^SUB_[A-Za-z0-9]+$")


def map_stripe_subscription_status(status: str | None) -> TenantSubscriptionStatus:
    if not status:
        return TenantSubscriptionStatus.ACTIVE
    return STRIPE_SUBSCRIPTION_STATUS.get(status, TenantSubscriptionStatus.ACTIVE)


def map_paystack_subscription_status(status: str | None) -> TenantSubscriptionStatus:
    if not status:
        return TenantSubscriptionStatus.ACTIVE
    return PAYSTACK_SUBSCRIPTION_STATUS.get(status, TenantSubscriptionStatus.ACTIVE)


# ---------------------------------------------------------------------------
# Small payload helpers
# ---------------------------------------------------------------------------

def _ref(value: Any, key: str = "id") -> str | None:
    """Provider fields are either an id string or an expanded object."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        inner = value.get(key)
        return str(inner) if inner not in (None, "") else None
    return str(value)


def _epoch(value: Any) -> dt.datetime | None:
    if value in (None, "", 0):
        return None
    try:
        return dt.datetime.fromtimestamp(int(value), tz=dt.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _iso(value: Any) -> dt.datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _amount(value: Any, currency: str | None) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return from_minor_units(value, currency or "")
    except (ArithmeticError, ValueError) as exc:
        raise NormalizationError(f"Invalid amount {value!r}") from exc


def _currency(value: Any) -> str | None:
    return str(value).upper() if value else None


def _compact(**ids: str | None) -> dict[str, str]:
    return {k: v for k, v in ids.items() if v}


def _object(payload: dict[str, Any], provider: WebhookProvider) -> dict[str, Any]:
    data = payload.get("data")
    if not isinstance(data, dict):
        raise NormalizationError("Payload has no data object", provider=provider.value)
    return data


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def normalize_stripe(payload: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent | None:
    """Normalize a verified Stripe event (tenant or platform account)."""
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise NormalizationError("Stripe event without type", provider=provider.value)
    data = _object(payload, provider)
    obj = data.get("object")
    if not isinstance(obj, dict):
        raise NormalizationError("Stripe event without data.object", provider=provider.value)

    if provider.is_platform:
        return _stripe_platform(event_type, obj, provider)
    return _stripe_giving(event_type, obj, provider)


def _stripe_invoice(event_type: str, obj: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent | None:
    subscription = _ref(obj.get("subscription"))
    if not subscription:
        parent = (obj.get("parent") or {}).get("subscription_details") or {}
        subscription = _ref(parent.get("subscription"))
    if not subscription:
        return None
    currency = _currency(obj.get("currency"))
    failed = event_type == "invoice.payment_failed"
    return NormalizedEvent(
        kind=EventKind.INVOICE_PAYMENT_FAILED if failed else EventKind.INVOICE_PAYMENT_SUCCEEDED,
        provider=provider,
        event_type=event_type,
        external_ref=subscription,
        amount=_amount(obj.get("amount_due" if failed else "amount_paid"), currency),
        currency=currency,
        status=obj.get("status"),
        related_ids=_compact(
            charge=_ref(obj.get("id")),
            customer=_ref(obj.get("customer")),
            subscription=subscription,
        ),
        metadata=dict(obj.get("metadata") or {}),
        customer_email=obj.get("customer_email"),
    )


def _stripe_dispute(event_type: str, obj: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent:
    if event_type == "charge.dispute.created":
        kind = EventKind.DISPUTE_CREATED
    elif event_type in ("charge.dispute.closed", "charge.dispute.funds_reinstated"):
        kind = EventKind.DISPUTE_CLOSED
    else:
        kind = EventKind.DISPUTE_UPDATED
    currency = _currency(obj.get("currency"))
    dispute_id = _ref(obj.get("id"))
    if not dispute_id:
        raise NormalizationError("Stripe dispute without id", provider=provider.value)
    return NormalizedEvent(
        kind=kind,
        provider=provider,
        event_type=event_type,
        external_ref=dispute_id,
        amount=_amount(obj.get("amount"), currency),
        currency=currency,
        status=obj.get("status") or "unknown",
        related_ids=_compact(
            charge=_ref(obj.get("charge")),
            payment_intent=_ref(obj.get("payment_intent")),
        ),
        reason=obj.get("reason"),
        due_by=_epoch((obj.get("evidence_details") or {}).get("due_by")),
    )


def _stripe_giving(event_type: str, obj: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent | None:
    currency = _currency(obj.get("currency"))
    metadata = dict(obj.get("metadata") or {})

    if event_type == "checkout.session.completed":
        if obj.get("mode") == "subscription":
            # First charge of a recurring gift; later charges arrive as invoices.
            return NormalizedEvent(
                kind=EventKind.SUBSCRIPTION_RENEWED,
                provider=provider,
                event_type=event_type,
                external_ref=_ref(obj.get("subscription")),
                currency=currency,
                related_ids=_compact(
                    checkout_session=_ref(obj.get("id")),
                    customer=_ref(obj.get("customer")),
                    subscription=_ref(obj.get("subscription")),
                ),
                metadata=metadata,
            )
        return NormalizedEvent(
            kind=EventKind.CHARGE_SUCCEEDED,
            provider=provider,
            event_type=event_type,
            external_ref=_ref(obj.get("id")),
            amount=_amount(obj.get("amount_total"), currency),
            currency=currency,
            status=obj.get("payment_status"),
            related_ids=_compact(
                payment_intent=_ref(obj.get("payment_intent")),
                client_reference=obj.get("client_reference_id"),
            ),
            metadata=metadata,
            customer_email=(obj.get("customer_details") or {}).get("email"),
        )

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        return NormalizedEvent(
            kind=EventKind.CHARGE_SUCCEEDED if event_type.endswith("succeeded") else EventKind.CHARGE_FAILED,
            provider=provider,
            event_type=event_type,
            external_ref=_ref(obj.get("id")),
            amount=_amount(obj.get("amount_received") or obj.get("amount"), currency),
            currency=currency,
            status=obj.get("status"),
            related_ids=_compact(charge=_ref(obj.get("latest_charge"))),
            metadata=metadata,
        )

    if event_type in ("checkout.session.async_payment_failed", "checkout.session.expired"):
        return NormalizedEvent(
            kind=EventKind.CHARGE_FAILED,
            provider=provider,
            event_type=event_type,
            external_ref=_ref(obj.get("id")),
            currency=currency,
            status=obj.get("status"),
            related_ids=_compact(payment_intent=_ref(obj.get("payment_intent"))),
            metadata=metadata,
        )

    if event_type == "charge.refunded":
        return NormalizedEvent(
            kind=EventKind.CHARGE_REFUNDED,
            provider=provider,
            event_type=event_type,
            external_ref=_ref(obj.get("payment_intent")) or _ref(obj.get("id")),
            amount=_amount(obj.get("amount"), currency),
            currency=currency,
            status=obj.get("status"),
            related_ids=_compact(charge=_ref(obj.get("id"))),
            metadata=metadata,
            refunded_amount=_amount(obj.get("amount_refunded"), currency),
        )

    if event_type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
        return _stripe_invoice(event_type, obj, provider)

    if event_type == "customer.subscription.deleted":
        return NormalizedEvent(
            kind=EventKind.SUBSCRIPTION_CANCELED,
            provider=provider,
            event_type=event_type,
            external_ref=_ref(obj.get("id")),
            status=obj.get("status"),
            related_ids=_compact(customer=_ref(obj.get("customer"))),
            metadata=metadata,
        )

    if event_type.startswith("charge.dispute."):
        return _stripe_dispute(event_type, obj, provider)

    return None


def _stripe_platform(event_type: str, obj: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent | None:
    if event_type.startswith("customer.subscription."):
        items = (obj.get("items") or {}).get("data") or []
        primary = items[0] if items else {}
        period_end = primary.get("current_period_end") or obj.get("current_period_end")
        status = obj.get("status")
        mapped = map_stripe_subscription_status(status)
        canceled = event_type == "customer.subscription.deleted" or mapped == TenantSubscriptionStatus.CANCELED
        return NormalizedEvent(
            kind=EventKind.SUBSCRIPTION_CANCELED if canceled else EventKind.SUBSCRIPTION_UPDATED,
            provider=provider,
            event_type=event_type,
            external_ref=_ref(obj.get("id")),
            status=status,
            related_ids=_compact(
                subscription=_ref(obj.get("id")),
                customer=_ref(obj.get("customer")),
                price=_ref(primary.get("price")),
            ),
            metadata=dict(obj.get("metadata") or {}),
            period_end=_epoch(period_end),
            subscription_status=TenantSubscriptionStatus.CANCELED if canceled else mapped,
        )

    if event_type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
        return _stripe_invoice(event_type, obj, provider)

    return None


# ---------------------------------------------------------------------------
# Paystack
# ---------------------------------------------------------------------------

def paystack_refs(payload: dict[str, Any]) -> dict[str, str | None]:
    """References used both for the composite event id and for normalization."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    subscription = data.get("subscription")
    plan = data.get("plan")
    return {
        "event": payload.get("event"),
        "data_id": _ref(data.get("id")),
        "reference": _ref(data.get("reference")),
        "subscription_code": _ref(subscription, "subscription_code") or _ref(data.get("subscription_code")),
        "plan_code": _ref(plan, "plan_code"),
    }


def normalize_paystack(payload: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent | None:
    """Normalize a verified Paystack event (tenant or platform account)."""
    event_type = payload.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise NormalizationError("Paystack event without event name", provider=provider.value)
    data = _object(payload, provider)
    refs = paystack_refs(payload)

    if provider.is_platform:
        return _paystack_platform(event_type, data, refs, provider)
    return _paystack_giving(event_type, data, refs, provider)


def _paystack_giving(
    event_type: str, data: dict[str, Any], refs: dict[str, str | None], provider: WebhookProvider
) -> NormalizedEvent | None:
    currency = _currency(data.get("currency"))
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    subscription_code = refs["subscription_code"]
    plan_code = refs["plan_code"]
    reference = refs["reference"]
    related = _compact(
        subscription=subscription_code,
        plan=plan_code,
        customer=_ref(customer.get("customer_code")),
        transaction=refs["data_id"],
    )

    if event_type == "charge.success":
        if not reference:
            raise NormalizationError("charge.success without reference", provider=provider.value)
        recurring = bool(subscription_code or plan_code or metadata.get("recurringDonationId"))
        if recurring:
            # Renewal charge: keyed by subscription, the charge reference becomes a new donation.
            related["charge"] = reference
        return NormalizedEvent(
            kind=EventKind.SUBSCRIPTION_RENEWED if recurring else EventKind.CHARGE_SUCCEEDED,
            provider=provider,
            event_type=event_type,
            external_ref=(subscription_code or plan_code) if recurring else reference,
            amount=_amount(data.get("amount"), currency),
            currency=currency,
            status=data.get("status"),
            related_ids=related,
            metadata=dict(metadata),
            customer_email=customer.get("email"),
        )

    if event_type == "charge.failed":
        if not reference:
            raise NormalizationError("charge.failed without reference", provider=provider.value)
        return NormalizedEvent(
            kind=EventKind.CHARGE_FAILED,
            provider=provider,
            event_type=event_type,
            external_ref=reference,
            currency=currency,
            status=data.get("status"),
            related_ids=related,
            metadata=dict(metadata),
        )

    if event_type == "subscription.disable":
        if not subscription_code:
            raise NormalizationError("subscription.disable without subscription code", provider=provider.value)
        return NormalizedEvent(
            kind=EventKind.SUBSCRIPTION_CANCELED,
            provider=provider,
            event_type=event_type,
            external_ref=subscription_code,
            status=data.get("status"),
            related_ids=related,
        )

    if event_type in ("invoice.payment_failed", "invoice.update"):
        if not subscription_code:
            return None
        paid = event_type == "invoice.update" and (data.get("paid") is True or data.get("status") == "success")
        if event_type == "invoice.update" and not paid:
            return None
        return NormalizedEvent(
            kind=EventKind.INVOICE_PAYMENT_SUCCEEDED if paid else EventKind.INVOICE_PAYMENT_FAILED,
            provider=provider,
            event_type=event_type,
            external_ref=subscription_code,
            amount=_amount(data.get("amount"), currency),
            currency=currency,
            status=data.get("status"),
            related_ids=related,
        )

    if event_type.startswith("charge.dispute."):
        dispute = data.get("dispute") if isinstance(data.get("dispute"), dict) else {}
        dispute_id = _ref(dispute.get("id")) or refs["data_id"]
        if not dispute_id:
            raise NormalizationError("Dispute event without id", provider=provider.value)
        transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}
        charge_ref = reference or _ref(transaction.get("reference"))
        if event_type == "charge.dispute.create":
            kind = EventKind.DISPUTE_CREATED
        elif event_type == "charge.dispute.resolve":
            kind = EventKind.DISPUTE_CLOSED
        else:
            kind = EventKind.DISPUTE_UPDATED
        return NormalizedEvent(
            kind=kind,
            provider=provider,
            event_type=event_type,
            external_ref=dispute_id,
            amount=_amount(data.get("amount"), currency),
            currency=currency,
            status=dispute.get("status") or data.get("status") or event_type,
            related_ids=_compact(charge=charge_ref),
            reason=data.get("reason") or data.get("category"),
            due_by=_iso(data.get("due_at")),
        )

    if event_type.startswith("refund."):
        transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}
        charge_ref = reference or _ref(data.get("transaction_reference")) or _ref(transaction.get("reference"))
        if not charge_ref:
            raise NormalizationError("Refund event without transaction reference", provider=provider.value)
        if event_type != "refund.processed":
            return None
        return NormalizedEvent(
            kind=EventKind.CHARGE_REFUNDED,
            provider=provider,
            event_type=event_type,
            external_ref=charge_ref,
            currency=currency,
            status=data.get("status"),
            related_ids=_compact(refund=refs["data_id"]),
            refunded_amount=_amount(data.get("amount"), currency),
        )

    return None


def _paystack_platform(
    event_type: str, data: dict[str, Any], refs: dict[str, str | None], provider: WebhookProvider
) -> NormalizedEvent | None:
    subscription_code = refs["subscription_code"]
    plan_code = refs["plan_code"]
    if not subscription_code and not plan_code:
        return None

    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
    email_token = data.get("email_token") or subscription.get("email_token")
    currency = _currency(data.get("currency"))
    status = data.get("status")

    related = _compact(
        subscription=subscription_code if subscription_code and _PAYSTACK_SUBSCRIPTION_CODE.match(subscription_code) else None,
        customer=_ref(customer.get("customer_code")),
        plan=plan_code,
        email_token=email_token if isinstance(email_token, str) else None,
    )
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    if event_type == "subscription.disable":
        kind, mapped = EventKind.SUBSCRIPTION_CANCELED, TenantSubscriptionStatus.CANCELED
    elif event_type == "invoice.payment_failed":
        kind, mapped = EventKind.INVOICE_PAYMENT_FAILED, TenantSubscriptionStatus.PAST_DUE
    elif event_type in ("charge.success", "invoice.update") and (
        event_type == "charge.success" or data.get("paid") is True
    ):
        kind, mapped = EventKind.INVOICE_PAYMENT_SUCCEEDED, TenantSubscriptionStatus.ACTIVE
    elif event_type.startswith("subscription."):
        mapped = map_paystack_subscription_status(status or "active")
        kind = EventKind.SUBSCRIPTION_CANCELED if mapped == TenantSubscriptionStatus.CANCELED else EventKind.SUBSCRIPTION_UPDATED
    else:
        return None

    return NormalizedEvent(
        kind=kind,
        provider=provider,
        event_type=event_type,
        external_ref=subscription_code or plan_code,
        amount=_amount(data.get("amount"), currency),
        currency=currency,
        status=status,
        related_ids=related,
        metadata=dict(metadata),
        period_end=_iso(data.get("next_payment_date") or subscription.get("next_payment_date")),
        subscription_status=mapped,
        customer_email=customer.get("email"),
    )


def normalize(payload: dict[str, Any], provider: WebhookProvider) -> NormalizedEvent | None:
    if provider.payment_provider is PaymentProvider.STRIPE:
        return normalize_stripe(payload, provider)
    return normalize_paystack(payload, provider)
