"""State transition tables.

Pure functions: ``(current state, normalized event) -> Transition | None``.
``None`` means the event does not apply to the entity in its current state
and must be treated as a no-op (out-of-order or repeated delivery). The
persistence layer applies a returned transition as a conditional update
guarded on ``Transition.from_status``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from givingcore.models.enums import (
    DonationStatus,
    PaymentProvider,
    RecurringStatus,
    TenantSubscriptionStatus,
)
from givingcore.services.normalizer import EventKind, NormalizedEvent


class SideEffect(str, enum.Enum):
    ISSUE_RECEIPT = "issue_receipt"
    PUBLISH_DONATION_CREATED = "publish_donation_created"
    AUDIT = "audit"


@dataclass(frozen=True)
class Transition:
    from_status: enum.Enum
    to_status: enum.Enum
    side_effects: tuple[SideEffect, ...] = ()

    @property
    def changes_state(self) -> bool:
        return self.from_status != self.to_status


COMPLETION_EFFECTS = (SideEffect.ISSUE_RECEIPT, SideEffect.PUBLISH_DONATION_CREATED, SideEffect.AUDIT)


def donation_transition(
    current: DonationStatus,
    event: NormalizedEvent,
    amount: Decimal | None = None,
) -> Transition | None:
    """Donation: PENDING -> COMPLETED | FAILED, COMPLETED -> REFUNDED.

    A refund only moves the donation when the refunded total covers ``amount``;
    a partial refund leaves it COMPLETED.
    """
    if event.kind is EventKind.CHARGE_SUCCEEDED and current is DonationStatus.PENDING:
        return Transition(current, DonationStatus.COMPLETED, COMPLETION_EFFECTS)
    if event.kind is EventKind.CHARGE_FAILED and current is DonationStatus.PENDING:
        return Transition(current, DonationStatus.FAILED, (SideEffect.AUDIT,))
    if event.kind is EventKind.CHARGE_REFUNDED and current is DonationStatus.COMPLETED:
        refunded = event.refunded_amount
        if refunded is None or amount is None or refunded >= amount:
            return Transition(current, DonationStatus.REFUNDED, (SideEffect.AUDIT,))
    return None


_RECURRING_TABLE: dict[EventKind, tuple[frozenset[RecurringStatus], RecurringStatus]] = {
    EventKind.SUBSCRIPTION_CANCELED: (
        frozenset({RecurringStatus.ACTIVE, RecurringStatus.PAST_DUE}),
        RecurringStatus.CANCELED,
    ),
    EventKind.INVOICE_PAYMENT_FAILED: (frozenset({RecurringStatus.ACTIVE}), RecurringStatus.PAST_DUE),
    EventKind.INVOICE_PAYMENT_SUCCEEDED: (frozenset({RecurringStatus.PAST_DUE}), RecurringStatus.ACTIVE),
    EventKind.SUBSCRIPTION_RENEWED: (frozenset({RecurringStatus.PAST_DUE}), RecurringStatus.ACTIVE),
}


def recurring_transition(current: RecurringStatus, event: NormalizedEvent) -> Transition | None:
    """RecurringDonation: ACTIVE <-> PAST_DUE, anything live -> CANCELED.

    CANCELED is terminal; cancelling twice is a no-op.
    """
    rule = _RECURRING_TABLE.get(event.kind)
    if rule is None:
        return None
    allowed, target = rule
    if current not in allowed:
        return None
    return Transition(current, target, (SideEffect.AUDIT,))


_LIVE_SUBSCRIPTION = frozenset(
    {
        TenantSubscriptionStatus.TRIALING,
        TenantSubscriptionStatus.ACTIVE,
        TenantSubscriptionStatus.PAST_DUE,
        TenantSubscriptionStatus.PAUSED,
    }
)

_SUBSCRIPTION_TABLE: dict[EventKind, tuple[frozenset[TenantSubscriptionStatus], TenantSubscriptionStatus]] = {
    EventKind.SUBSCRIPTION_CANCELED: (_LIVE_SUBSCRIPTION, TenantSubscriptionStatus.CANCELED),
    EventKind.INVOICE_PAYMENT_FAILED: (
        frozenset({TenantSubscriptionStatus.TRIALING, TenantSubscriptionStatus.ACTIVE}),
        TenantSubscriptionStatus.PAST_DUE,
    ),
    EventKind.INVOICE_PAYMENT_SUCCEEDED: (
        frozenset({TenantSubscriptionStatus.TRIALING, TenantSubscriptionStatus.PAST_DUE}),
        TenantSubscriptionStatus.ACTIVE,
    ),
}


def subscription_transition(current: TenantSubscriptionStatus, event: NormalizedEvent) -> Transition | None:
    """TenantSubscription: same shape as recurring donations.

    ``SUBSCRIPTION_UPDATED`` carries the provider's own status and is applied
    from any live state; a CANCELED subscription is never revived by it.
    """
    if event.kind is EventKind.SUBSCRIPTION_UPDATED:
        target = event.subscription_status
        if target is None or current not in _LIVE_SUBSCRIPTION or target is current:
            return None
        return Transition(current, target, (SideEffect.AUDIT,))
    rule = _SUBSCRIPTION_TABLE.get(event.kind)
    if rule is None:
        return None
    allowed, target = rule
    if current not in allowed:
        return None
    return Transition(current, target, (SideEffect.AUDIT,))


def subscription_metadata_updates(event: NormalizedEvent) -> dict[str, str]:
    """Provider identifiers (and billing email) carried by a platform billing event."""
    ids = event.related_ids
    if event.provider.payment_provider is PaymentProvider.STRIPE:
        keys = {"customer": "stripeCustomerId", "subscription": "stripeSubscriptionId", "price": "stripePriceId"}
    else:
        keys = {
            "subscription": "paystackSubscriptionCode",
            "customer": "paystackCustomerCode",
            "plan": "paystackPlanCode",
            "email_token": "paystackEmailToken",
        }
    updates = {target: ids[source] for source, target in keys.items() if ids.get(source)}
    if event.customer_email:
        updates["billingEmail"] = event.customer_email
    return updates


def merge_metadata(existing: Mapping[str, Any] | None, incoming: Mapping[str, Any]) -> dict[str, Any]:
    """New non-empty values win; keys the event does not mention are kept."""
    merged = dict(existing or {})
    for key, value in incoming.items():
        if value is None or value == "":
            continue
        merged[key] = value
    return merged


def dispute_status(current: str | None, event: NormalizedEvent) -> str | None:
    """Next provider status for a dispute, or ``None`` when nothing changes."""
    if event.kind not in (EventKind.DISPUTE_CREATED, EventKind.DISPUTE_UPDATED, EventKind.DISPUTE_CLOSED):
        return None
    incoming = event.status or ("closed" if event.kind is EventKind.DISPUTE_CLOSED else None)
    if not incoming or incoming == current:
        return None
    return incoming
