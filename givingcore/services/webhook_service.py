"""Webhook ingestion: verify -> ledger gate -> normalize -> dispatch.

The HTTP layer calls ``WebhookService.handle`` and branches on
``WebhookOutcome.status``:

- ``processed``  entity transitions applied (or a legal no-op), ledger PROCESSED
- ``duplicate``  ledger row already existed, nothing touched
- ``ignored``    event type outside the state machines, ledger PROCESSED
- ``failed``     dispatch could not resolve the target, ledger FAILED

Signature problems and unconfigured secrets are raised
(``SignatureInvalidError``, ``ProviderNotConfiguredError``). Malformed payloads
are recorded FAILED on the ledger and then raised as ``NormalizationError``.

Entity transitions are conditional updates guarded on the expected prior
status, so an event that arrives after the entity has moved on is a no-op.
Receipt, realtime and audit side effects run after the ledger commit and
never fail the delivery.
"""
from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from givingcore import metrics
from givingcore.core.audit import log_audit_event
from givingcore.core.exceptions import EntityNotFoundError, ErrorKind, NormalizationError
from givingcore.models.enums import (
    DonationStatus,
    PaymentProvider,
    RecurringStatus,
    TenantSubscriptionStatus,
    WebhookProvider,
)
from givingcore.models.models import Donation, RecurringDonation, TenantSubscription
from givingcore.models.payment_models import Dispute
from givingcore.services import realtime
from givingcore.services.idempotency import IdempotencyLedger
from givingcore.services.normalizer import EventKind, NormalizedEvent, normalize
from givingcore.services.payment_providers import ProviderClients
from givingcore.services.receipts import ensure_donation_receipt
from givingcore.services.signatures import (
    build_external_event_id,
    external_event_id,
    hash_payload,
    parse_payload,
    verify_paystack_signature,
    verify_stripe_signature,
)
from givingcore.services.transitions import (
    SideEffect,
    Transition,
    dispute_status,
    donation_transition,
    merge_metadata,
    recurring_transition,
    subscription_metadata_updates,
    subscription_transition,
)

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["processed", "duplicate", "ignored", "failed"]

_RECURRING_KINDS = frozenset(
    {
        EventKind.SUBSCRIPTION_CANCELED,
        EventKind.SUBSCRIPTION_RENEWED,
        EventKind.INVOICE_PAYMENT_FAILED,
        EventKind.INVOICE_PAYMENT_SUCCEEDED,
    }
)
_DISPUTE_KINDS = frozenset({EventKind.DISPUTE_CREATED, EventKind.DISPUTE_UPDATED, EventKind.DISPUTE_CLOSED})
_SUBSCRIPTION_KINDS = frozenset(
    {
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_CANCELED,
        EventKind.INVOICE_PAYMENT_FAILED,
        EventKind.INVOICE_PAYMENT_SUCCEEDED,
    }
)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class WebhookOutcome:
    status: OutcomeStatus
    provider: WebhookProvider
    event: str | None = None
    external_event_id: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    reason: str | None = None
    result: dict[str, Any] = field(default_factory=dict)

    @property
    def duplicate(self) -> bool:
        return self.status == "duplicate"

    def to_response(self) -> dict[str, Any]:
        """Body returned to the provider. Always ``ok`` so it stops redelivering."""
        body: dict[str, Any] = {"ok": True, "status": self.status, "event": self.event}
        if self.status == "duplicate":
            body["duplicate"] = True
        elif self.status == "ignored":
            body["ignored"] = True
            if self.reason:
                body["reason"] = self.reason
        elif self.status == "failed":
            body["error"] = self.error_kind.value if self.error_kind else "dispatch_failed"
        return body


@dataclass
class _Dispatch:
    """Mutable state for one delivery: result summary plus deferred side effects."""

    result: dict[str, Any] = field(default_factory=dict)
    completed: list[Donation] = field(default_factory=list)
    audits: list[dict[str, Any]] = field(default_factory=list)
    tenant_id: str | None = None


class WebhookService:
    def __init__(self, db: Session, clients: ProviderClients):
        self.db = db
        self.clients = clients
        self.ledger = IdempotencyLedger(db)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, provider: WebhookProvider, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        started = time.perf_counter()
        outcome = self._handle(provider, raw_body, signature)
        metrics.webhook_outcome(provider.value, outcome.status, time.perf_counter() - started)
        return outcome

    def _verify(self, provider: WebhookProvider, raw_body: bytes, signature: str | None) -> None:
        secret = self.clients.webhook_secret(provider)
        if provider in (WebhookProvider.STRIPE, WebhookProvider.STRIPE_PLATFORM):
            verify_stripe_signature(raw_body, signature, secret, self.clients.stripe_webhook_tolerance)
        else:
            verify_paystack_signature(raw_body, signature, secret)

    def _handle(self, provider: WebhookProvider, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        try:
            self._verify(provider, raw_body, signature)
            payload = parse_payload(raw_body, provider)
            event_id = external_event_id(provider, payload, raw_body)
        except NormalizationError as exc:
            self._record_unparseable(provider, raw_body, exc)
            raise

        event_type = str(payload.get("type") or payload.get("event") or "unknown")
        gate = self.ledger.begin(provider, event_id, event_type, raw_body)
        if gate.duplicate:
            return WebhookOutcome("duplicate", provider, event=event_type, external_event_id=event_id)
        record = gate.record

        try:
            event = normalize(payload, provider)
        except NormalizationError as exc:
            self.ledger.mark_failed(record, exc.message, {"event": event_type})
            raise

        if event is None:
            self.ledger.mark_processed(record, {"event": event_type, "ignored": True})
            logger.info("Ignoring %s webhook event %s", provider.value, event_type)
            return WebhookOutcome(
                "ignored", provider, event=event_type, external_event_id=event_id, reason="unhandled_event_type"
            )

        state = _Dispatch(result={"event": event_type, "kind": event.kind.value})
        try:
            self._dispatch(event, state)
            record.tenant_id = state.tenant_id
            self.ledger.mark_processed(record, state.result)
        except EntityNotFoundError as exc:
            self.ledger.mark_failed(record, exc.message, {"event": event_type, **exc.details})
            logger.warning("Webhook %s %s unresolved: %s", provider.value, event_type, exc.message)
            return WebhookOutcome(
                "failed",
                provider,
                event=event_type,
                external_event_id=event_id,
                error=exc.message,
                error_kind=exc.kind,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Webhook dispatch failed provider=%s event=%s", provider.value, event_type)
            self.ledger.mark_failed(record, f"{type(exc).__name__}: {exc}", {"event": event_type})
            return WebhookOutcome(
                "failed", provider, event=event_type, external_event_id=event_id, error=str(exc)
            )

        self._run_side_effects(state)
        return WebhookOutcome(
            "processed", provider, event=event_type, external_event_id=event_id, result=state.result
        )

    def _record_unparseable(self, provider: WebhookProvider, raw_body: bytes, exc: NormalizationError) -> None:
        """Keep malformed (but authentic) deliveries visible on the ledger."""
        event_id = build_external_event_id(["invalid", hash_payload(raw_body)[:16]])
        gate = self.ledger.begin(provider, event_id, "invalid", raw_body)
        if gate.record is not None:
            self.ledger.mark_failed(gate.record, exc.message)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, event: NormalizedEvent, state: _Dispatch) -> None:
        if event.provider.is_platform:
            if event.kind in _SUBSCRIPTION_KINDS:
                self._apply_subscription(event, state)
            else:
                state.result["ignored"] = True
            return
        if event.kind in (EventKind.CHARGE_SUCCEEDED, EventKind.CHARGE_FAILED, EventKind.CHARGE_REFUNDED):
            self._apply_donation(event, state)
        elif event.kind in _RECURRING_KINDS:
            self._apply_recurring(event, state)
        elif event.kind in _DISPUTE_KINDS:
            self._apply_dispute(event, state)
        else:
            state.result["ignored"] = True

    def _conditional_update(self, model, row_id: int, transition: Transition, **values: Any) -> bool:
        """UPDATE ... WHERE id = :id AND status = :expected. False when the row moved on."""
        self.db.flush()
        res = self.db.execute(
            update(model)
            .where(model.id == row_id, model.status == transition.from_status)
            .values(status=transition.to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    # -- donations -------------------------------------------------------

    def _find_donation(self, event: NormalizedEvent) -> Donation | None:
        provider = event.provider.payment_provider
        refs = event.refs("payment_intent", "charge", "client_reference")
        if refs:
            donation = self.db.scalar(
                select(Donation)
                .where(Donation.provider == provider, Donation.provider_ref.in_(refs))
                .order_by(Donation.id)
                .limit(1)
            )
            if donation:
                return donation
        donation_id = event.metadata.get("donationId") or event.metadata.get("donation_id")
        if donation_id and str(donation_id).isdigit():
            donation = self.db.get(Donation, int(donation_id))
            if donation and donation.provider == provider:
                return donation
        return None

    def _apply_donation(self, event: NormalizedEvent, state: _Dispatch) -> None:
        donation = self._find_donation(event)
        if donation is None:
            raise EntityNotFoundError("Donation", event.external_ref)
        state.tenant_id = donation.tenant_id
        state.result["donation_id"] = donation.id

        extra: dict[str, Any] = {}
        if event.kind is EventKind.CHARGE_REFUNDED and event.refunded_amount is not None:
            donation.refunded_amount = event.refunded_amount
        if event.kind is EventKind.CHARGE_SUCCEEDED and event.customer_email and not donation.donor_email:
            extra["donor_email"] = event.customer_email

        transition = donation_transition(donation.status, event, donation.amount)
        if transition is None or not self._conditional_update(Donation, donation.id, transition, **extra):
            logger.info(
                "Donation %s in %s: %s is a no-op", donation.id, donation.status.value, event.kind.value
            )
            state.result["noop"] = True
            return

        self.db.refresh(donation)
        state.result["status"] = donation.status.value
        if SideEffect.ISSUE_RECEIPT in transition.side_effects:
            state.completed.append(donation)
        state.audits.append(
            {
                "action": f"donation.{transition.to_status.value}",
                "tenant_id": donation.tenant_id,
                "church_id": donation.church_id,
                "target_type": "Donation",
                "target_id": str(donation.id),
                "provider": donation.provider.value,
                "provider_ref": donation.provider_ref,
                "from_status": transition.from_status.value,
            }
        )

    # -- recurring donations ---------------------------------------------

    def _find_recurring(self, event: NormalizedEvent) -> RecurringDonation | None:
        provider = event.provider.payment_provider
        refs = event.refs("subscription", "plan")
        if refs:
            recurring = self.db.scalar(
                select(RecurringDonation)
                .where(RecurringDonation.provider == provider, RecurringDonation.provider_ref.in_(refs))
                .order_by(RecurringDonation.id)
                .limit(1)
            )
            if recurring:
                return recurring
        recurring_id = event.metadata.get("recurringDonationId")
        if recurring_id and str(recurring_id).isdigit():
            recurring = self.db.get(RecurringDonation, int(recurring_id))
            if recurring and recurring.provider == provider:
                return recurring
        return None

    def _record_renewal_charge(self, recurring: RecurringDonation, event: NormalizedEvent, state: _Dispatch) -> None:
        charge_ref = event.related_ids.get("charge")
        if not charge_ref or event.kind is EventKind.INVOICE_PAYMENT_FAILED:
            return
        existing = self.db.scalar(
            select(Donation).where(
                Donation.provider == recurring.provider, Donation.provider_ref == charge_ref
            )
        )
        if existing:
            state.result["donation_id"] = existing.id
            return
        donation = Donation(
            tenant_id=recurring.tenant_id,
            church_id=recurring.church_id,
            member_id=recurring.member_id,
            recurring_donation_id=recurring.id,
            amount=event.amount if event.amount is not None else recurring.amount,
            currency=event.currency or recurring.currency,
            status=DonationStatus.COMPLETED,
            provider=recurring.provider,
            provider_ref=charge_ref,
            donor_email=event.customer_email,
        )
        self.db.add(donation)
        self.db.flush()
        recurring.last_charge_at = utcnow()
        state.completed.append(donation)
        state.result["donation_id"] = donation.id
        state.audits.append(
            {
                "action": "donation.completed",
                "tenant_id": donation.tenant_id,
                "church_id": donation.church_id,
                "target_type": "Donation",
                "target_id": str(donation.id),
                "provider": donation.provider.value,
                "provider_ref": charge_ref,
                "recurring_donation_id": recurring.id,
            }
        )

    def _apply_recurring(self, event: NormalizedEvent, state: _Dispatch) -> None:
        recurring = self._find_recurring(event)
        if recurring is None:
            raise EntityNotFoundError("RecurringDonation", event.external_ref)
        state.tenant_id = recurring.tenant_id
        state.result["recurring_donation_id"] = recurring.id

        # Learn the provider subscription code the first time it is seen.
        subscription_code = event.related_ids.get("subscription")
        if subscription_code and recurring.provider_ref != subscription_code:
            recurring.provider_ref = subscription_code

        if recurring.status is not RecurringStatus.CANCELED:
            self._record_renewal_charge(recurring, event, state)

        transition = recurring_transition(recurring.status, event)
        extra: dict[str, Any] = {}
        if transition and transition.to_status is RecurringStatus.CANCELED:
            extra["canceled_at"] = utcnow()
        if transition is None or not self._conditional_update(RecurringDonation, recurring.id, transition, **extra):
            state.result["noop"] = True
            state.result["status"] = recurring.status.value
            return

        self.db.refresh(recurring)
        state.result["status"] = recurring.status.value
        state.audits.append(
            {
                "action": f"recurring_donation.{transition.to_status.value}",
                "tenant_id": recurring.tenant_id,
                "church_id": recurring.church_id,
                "target_type": "RecurringDonation",
                "target_id": str(recurring.id),
                "provider_ref": recurring.provider_ref,
                "from_status": transition.from_status.value,
            }
        )

    # -- platform subscriptions ------------------------------------------

    def _find_subscription(self, event: NormalizedEvent) -> TenantSubscription | None:
        refs = event.refs("subscription", "plan")
        if not refs:
            return None
        return self.db.scalar(
            select(TenantSubscription)
            .where(
                TenantSubscription.provider == event.provider.payment_provider,
                TenantSubscription.provider_ref.in_(refs),
            )
            .order_by(TenantSubscription.id.desc())
            .limit(1)
        )

    def _apply_subscription(self, event: NormalizedEvent, state: _Dispatch) -> None:
        subscription = self._find_subscription(event)
        if subscription is None:
            tenant_id = event.metadata.get("tenantId") or event.metadata.get("tenant_id")
            if not tenant_id or not event.external_ref or event.kind is not EventKind.SUBSCRIPTION_UPDATED:
                raise EntityNotFoundError("TenantSubscription", event.external_ref)
            subscription = TenantSubscription(
                tenant_id=str(tenant_id),
                plan_code=event.metadata.get("planCode") or event.related_ids.get("plan"),
                status=event.subscription_status or TenantSubscriptionStatus.ACTIVE,
                provider=event.provider.payment_provider,
                provider_ref=event.external_ref,
                current_period_end=event.period_end,
                provider_metadata=merge_metadata({}, subscription_metadata_updates(event)),
            )
            self.db.add(subscription)
            self.db.flush()
            state.tenant_id = subscription.tenant_id
            state.result.update(subscription_id=subscription.id, status=subscription.status.value, created=True)
            state.audits.append(
                {
                    "action": "platform.subscription.created",
                    "tenant_id": subscription.tenant_id,
                    "target_type": "TenantSubscription",
                    "target_id": str(subscription.id),
                    "provider_ref": subscription.provider_ref,
                    "subscription_status": subscription.status.value,
                }
            )
            return

        state.tenant_id = subscription.tenant_id
        state.result["subscription_id"] = subscription.id

        # Identifiers are merged even when the status does not move.
        updates = subscription_metadata_updates(event)
        if updates:
            subscription.provider_metadata = merge_metadata(subscription.provider_metadata, updates)
        if event.period_end:
            subscription.current_period_end = event.period_end

        transition = subscription_transition(subscription.status, event)
        extra: dict[str, Any] = {}
        if transition and transition.to_status is TenantSubscriptionStatus.CANCELED:
            extra["canceled_at"] = utcnow()
        if transition is None:
            state.result.update(noop=True, status=subscription.status.value)
            return
        if not self._conditional_update(TenantSubscription, subscription.id, transition, **extra):
            state.result.update(noop=True, status=subscription.status.value)
            return

        self.db.refresh(subscription)
        state.result["status"] = subscription.status.value
        state.audits.append(
            {
                "action": "platform.subscription.status_changed",
                "tenant_id": subscription.tenant_id,
                "target_type": "TenantSubscription",
                "target_id": str(subscription.id),
                "provider_ref": subscription.provider_ref,
                "from_status": transition.from_status.value,
                "to_status": subscription.status.value,
                "event_type": event.event_type,
            }
        )

    # -- disputes ----------------------------------------------------------

    def _find_dispute(self, provider: PaymentProvider, provider_ref: str | None) -> Dispute | None:
        return self.db.scalar(
            select(Dispute).where(Dispute.provider == provider, Dispute.provider_ref == provider_ref)
        )

    def _apply_dispute(self, event: NormalizedEvent, state: _Dispatch) -> None:
        provider = event.provider.payment_provider
        dispute = self._find_dispute(provider, event.external_ref)
        if dispute is None:
            dispute = self._create_dispute(event)
            state.result["created"] = True

        changed = False
        for attr, value in (
            ("reason", event.reason),
            ("amount", event.amount),
            ("currency", event.currency),
            ("evidence_due_by", event.due_by),
        ):
            if value is not None and getattr(dispute, attr) != value:
                setattr(dispute, attr, value)
                changed = True
        next_status = dispute_status(dispute.status, event)
        if next_status:
            dispute.status = next_status
            changed = True
        if event.kind is EventKind.DISPUTE_CLOSED and dispute.closed_at is None:
            dispute.closed_at = utcnow()
            changed = True
        self.db.flush()

        state.tenant_id = dispute.tenant_id
        state.result.update(dispute_id=dispute.id, status=dispute.status)
        if changed or state.result.get("created"):
            state.audits.append(
                {
                    "action": "dispute.updated",
                    "tenant_id": dispute.tenant_id,
                    "church_id": dispute.church_id,
                    "target_type": "Dispute",
                    "target_id": str(dispute.id),
                    "provider": provider.value,
                    "dispute_status": dispute.status,
                }
            )

    def _create_dispute(self, event: NormalizedEvent) -> Dispute:
        """Insert the dispute row; a concurrent creator wins via the unique constraint."""
        provider = event.provider.payment_provider
        refs = [r for r in (event.related_ids.get("payment_intent"), event.related_ids.get("charge")) if r]
        donation = None
        if refs:
            donation = self.db.scalar(
                select(Donation)
                .where(Donation.provider == provider, or_(*(Donation.provider_ref == r for r in refs)))
                .limit(1)
            )
        dispute = Dispute(
            tenant_id=donation.tenant_id if donation else event.metadata.get("tenantId"),
            church_id=donation.church_id if donation else None,
            donation_id=donation.id if donation else None,
            provider=provider,
            provider_ref=event.external_ref,
            status=event.status or "needs_response",
        )
        try:
            with self.db.begin_nested():
                self.db.add(dispute)
        except IntegrityError:
            logger.info("Dispute %s created concurrently", event.external_ref)
            dispute = self._find_dispute(provider, event.external_ref)
        return dispute

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _run_side_effects(self, state: _Dispatch) -> None:
        for donation in state.completed:
            try:
                ensure_donation_receipt(self.db, donation)
                self.db.commit()
            except Exception:  # noqa: BLE001
                self.db.rollback()
                logger.exception("Receipt issuance failed for donation %s", donation.id)
            try:
                realtime.publish(
                    "donation.created",
                    {
                        "id": donation.id,
                        "church_id": donation.church_id,
                        "tenant_id": donation.tenant_id,
                        "amount": str(donation.amount),
                        "currency": donation.currency,
                        "status": donation.status.value,
                        "provider": donation.provider.value,
                    },
                )
            except Exception:  # noqa: BLE001
                logger.exception("Realtime publish failed for donation %s", donation.id)
        for entry in state.audits:
            try:
                action = entry.pop("action")
                log_audit_event(action, **entry)
            except Exception:  # noqa: BLE001
                logger.exception("Audit append failed")
