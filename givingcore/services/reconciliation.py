"""Payout / settlement reconciliation.

Pulls provider payouts (Stripe) or settlements (Paystack) and their
constituent transactions into ``payouts`` / ``payout_transactions``. Every
write is an upsert keyed by the provider reference, so a re-run over the same
or an overlapping window refreshes rows instead of duplicating them.

Each payout is committed with its transactions before the next one is
fetched; a provider failure mid-run propagates and leaves earlier payouts in
place. Re-running is the recovery path.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from givingcore import metrics
from givingcore.models.enums import PaymentProvider
from givingcore.models.models import Donation
from givingcore.models.payment_models import Payout, PayoutTransaction
from givingcore.services.payment_providers import ProviderClients
from givingcore.utils.currency import from_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutRecord:
    provider_ref: str
    currency: str
    amount: Decimal
    status: str
    arrival_date: dt.datetime | None
    raw: dict[str, Any]


@dataclass(frozen=True)
class TransactionRecord:
    provider_ref: str
    source_ref: str | None
    type: str | None
    amount: Decimal
    fee: Decimal
    net: Decimal
    currency: str
    description: str | None
    raw: dict[str, Any]


def _parse_iso(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable settlement date %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)


def stripe_payout_record(payout: dict[str, Any]) -> PayoutRecord:
    currency = str(payout.get("currency") or "").upper()
    arrival = payout.get("arrival_date")
    return PayoutRecord(
        provider_ref=str(payout["id"]),
        currency=currency,
        amount=from_minor_units(payout.get("amount") or 0, currency),
        status=payout.get("status") or "unknown",
        arrival_date=dt.datetime.fromtimestamp(int(arrival), tz=dt.timezone.utc) if arrival else None,
        raw=payout,
    )


def stripe_transaction_record(txn: dict[str, Any]) -> TransactionRecord:
    currency = str(txn.get("currency") or "").upper()
    source = txn.get("source")
    source_ref = source.get("id") if isinstance(source, dict) else source
    amount = from_minor_units(txn.get("amount") or 0, currency)
    fee = from_minor_units(txn.get("fee") or 0, currency)
    # Stripe reports net; derive it only when the field is missing.
    net = from_minor_units(txn["net"], currency) if txn.get("net") is not None else amount - fee
    return TransactionRecord(
        provider_ref=str(txn["id"]),
        source_ref=source_ref or None,
        type=txn.get("type"),
        amount=amount,
        fee=fee,
        net=net,
        currency=currency,
        description=txn.get("description"),
        raw=txn,
    )


def paystack_settlement_record(settlement: dict[str, Any]) -> PayoutRecord:
    currency = str(settlement.get("currency") or "").upper()
    return PayoutRecord(
        provider_ref=str(settlement["id"]),
        currency=currency,
        amount=from_minor_units(settlement.get("effective_amount") or 0, currency),
        status=settlement.get("status") or "unknown",
        arrival_date=_parse_iso(settlement.get("settlement_date")),
        raw=settlement,
    )


def paystack_transaction_record(txn: dict[str, Any], fallback_currency: str) -> TransactionRecord:
    currency = str(txn.get("currency") or fallback_currency).upper()
    amount = from_minor_units(txn.get("amount") or 0, currency)
    fee = from_minor_units(txn.get("fees") or 0, currency)
    return TransactionRecord(
        provider_ref=str(txn["id"]),
        source_ref=txn.get("reference") or None,
        type="paystack_transaction",
        amount=amount,
        fee=fee,
        net=amount - fee,
        currency=currency,
        description=None,
        raw=txn,
    )


class ReconciliationEngine:
    def __init__(self, db: Session, clients: ProviderClients):
        self.db = db
        self.clients = clients

    def sync_payouts(
        self,
        tenant_id: str,
        provider: PaymentProvider | None = None,
        from_date: dt.datetime | None = None,
        to_date: dt.datetime | None = None,
    ) -> dict[str, int]:
        """Sync one provider, or every configured provider when ``provider`` is None."""
        if provider is not None:
            providers = [provider]
        else:
            providers = [
                p
                for p, client in (
                    (PaymentProvider.STRIPE, self.clients.stripe),
                    (PaymentProvider.PAYSTACK, self.clients.paystack),
                )
                if client is not None
            ]
        totals = {"payouts": 0, "transactions": 0}
        for p in providers:
            counts = self._sync_provider(tenant_id, p, from_date, to_date)
            totals["payouts"] += counts["payouts"]
            totals["transactions"] += counts["transactions"]
        return totals

    def _sync_provider(
        self,
        tenant_id: str,
        provider: PaymentProvider,
        from_date: dt.datetime | None,
        to_date: dt.datetime | None,
    ) -> dict[str, int]:
        if provider is PaymentProvider.STRIPE:
            gateway = self.clients.require_stripe()
            payouts: Iterable[PayoutRecord] = (
                stripe_payout_record(p) for p in gateway.iter_payouts(from_date, to_date)
            )

            def transactions(record: PayoutRecord) -> Iterable[TransactionRecord]:
                return (stripe_transaction_record(t) for t in gateway.iter_payout_transactions(record.provider_ref))
        else:
            client = self.clients.require_paystack()
            payouts = (paystack_settlement_record(s) for s in client.iter_settlements(from_date, to_date))

            def transactions(record: PayoutRecord) -> Iterable[TransactionRecord]:
                return (
                    paystack_transaction_record(t, record.currency)
                    for t in client.iter_settlement_transactions(record.provider_ref)
                )

        payout_count = transaction_count = matched = 0
        for record in payouts:
            payout = self._upsert_payout(tenant_id, provider, record)
            for txn in transactions(record):
                row = self._upsert_transaction(payout, provider, txn)
                transaction_count += 1
                if row.donation_id is not None:
                    matched += 1
            self.db.commit()
            payout_count += 1

        metrics.payouts_reconciled(provider.value, payout_count, matched, transaction_count - matched)
        logger.info(
            "Reconciled %s payouts (%s transactions, %s matched) for tenant %s via %s",
            payout_count,
            transaction_count,
            matched,
            tenant_id,
            provider.value,
        )
        return {"payouts": payout_count, "transactions": transaction_count}

    def _find_payout(self, provider: PaymentProvider, provider_ref: str) -> Payout | None:
        return self.db.scalar(
            select(Payout).where(Payout.provider == provider, Payout.provider_ref == provider_ref)
        )

    def _upsert_payout(self, tenant_id: str, provider: PaymentProvider, record: PayoutRecord) -> Payout:
        payout = self._find_payout(provider, record.provider_ref)
        if payout is None:
            payout = Payout(tenant_id=tenant_id, provider=provider, provider_ref=record.provider_ref)
            try:
                with self.db.begin_nested():
                    self._apply_payout(payout, record)
                    self.db.add(payout)
                return payout
            except IntegrityError:
                logger.info("Payout %s upserted concurrently", record.provider_ref)
                payout = self._find_payout(provider, record.provider_ref)
        self._apply_payout(payout, record)
        self.db.flush()
        return payout

    @staticmethod
    def _apply_payout(payout: Payout, record: PayoutRecord) -> None:
        payout.currency = record.currency
        payout.amount = record.amount
        payout.status = record.status
        payout.arrival_date = record.arrival_date
        payout.provider_metadata = record.raw

    def _match_donation(self, tenant_id: str, provider: PaymentProvider, source_ref: str | None) -> Donation | None:
        if not source_ref:
            return None
        return self.db.scalar(
            select(Donation)
            .where(
                Donation.tenant_id == tenant_id,
                Donation.provider == provider,
                Donation.provider_ref == source_ref,
            )
            .order_by(Donation.id)
            .limit(1)
        )

    def _upsert_transaction(
        self, payout: Payout, provider: PaymentProvider, record: TransactionRecord
    ) -> PayoutTransaction:
        donation = self._match_donation(payout.tenant_id, provider, record.source_ref)
        row = self.db.scalar(
            select(PayoutTransaction).where(
                PayoutTransaction.payout_id == payout.id,
                PayoutTransaction.provider_ref == record.provider_ref,
            )
        )
        if row is None:
            row = PayoutTransaction(payout_id=payout.id, tenant_id=payout.tenant_id, provider_ref=record.provider_ref)
            self.db.add(row)
        row.church_id = donation.church_id if donation else None
        row.donation_id = donation.id if donation else None
        row.source_ref = record.source_ref
        row.type = record.type
        row.amount = record.amount
        row.fee = record.fee
        row.net = record.net
        row.currency = record.currency
        row.description = record.description
        row.provider_metadata = record.raw
        self.db.flush()
        return row
