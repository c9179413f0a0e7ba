"""Webhook ledger, dispute and settlement models.

These tables are owned by the payment integration core:
- WebhookEvent: idempotency ledger, one row per distinct provider delivery
- Dispute / DisputeEvidence: chargebacks and the evidence history sent for them
- Payout / PayoutTransaction: provider settlements pulled by reconciliation
"""
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from givingcore.db.base_class import Base
from givingcore.models.enums import (
    DisputeEvidenceStatus,
    DisputeEvidenceType,
    PaymentProvider,
    WebhookEventStatus,
    WebhookProvider,
)

if TYPE_CHECKING:
    from givingcore.models.models import Donation


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_webhook_events_provider_external_event_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[WebhookProvider] = mapped_column(Enum(WebhookProvider), index=True)
    external_event_id: Mapped[str] = mapped_column(String(255))
    event_type: Mapped[str] = mapped_column(String(80))
    payload_hash: Mapped[str] = mapped_column(String(64))
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus), default=WebhookEventStatus.RECEIVED, index=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    received_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    processed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Dispute(Base):
    __tablename__ = "disputes"
    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_disputes_provider_provider_ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    church_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    donation_id: Mapped[int | None] = mapped_column(ForeignKey("donations.id"), nullable=True)
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider))
    provider_ref: Mapped[str] = mapped_column(String(120))
    status: Mapped[str] = mapped_column(String(40), default="needs_response")
    """Provider-reported dispute status (needs_response, under_review, won, lost, ...)."""
    reason: Mapped[str | None] = mapped_column(String(120), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    evidence_due_by: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    alert_stages: Mapped[list[str]] = mapped_column(JSON, default=list)
    """Deadline alert stages already sent (overdue, one_day, three_days, seven_days)."""
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    donation: Mapped["Donation | None"] = relationship("Donation", back_populates="disputes")
    evidence: Mapped[list["DisputeEvidence"]] = relationship(
        "DisputeEvidence",
        back_populates="dispute", order_by="DisputeEvidence.id"
    )


class DisputeEvidence(Base):
    """One evidence submission attempt. Append-only history per dispute."""
    __tablename__ = "dispute_evidence"

    id: Mapped[int] = mapped_column(primary_key=True)
    dispute_id: Mapped[int] = mapped_column(ForeignKey("disputes.id"), index=True)
    type: Mapped[DisputeEvidenceType] = mapped_column(Enum(DisputeEvidenceType))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_mime: Mapped[str | None] = mapped_column(String(120), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[DisputeEvidenceStatus] = mapped_column(
        Enum(DisputeEvidenceStatus), default=DisputeEvidenceStatus.PENDING
    )
    provider_ref: Mapped[str | None] = mapped_column(String(120), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    dispute: Mapped["Dispute"] = relationship("Dispute", back_populates="evidence")


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_payouts_provider_provider_ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider))
    provider_ref: Mapped[str] = mapped_column(String(120))
    currency: Mapped[str] = mapped_column(String(3))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    status: Mapped[str] = mapped_column(String(40))
    arrival_date: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    """Raw provider payload, retained for audit."""
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    transactions: Mapped[list["PayoutTransaction"]] = relationship("PayoutTransaction", back_populates="payout")


class PayoutTransaction(Base):
    __tablename__ = "payout_transactions"
    __table_args__ = (
        UniqueConstraint("payout_id", "provider_ref", name="uq_payout_transactions_payout_id_provider_ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    payout_id: Mapped[int] = mapped_column(ForeignKey("payouts.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    church_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    donation_id: Mapped[int | None] = mapped_column(ForeignKey("donations.id"), nullable=True)
    provider_ref: Mapped[str] = mapped_column(String(120))
    source_ref: Mapped[str | None] = mapped_column(String(120), index=True, nullable=True)
    type: Mapped[str | None] = mapped_column(String(60), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    fee: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    net: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    payout: Mapped["Payout"] = relationship("Payout", back_populates="transactions")
