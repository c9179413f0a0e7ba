from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from givingcore.db.base_class import Base
from givingcore.models.enums import DonationStatus, PaymentProvider, RecurringStatus, TenantSubscriptionStatus

if TYPE_CHECKING:
    from givingcore.models.payment_models import Dispute
else:
    # Import at runtime for SQLAlchemy relationship resolution
    from givingcore.models import payment_models  # noqa: F401


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Member(Base):
    """Read-only projection of a congregation member (owned by the member directory)."""
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    church_id: Mapped[str] = mapped_column(String(64), index=True)
    first_name: Mapped[str] = mapped_column(String(120))
    last_name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class RecurringDonation(Base):
    __tablename__ = "recurring_donations"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    church_id: Mapped[str] = mapped_column(String(64), index=True)
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    interval: Mapped[str] = mapped_column(String(20), default="MONTHLY")
    status: Mapped[RecurringStatus] = mapped_column(
        Enum(RecurringStatus), default=RecurringStatus.ACTIVE, index=True
    )
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider))
    provider_ref: Mapped[str | None] = mapped_column(String(120), index=True, nullable=True)
    """Subscription code (Stripe sub_..., Paystack SUB_...)."""
    last_charge_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    donations: Mapped[list["Donation"]] = relationship("Donation", back_populates="recurring_donation")


class Donation(Base):
    """A single gift.

    Created PENDING by the checkout flow; moved to COMPLETED / FAILED / REFUNDED
    only by the webhook dispatcher. Never deleted.
    """
    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    church_id: Mapped[str] = mapped_column(String(64), index=True)
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id"), nullable=True)
    recurring_donation_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_donations.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[DonationStatus] = mapped_column(
        Enum(DonationStatus), default=DonationStatus.PENDING, index=True
    )
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider))
    provider_ref: Mapped[str] = mapped_column(String(120), index=True)
    """Checkout / charge / transaction reference produced by the checkout flow."""
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    donor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    donor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    donor_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    member: Mapped["Member | None"] = relationship("Member")
    recurring_donation: Mapped["RecurringDonation | None"] = relationship(
        "RecurringDonation", back_populates="donations"
    )
    receipt: Mapped["DonationReceipt | None"] = relationship(
        "DonationReceipt", back_populates="donation", uselist=False
    )
    disputes: Mapped[list["Dispute"]] = relationship("Dispute", back_populates="donation")


class DonationReceipt(Base):
    __tablename__ = "donation_receipts"

    id: Mapped[int] = mapped_column(primary_key=True)
    donation_id: Mapped[int] = mapped_column(ForeignKey("donations.id"), unique=True)
    church_id: Mapped[str] = mapped_column(String(64), index=True)
    receipt_number: Mapped[str] = mapped_column(String(40), unique=True)
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    issued_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    donation: Mapped["Donation"] = relationship("Donation", back_populates="receipt")


class TenantSubscription(Base):
    """Platform billing record for a tenant.

    ``provider_metadata`` holds provider customer / subscription identifiers
    learned from webhooks. It is merged key by key, never replaced wholesale.
    """
    __tablename__ = "tenant_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    plan_code: Mapped[str | None] = mapped_column(String(60), nullable=True)
    status: Mapped[TenantSubscriptionStatus] = mapped_column(
        Enum(TenantSubscriptionStatus), default=TenantSubscriptionStatus.TRIALING, index=True
    )
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider))
    provider_ref: Mapped[str] = mapped_column(String(120), index=True)
    current_period_end: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
