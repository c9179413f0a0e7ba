from __future__ import annotations

import enum


class PaymentProvider(str, enum.Enum):
    """Payment processor that owns a provider reference."""
    STRIPE = "stripe"
    PAYSTACK = "paystack"


class WebhookProvider(str, enum.Enum):
    """Provider namespace per trust level so ids never collide across accounts."""
    STRIPE = "stripe"
    PAYSTACK = "paystack"
    STRIPE_PLATFORM = "stripe_platform"
    PAYSTACK_PLATFORM = "paystack_platform"

    @property
    def payment_provider(self) -> PaymentProvider:
        if self in (WebhookProvider.STRIPE, WebhookProvider.STRIPE_PLATFORM):
            return PaymentProvider.STRIPE
        return PaymentProvider.PAYSTACK

    @property
    def is_platform(self) -> bool:
        return self in (WebhookProvider.STRIPE_PLATFORM, WebhookProvider.PAYSTACK_PLATFORM)


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class DonationStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RecurringStatus(str, enum.Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class TenantSubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


class DisputeEvidenceType(str, enum.Enum):
    RECEIPT = "receipt"
    CUSTOMER_COMMUNICATION = "customer_communication"
    PRODUCT_DESCRIPTION = "product_description"
    REFUND_POLICY = "refund_policy"
    CUSTOMER_EMAIL = "customer_email"
    CUSTOMER_NAME = "customer_name"
    SHIPPING_DOCUMENTATION = "shipping_documentation"
    SHIPPING_TRACKING = "shipping_tracking"
    SHIPPING_DATE = "shipping_date"
    SERVICE_DOCUMENTATION = "service_documentation"
    SERVICE_DATE = "service_date"
    UNCATEGORIZED = "uncategorized"


class DisputeEvidenceStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    FAILED = "failed"
