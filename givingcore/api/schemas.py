"""Pydantic schemas for the operator API."""
from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field

from givingcore.models.enums import (
    DisputeEvidenceStatus,
    DisputeEvidenceType,
    PaymentProvider,
    WebhookEventStatus,
    WebhookProvider,
)


class WebhookEventOut(BaseModel):
    id: int
    provider: WebhookProvider
    external_event_id: str
    event_type: str
    status: WebhookEventStatus
    error: str | None = None
    result: dict[str, Any] | None = None
    tenant_id: str | None = None
    received_at: dt.datetime
    processed_at: dt.datetime | None = None

    model_config = {"from_attributes": True}


class EvidenceOut(BaseModel):
    id: int
    dispute_id: int
    type: DisputeEvidenceType
    description: str | None = None
    text: str | None = None
    file_name: str | None = None
    file_mime: str | None = None
    file_size: int | None = None
    status: DisputeEvidenceStatus
    provider_ref: str | None = None
    error: str | None = None
    submitted_at: dt.datetime | None = None
    created_at: dt.datetime

    model_config = {"from_attributes": True}


class EvidenceSubmit(BaseModel):
    submit_final: bool = Field(False, description="Also submit the dispute for review (Stripe only)")


class DisputeOut(BaseModel):
    id: int
    provider: PaymentProvider
    provider_ref: str
    status: str
    reason: str | None = None
    donation_id: int | None = None
    evidence_due_by: dt.datetime | None = None
    submitted_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None

    model_config = {"from_attributes": True}


class PayoutSyncRequest(BaseModel):
    provider: PaymentProvider | None = None
    from_date: dt.datetime | None = None
    to_date: dt.datetime | None = None


class PayoutSyncOut(BaseModel):
    payouts: int
    transactions: int
