"""Webhook idempotency ledger.

One ``WebhookEvent`` row per ``(provider, external_event_id)``. The database
unique constraint is the only concurrency primitive: whichever request
commits the row first owns the delivery, every other attempt (including one
racing it) sees an ``IntegrityError`` and reports a duplicate.

A FAILED row also blocks reprocessing of the same key. Operators inspect the
``error`` column rather than relying on provider retries.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from givingcore.models.enums import WebhookEventStatus, WebhookProvider
from givingcore.models.payment_models import WebhookEvent
from givingcore.services.signatures import hash_payload

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class GateResult:
    duplicate: bool
    record: WebhookEvent | None = None

    @property
    def proceed(self) -> bool:
        return not self.duplicate


class IdempotencyLedger:
    def __init__(self, db: Session):
        self.db = db

    def begin(
        self,
        provider: WebhookProvider,
        external_event_id: str,
        event_type: str,
        raw_body: bytes,
        tenant_id: str | None = None,
    ) -> GateResult:
        """Insert the RECEIVED row or detect that the delivery was already seen."""
        record = WebhookEvent(
            provider=provider,
            external_event_id=external_event_id,
            event_type=(event_type or "unknown")[:80],
            payload_hash=hash_payload(raw_body),
            status=WebhookEventStatus.RECEIVED,
            tenant_id=tenant_id,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "Duplicate webhook delivery provider=%s event_id=%s", provider.value, external_event_id
            )
            return GateResult(duplicate=True)
        return GateResult(duplicate=False, record=record)

    def mark_processed(self, record: WebhookEvent, result: dict[str, Any] | None = None) -> None:
        record.status = WebhookEventStatus.PROCESSED
        record.processed_at = dt.datetime.now(dt.timezone.utc)
        record.result = result
        record.error = None
        self.db.commit()

    def mark_failed(self, record: WebhookEvent, error: str, result: dict[str, Any] | None = None) -> None:
        """Record the failure on the ledger row. Any pending entity changes are discarded."""
        self.db.rollback()
        record = self.db.merge(record)
        record.status = WebhookEventStatus.FAILED
        record.processed_at = dt.datetime.now(dt.timezone.utc)
        record.error = (error or "unknown error")[:_MAX_ERROR_LENGTH]
        record.result = result
        self.db.commit()
        logger.warning(
            "Webhook marked FAILED provider=%s event_id=%s error=%s",
            record.provider.value,
            record.external_event_id,
            record.error,
        )

    def get(self, provider: WebhookProvider, external_event_id: str) -> WebhookEvent | None:
        return self.db.scalar(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.external_event_id == external_event_id,
            )
        )

    def list_events(
        self,
        status: WebhookEventStatus | None = None,
        provider: WebhookProvider | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEvent).order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
        if status is not None:
            stmt = stmt.where(WebhookEvent.status == status)
        if provider is not None:
            stmt = stmt.where(WebhookEvent.provider == provider)
        return list(self.db.scalars(stmt.limit(limit)))
