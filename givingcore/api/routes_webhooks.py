"""Provider webhook endpoints.

Each route hands the raw body and signature header to ``WebhookService``.
Signature and payload problems surface as 400 through the error handlers;
everything already handled or intentionally ignored answers 200 so the
provider stops redelivering.

Routes are plain ``def`` so the synchronous database work runs in the
threadpool; the raw body is read by the async ``get_raw_body`` dependency.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Query, Request

from givingcore.api.dependencies import DbDep, RawBodyDep, WebhookServiceDep
from givingcore.api.rate_limit import RATE_LIMITS, limiter
from givingcore.api.schemas import WebhookEventOut
from givingcore.models.enums import WebhookEventStatus, WebhookProvider
from givingcore.services.idempotency import IdempotencyLedger
from givingcore.services.signatures import PAYSTACK_SIGNATURE_HEADER, STRIPE_SIGNATURE_HEADER

logger = logging.getLogger(__name__)
router = APIRouter()


def _receive(request: Request, raw_body: bytes, service, provider: WebhookProvider, header: str) -> dict:
    outcome = service.handle(provider, raw_body, request.headers.get(header))
    if outcome.status == "failed":
        logger.warning(
            "Webhook %s %s recorded as failed: %s", provider.value, outcome.event, outcome.error
        )
    return outcome.to_response()


@router.post("/stripe")
@limiter.limit(RATE_LIMITS["webhook"])
def stripe_webhook(request: Request, raw_body: RawBodyDep, service: WebhookServiceDep):
    return _receive(request, raw_body, service, WebhookProvider.STRIPE, STRIPE_SIGNATURE_HEADER)


@router.post("/paystack")
@limiter.limit(RATE_LIMITS["webhook"])
def paystack_webhook(request: Request, raw_body: RawBodyDep, service: WebhookServiceDep):
    return _receive(request, raw_body, service, WebhookProvider.PAYSTACK, PAYSTACK_SIGNATURE_HEADER)


@router.post("/platform/stripe")
@limiter.limit(RATE_LIMITS["webhook"])
def platform_stripe_webhook(request: Request, raw_body: RawBodyDep, service: WebhookServiceDep):
    return _receive(request, raw_body, service, WebhookProvider.STRIPE_PLATFORM, STRIPE_SIGNATURE_HEADER)


@router.post("/platform/paystack")
@limiter.limit(RATE_LIMITS["webhook"])
def platform_paystack_webhook(request: Request, raw_body: RawBodyDep, service: WebhookServiceDep):
    return _receive(request, raw_body, service, WebhookProvider.PAYSTACK_PLATFORM, PAYSTACK_SIGNATURE_HEADER)


@router.get("/events", response_model=list[WebhookEventOut])
def list_webhook_events(
    db: DbDep,
    status: WebhookEventStatus | None = None,
    provider: WebhookProvider | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    """Operator view of the ledger, e.g. ``?status=failed``."""
    return IdempotencyLedger(db).list_events(status=status, provider=provider, limit=limit)
