"""Webhook signature verification and ledger key derivation.

Verification always runs against the raw request bytes. Re-serialized JSON
would change whitespace and key order and break the HMAC.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Iterable

import stripe

from givingcore.core.exceptions import NormalizationError, ProviderNotConfiguredError, SignatureInvalidError
from givingcore.models.enums import PaymentProvider, WebhookProvider
from givingcore.services.normalizer import paystack_refs

logger = logging.getLogger(__name__)

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"


def hash_payload(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def build_external_event_id(parts: Iterable[Any]) -> str:
    """Join the non-empty parts with ':'.

    Falls back to a hash of the parts when every part is empty, so the key is
    never blank.
    """
    parts = list(parts)
    values = [str(part) for part in parts if part not in (None, "")]
    if values:
        return ":".join(values)
    digest = hashlib.sha256(json.dumps([None if p is None else str(p) for p in parts]).encode()).hexdigest()
    return f"hash:{digest[:20]}"


def paystack_event_id(payload: dict[str, Any], raw_body: bytes) -> str:
    """Composite id for Paystack deliveries.

    Paystack reuses ``data.id`` across semantically different events, so the
    key includes the event name, references and a prefix of the body hash.
    Byte-identical redeliveries produce the same key.
    """
    refs = paystack_refs(payload)
    return build_external_event_id(
        [
            refs["event"],
            refs["data_id"],
            refs["reference"],
            refs["subscription_code"],
            refs["plan_code"],
            hash_payload(raw_body)[:16],
        ]
    )


def verify_paystack_signature(raw_body: bytes, signature: str | None, secret: str | None) -> None:
    """HMAC-SHA512 of the raw body with the webhook secret, constant-time compare."""
    if not secret:
        raise ProviderNotConfiguredError("paystack")
    if not signature:
        logger.warning("Paystack webhook received without signature")
        raise SignatureInvalidError("paystack", "Missing signature")
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()
    if not hmac.compare_digest(expected, signature.strip()):
        logger.warning("Paystack webhook signature verification failed")
        raise SignatureInvalidError("paystack")


def verify_stripe_signature(
    raw_body: bytes,
    signature: str | None,
    secret: str | None,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> None:
    """Delegate to the Stripe SDK (timestamp window + HMAC-SHA256)."""
    if not secret:
        raise ProviderNotConfiguredError("stripe")
    if not signature:
        logger.warning("Stripe webhook received without signature")
        raise SignatureInvalidError("stripe", "Missing signature")
    try:
        stripe.Webhook.construct_event(raw_body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise SignatureInvalidError("stripe") from exc
    except ValueError as exc:
        raise NormalizationError("Invalid Stripe payload", provider="stripe") from exc


def parse_payload(raw_body: bytes, provider: WebhookProvider) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.error("Invalid %s webhook payload: %s", provider.value, exc)
        raise NormalizationError("Invalid payload", provider=provider.value) from exc
    if not isinstance(payload, dict):
        raise NormalizationError("Payload is not a JSON object", provider=provider.value)
    return payload


def external_event_id(provider: WebhookProvider, payload: dict[str, Any], raw_body: bytes) -> str:
    """Stripe events carry a stable top-level id; Paystack needs the composite key."""
    if provider.payment_provider is PaymentProvider.STRIPE:
        event_id = payload.get("id")
        if not event_id:
            raise NormalizationError("Stripe event without id", provider=provider.value)
        return str(event_id)
    return paystack_event_id(payload, raw_body)


def verify(provider: WebhookProvider, raw_body: bytes, signature: str | None, secret: str | None,
           tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE) -> dict[str, Any]:
    """Verify and parse one delivery. Returns the decoded payload."""
    if provider.payment_provider is PaymentProvider.STRIPE:
        verify_stripe_signature(raw_body, signature, secret, tolerance)
    else:
        verify_paystack_signature(raw_body, signature, secret)
    return parse_payload(raw_body, provider)
