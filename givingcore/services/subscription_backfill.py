"""Backfill provider identifiers on tenant subscriptions.

Billing portal and invoice lookups need the provider customer id. Rows
created before those ids were merged from webhooks are filled here: first
from whatever raw provider payload already sits in ``provider_metadata``,
then from the provider API when the customer id is still missing. Existing
keys are only overwritten by non-empty values (``merge_metadata``).
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from givingcore import metrics
from givingcore.core.exceptions import ProviderCallError
from givingcore.models.enums import PaymentProvider
from givingcore.models.models import TenantSubscription
from givingcore.services.payment_providers import ProviderClients
from givingcore.services.transitions import merge_metadata

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 250

_STRIPE_PATHS: dict[str, Sequence[Sequence[str]]] = {
    "stripeSubscriptionId": (("stripeSubscriptionId",), ("id",), ("subscription",), ("data", "subscription")),
    "stripeCustomerId": (
        ("stripeCustomerId",),
        ("customer",),
        ("data", "object", "customer"),
        ("data", "customer"),
    ),
    "stripePriceId": (
        ("stripePriceId",),
        ("items", "data", "0", "price", "id"),
        ("data", "object", "items", "data", "0", "price", "id"),
        ("plan", "id"),
    ),
}

_PAYSTACK_PATHS: dict[str, Sequence[Sequence[str]]] = {
    "paystackSubscriptionCode": (
        ("paystackSubscriptionCode",),
        ("subscription_code",),
        ("data", "subscription", "subscription_code"),
        ("data", "subscription_code"),
    ),
    "paystackCustomerCode": (
        ("paystackCustomerCode",),
        ("customer_code",),
        ("data", "customer", "customer_code"),
        ("customer", "customer_code"),
    ),
    "paystackPlanCode": (
        ("paystackPlanCode",),
        ("plan_code",),
        ("data", "plan", "plan_code"),
        ("plan", "plan_code"),
    ),
    "paystackEmailToken": (("paystackEmailToken",), ("email_token",), ("data", "email_token")),
}


def read_path(source: Any, paths: Iterable[Sequence[str]]) -> str | None:
    """First non-blank string found along ``paths``; digit keys index into lists."""
    for path in paths:
        cursor = source
        for key in path:
            if isinstance(cursor, dict):
                cursor = cursor.get(key)
            elif isinstance(cursor, list) and key.isdigit() and int(key) < len(cursor):
                cursor = cursor[int(key)]
            else:
                cursor = None
                break
        if isinstance(cursor, str) and cursor.strip():
            return cursor.strip()
    return None


def _extract(metadata: dict[str, Any], paths: dict[str, Sequence[Sequence[str]]]) -> dict[str, str | None]:
    return {key: read_path(metadata, key_paths) for key, key_paths in paths.items()}


def stripe_identifiers(metadata: dict[str, Any], provider_ref: str | None) -> dict[str, str | None]:
    found = _extract(metadata, _STRIPE_PATHS)
    found["stripeSubscriptionId"] = found["stripeSubscriptionId"] or provider_ref
    return found


def paystack_identifiers(metadata: dict[str, Any], provider_ref: str | None) -> dict[str, str | None]:
    found = _extract(metadata, _PAYSTACK_PATHS)
    found["paystackSubscriptionCode"] = found["paystackSubscriptionCode"] or provider_ref
    return found


class SubscriptionMetadataBackfill:
    def __init__(self, db: Session, clients: ProviderClients):
        self.db = db
        self.clients = clients

    def _stripe_updates(self, subscription: TenantSubscription, metadata: dict[str, Any]) -> dict[str, Any]:
        updates = stripe_identifiers(metadata, subscription.provider_ref)
        ref = subscription.provider_ref or ""
        if updates["stripeCustomerId"] or self.clients.stripe is None or not ref.startswith("sub_"):
            return updates
        remote = self.clients.stripe.retrieve_subscription(ref)
        customer = remote.get("customer")
        items = (remote.get("items") or {}).get("data") or []
        price = (items[0].get("price") or {}) if items else {}
        updates.update(
            stripeCustomerId=customer.get("id") if isinstance(customer, dict) else customer,
            stripeSubscriptionId=remote.get("id"),
            stripePriceId=price.get("id"),
        )
        return updates

    def _paystack_updates(self, subscription: TenantSubscription, metadata: dict[str, Any]) -> dict[str, Any]:
        updates = paystack_identifiers(metadata, subscription.provider_ref)
        if updates["paystackCustomerCode"] or self.clients.paystack is None or not subscription.provider_ref:
            return updates
        remote = self.clients.paystack.fetch_subscription(subscription.provider_ref)
        updates.update(
            paystackCustomerCode=read_path(remote, [("customer", "customer_code")]),
            paystackPlanCode=read_path(remote, [("plan", "plan_code")]),
            paystackSubscriptionCode=read_path(remote, [("subscription_code",)]),
            paystackEmailToken=read_path(remote, [("email_token",)]),
        )
        return updates

    def run(
        self,
        tenant_ids: list[str] | None = None,
        subscription_ids: list[int] | None = None,
        limit: int = DEFAULT_LIMIT,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        stmt = select(TenantSubscription)
        if tenant_ids:
            stmt = stmt.where(TenantSubscription.tenant_id.in_(tenant_ids))
        if subscription_ids:
            stmt = stmt.where(TenantSubscription.id.in_(subscription_ids))
        subscriptions = list(self.db.scalars(stmt.order_by(TenantSubscription.created_at.asc()).limit(limit)))

        changed_ids: list[int] = []
        errors: list[dict[str, Any]] = []
        skipped = 0
        for subscription in subscriptions:
            metadata = dict(subscription.provider_metadata or {})
            try:
                if subscription.provider is PaymentProvider.STRIPE:
                    updates = self._stripe_updates(subscription, metadata)
                else:
                    updates = self._paystack_updates(subscription, metadata)
            except ProviderCallError as exc:
                logger.warning("Metadata backfill failed for subscription %s: %s", subscription.id, exc.message)
                errors.append({"subscription_id": subscription.id, "message": exc.message})
                metrics.subscription_backfill(subscription.provider.value, "failed")
                continue

            merged = merge_metadata(metadata, updates)
            if merged == metadata:
                skipped += 1
                metrics.subscription_backfill(subscription.provider.value, "unchanged")
                continue
            if not dry_run:
                subscription.provider_metadata = merged
                self.db.commit()
            changed_ids.append(subscription.id)
            metrics.subscription_backfill(subscription.provider.value, "updated")

        logger.info(
            "Subscription metadata backfill scanned=%s updated=%s skipped=%s failed=%s dry_run=%s",
            len(subscriptions),
            len(changed_ids),
            skipped,
            len(errors),
            dry_run,
        )
        return {
            "scanned": len(subscriptions),
            "updated": len(changed_ids),
            "skipped": skipped,
            "failed": len(errors),
            "changed_ids": changed_ids,
            "errors": errors,
            "dry_run": dry_run,
        }
