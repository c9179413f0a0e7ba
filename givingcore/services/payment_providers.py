"""Outbound payment provider clients.

Clients are built once from settings (``ProviderClients.from_settings``) and
passed to the webhook, dispute and reconciliation services. Nothing here
caches a client behind a module global.

Every provider failure (network error, non-2xx, ``status: false`` body) is
raised as ``ProviderCallError`` so callers see one error type per provider.
"""
from __future__ import annotations

import datetime as dt
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

import requests
import stripe
from stripe import StripeClient

from givingcore.core.config import BaseAppSettings
from givingcore.core.exceptions import ProviderCallError, ProviderNotConfiguredError
from givingcore.models.enums import PaymentProvider, WebhookProvider

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_TOLERANCE = stripe.Webhook.DEFAULT_TOLERANCE


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return dict(obj)
    return obj.to_dict()


def _epoch(value: dt.datetime | None) -> int | None:
    return int(value.timestamp()) if value else None


class PaystackClient:
    name = "paystack"

    def __init__(
        self,
        secret: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        page_size: int = 100,
        session: requests.Session | None = None,
    ):
        if not secret:
            raise ProviderNotConfiguredError("paystack")
        self.secret = secret
        self.base = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.http = session or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            r = self.http.request(
                method,
                f"{self.base}{path}",
                headers={"Authorization": f"Bearer {self.secret}"},
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Paystack %s %s failed: %s", method, path, e)
            raise ProviderCallError(self.name, str(e)) from e
        if r.status_code >= 400:
            logger.warning("Paystack %s %s returned %s: %s", method, path, r.status_code, r.text[:500])
            raise ProviderCallError(self.name, r.text[:500] or r.reason, provider_status=r.status_code)
        try:
            body = r.json()
        except ValueError as e:
            raise ProviderCallError(self.name, "Invalid JSON response", provider_status=r.status_code) from e
        if not body.get("status"):
            raise ProviderCallError(self.name, body.get("message") or "Request failed", provider_status=r.status_code)
        return body

    def _paginate(self, path: str, params: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        page = 1
        while True:
            body = self._request("GET", path, params={**(params or {}), "perPage": self.page_size, "page": page})
            items = body.get("data") or []
            yield from items
            meta = body.get("meta") or {}
            page_count = meta.get("pageCount")
            if not items or len(items) < self.page_size or (page_count is not None and page >= int(page_count)):
                return
            page += 1

    def iter_settlements(self, from_date: dt.datetime | None = None, to_date: dt.datetime | None = None):
        params: dict[str, Any] = {}
        if from_date:
            params["from"] = from_date.isoformat()
        if to_date:
            params["to"] = to_date.isoformat()
        return self._paginate("/settlement", params)

    def iter_settlement_transactions(self, settlement_id: str):
        return self._paginate(f"/settlement/{settlement_id}/transactions")

    def add_dispute_evidence(
        self,
        dispute_id: str,
        *,
        customer_email: str,
        customer_name: str,
        customer_phone: str,
        service_details: str,
    ) -> dict[str, Any]:
        body = self._request(
            "POST",
            f"/dispute/{dispute_id}/evidence",
            json={
                "customer_email": customer_email,
                "customer_name": customer_name,
                "customer_phone": customer_phone,
                "service_details": service_details,
            },
        )
        return body.get("data") or {}

    def fetch_subscription(self, subscription_code: str) -> dict[str, Any]:
        body = self._request("GET", f"/subscription/{subscription_code}")
        return body.get("data") or {}


class StripeGateway:
    name = "stripe"

    def __init__(self, secret: str, page_size: int = 100, client: StripeClient | None = None):
        if not secret and client is None:
            raise ProviderNotConfiguredError("stripe")
        self.client = client or StripeClient(secret)
        self.page_size = page_size

    def _call(self, action: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s (code: %s)", action, e, getattr(e, "code", None))
            raise ProviderCallError(self.name, str(e), provider_status=getattr(e, "http_status", None)) from e

    def _paginate(self, action: str, resource, params: dict[str, Any]) -> Iterator[dict[str, Any]]:
        cursor: str | None = None
        while True:
            page_params = {**params, "limit": self.page_size}
            if cursor:
                page_params["starting_after"] = cursor
            page = self._call(action, resource.list, params=page_params)
            items = [_as_dict(item) for item in page.data]
            yield from items
            if not page.has_more or not items:
                return
            cursor = items[-1]["id"]

    def iter_payouts(self, from_date: dt.datetime | None = None, to_date: dt.datetime | None = None):
        created = {k: v for k, v in (("gte", _epoch(from_date)), ("lte", _epoch(to_date))) if v is not None}
        params: dict[str, Any] = {"created": created} if created else {}
        return self._paginate("payouts.list", self.client.payouts, params)

    def iter_payout_transactions(self, payout_id: str):
        return self._paginate("balance_transactions.list", self.client.balance_transactions, {"payout": payout_id})

    def upload_evidence_file(self, content: bytes, filename: str) -> str:
        # The SDK multipart encoder takes the part name from the file object.
        fp = io.BytesIO(content)
        fp.name = filename
        created = self._call(
            "files.create",
            self.client.files.create,
            params={"purpose": "dispute_evidence", "file": fp},
        )
        return created.id

    def update_dispute(self, dispute_id: str, evidence: dict[str, str], submit: bool = False) -> str:
        params: dict[str, Any] = {"evidence": evidence}
        if submit:
            params["submit"] = True
        updated = self._call("disputes.update", self.client.disputes.update, dispute_id, params=params)
        return updated.id

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = self._call("subscriptions.retrieve", self.client.subscriptions.retrieve, subscription_id)
        return _as_dict(subscription)

    def submit_dispute(self, dispute_id: str) -> str:
        updated = self._call(
            "disputes.update", self.client.disputes.update, dispute_id, params={"submit": True}
        )
        return updated.id


@dataclass
class ProviderClients:
    """Per-process provider handles, built once at startup.

    Missing credentials leave the slot empty; the operation that needs it
    raises ``ProviderNotConfiguredError`` instead of failing at boot.
    """

    stripe: StripeGateway | None = None
    paystack: PaystackClient | None = None
    webhook_secrets: dict[WebhookProvider, str | None] = field(default_factory=dict)
    stripe_webhook_tolerance: int = DEFAULT_STRIPE_TOLERANCE

    @classmethod
    def from_settings(cls, settings: BaseAppSettings) -> ProviderClients:
        stripe_gateway = (
            StripeGateway(settings.STRIPE_SECRET_KEY, page_size=settings.PROVIDER_PAGE_SIZE)
            if settings.STRIPE_SECRET_KEY
            else None
        )
        paystack_client = (
            PaystackClient(
                settings.PAYSTACK_SECRET_KEY,
                base_url=settings.PAYSTACK_BASE_URL,
                timeout=settings.PROVIDER_HTTP_TIMEOUT,
                page_size=settings.PROVIDER_PAGE_SIZE,
            )
            if settings.PAYSTACK_SECRET_KEY
            else None
        )
        return cls(
            stripe=stripe_gateway,
            paystack=paystack_client,
            webhook_secrets={
                WebhookProvider.STRIPE: settings.STRIPE_WEBHOOK_SECRET,
                WebhookProvider.PAYSTACK: settings.paystack_webhook_secret,
                WebhookProvider.STRIPE_PLATFORM: settings.PLATFORM_STRIPE_WEBHOOK_SECRET,
                WebhookProvider.PAYSTACK_PLATFORM: settings.platform_paystack_webhook_secret,
            },
            stripe_webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
        )

    def webhook_secret(self, provider: WebhookProvider) -> str | None:
        return self.webhook_secrets.get(provider)

    def require_stripe(self) -> StripeGateway:
        if self.stripe is None:
            raise ProviderNotConfiguredError("stripe")
        return self.stripe

    def require_paystack(self) -> PaystackClient:
        if self.paystack is None:
            raise ProviderNotConfiguredError("paystack")
        return self.paystack

    def for_provider(self, provider: PaymentProvider) -> StripeGateway | PaystackClient:
        if provider is PaymentProvider.STRIPE:
            return self.require_stripe()
        return self.require_paystack()
