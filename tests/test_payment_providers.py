import datetime as dt
from types import SimpleNamespace

import pytest
import requests
import stripe

from givingcore.core.exceptions import ProviderCallError, ProviderNotConfiguredError
from givingcore.models.enums import PaymentProvider
from givingcore.services.payment_providers import PaystackClient, ProviderClients, StripeGateway


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text
        self.reason = "ERR"

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_paystack_settlements_paginate_until_short_page():
    session = FakeSession(
        [
            FakeResponse(body={"status": True, "data": [{"id": 1}, {"id": 2}], "meta": {"pageCount": 3}}),
            FakeResponse(body={"status": True, "data": [{"id": 3}], "meta": {"pageCount": 3}}),
        ]
    )
    client = PaystackClient("sk_test", page_size=2, session=session)

    items = list(client.iter_settlements(from_date=dt.datetime(2024, 3, 1, tzinfo=dt.timezone.utc)))

    assert [item["id"] for item in items] == [1, 2, 3]
    method, url, kwargs = session.requests[0]
    assert url == "https://api.paystack.co/settlement"
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test"
    assert kwargs["params"]["from"] == "2024-03-01T00:00:00+00:00"
    assert session.requests[1][2]["params"]["page"] == 2


def test_paystack_status_false_is_call_error():
    session = FakeSession([FakeResponse(body={"status": False, "message": "Dispute not found"})])
    client = PaystackClient("sk_test", session=session)

    with pytest.raises(ProviderCallError) as exc:
        client.add_dispute_evidence(
            "555", customer_email="a@b.org", customer_name="A", customer_phone="1", service_details="x"
        )
    assert "Dispute not found" in exc.value.message


def test_paystack_http_error_and_network_error():
    client = PaystackClient("sk_test", session=FakeSession([FakeResponse(status_code=503, text="unavailable")]))
    with pytest.raises(ProviderCallError) as exc:
        list(client.iter_settlement_transactions("77"))
    assert exc.value.details["provider_status"] == 503

    client = PaystackClient("sk_test", session=FakeSession([requests.ConnectionError("reset")]))
    with pytest.raises(ProviderCallError):
        list(client.iter_settlements())


def test_paystack_requires_secret():
    with pytest.raises(ProviderNotConfiguredError):
        PaystackClient("")


class FakeListResource:
    def __init__(self, pages):
        self.pages = list(pages)
        self.params = []

    def list(self, params=None):
        self.params.append(params)
        return self.pages.pop(0)


def test_stripe_payouts_follow_cursor():
    payouts = FakeListResource(
        [
            SimpleNamespace(data=[{"id": "po_1"}, {"id": "po_2"}], has_more=True),
            SimpleNamespace(data=[{"id": "po_3"}], has_more=False),
        ]
    )
    gateway = StripeGateway("", page_size=2, client=SimpleNamespace(payouts=payouts))

    since = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    items = list(gateway.iter_payouts(from_date=since))

    assert [item["id"] for item in items] == ["po_1", "po_2", "po_3"]
    assert payouts.params[0] == {"created": {"gte": int(since.timestamp())}, "limit": 2}
    assert payouts.params[1]["starting_after"] == "po_2"


def test_stripe_errors_become_call_errors():
    class Disputes:
        def update(self, dispute_id, params=None):
            raise stripe.InvalidRequestError("No such dispute", param="id", http_status=404)

    gateway = StripeGateway("", client=SimpleNamespace(disputes=Disputes()))

    with pytest.raises(ProviderCallError) as exc:
        gateway.submit_dispute("dp_missing")
    assert exc.value.details["provider_status"] == 404


def test_provider_clients_from_settings_and_lookup():
    settings = SimpleNamespace(
        STRIPE_SECRET_KEY=None,
        PAYSTACK_SECRET_KEY="sk_test",
        PAYSTACK_BASE_URL="https://api.paystack.co",
        PROVIDER_HTTP_TIMEOUT=5.0,
        PROVIDER_PAGE_SIZE=50,
        STRIPE_WEBHOOK_SECRET=None,
        paystack_webhook_secret="sk_test",
        PLATFORM_STRIPE_WEBHOOK_SECRET=None,
        platform_paystack_webhook_secret=None,
        STRIPE_WEBHOOK_TOLERANCE=300,
    )
    clients = ProviderClients.from_settings(settings)

    assert clients.stripe is None
    assert clients.for_provider(PaymentProvider.PAYSTACK).page_size == 50
    with pytest.raises(ProviderNotConfiguredError):
        clients.for_provider(PaymentProvider.STRIPE)


def test_provider_clients_default_webhook_tolerance():
    assert ProviderClients().stripe_webhook_tolerance == stripe.Webhook.DEFAULT_TOLERANCE
