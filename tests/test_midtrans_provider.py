from __future__ import annotations

import base64
import json

import httpx
import pytest

from subscriptions.exceptions import PaymentProviderError
from subscriptions.provider import (
    MidtransSnapProvider,
    MockProvider,
    PaymentContact,
    get_payment_provider,
)

CONTACT = PaymentContact(name="Acme Payroll", email="billing@acme.test")
SANDBOX = "https://app.sandbox.midtrans.com"


def _provider(handler, server_key: str = "SB-Mid-server-abc") -> MidtransSnapProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return MidtransSnapProvider(server_key=server_key, base_url=SANDBOX, timeout=5, client=client)


def test_midtrans_session_request_shape() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={"token": "snap-token-1", "redirect_url": "https://app.sandbox.midtrans.com/snap/v4/redirection/1"},
        )

    session = _provider(handler).create_session(order_id="new1-1-abc", gross_amount=897_000, contact=CONTACT)

    assert captured["method"] == "POST"
    assert captured["url"] == "https://app.sandbox.midtrans.com/snap/v1/transactions"
    expected_auth = base64.b64encode(b"SB-Mid-server-abc:").decode("ascii")
    assert captured["auth"] == f"Basic {expected_auth}"
    assert captured["body"] == {
        "transaction_details": {"order_id": "new1-1-abc", "gross_amount": 897_000},
        "customer_details": {"first_name": "Acme Payroll", "email": "billing@acme.test"},
    }
    assert session.provider == "midtrans"
    assert session.token == "snap-token-1"
    assert session.redirect_url.endswith("/redirection/1")


def test_midtrans_http_error_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error_messages": ["Access denied"]})

    with pytest.raises(PaymentProviderError, match="session request failed"):
        _provider(handler).create_session(order_id="new1-2", gross_amount=1, contact=CONTACT)


def test_midtrans_transport_error_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentProviderError):
        _provider(handler).create_session(order_id="new1-3", gross_amount=1, contact=CONTACT)


def test_midtrans_missing_token_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"redirect_url": "https://example.invalid"})

    with pytest.raises(PaymentProviderError, match="token missing"):
        _provider(handler).create_session(order_id="new1-4", gross_amount=1, contact=CONTACT)


def test_midtrans_requires_server_key() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(PaymentProviderError, match="MIDTRANS_SERVER_KEY"):
        _provider(handler, server_key="").create_session(order_id="new1-5", gross_amount=1, contact=CONTACT)
    assert calls == []


def test_provider_factory_selection() -> None:
    assert isinstance(get_payment_provider("midtrans"), MidtransSnapProvider)
    assert isinstance(get_payment_provider(" Mock "), MockProvider)
    assert isinstance(get_payment_provider(), MockProvider)


def test_mock_provider_session() -> None:
    session = MockProvider().create_session(order_id="extend2-9", gross_amount=799_000, contact=CONTACT)
    assert session.provider == "mock"
    assert session.token == "mock-extend2-9"
    assert "amount=799000" in session.redirect_url
