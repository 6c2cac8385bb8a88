from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

import httpx

from config import (
    MIDTRANS_SERVER_KEY,
    MIDTRANS_SNAP_BASE_URL,
    MIDTRANS_TIMEOUT_SECONDS,
    PAYMENT_PROVIDER,
)

from .exceptions import PaymentProviderError

ProviderName = Literal["mock", "midtrans"]


@dataclass(frozen=True)
class PaymentContact:
    name: str
    email: str


@dataclass(frozen=True)
class PaymentSession:
    """Hosted-payment handle returned by the gateway for one order."""

    provider: ProviderName
    token: str
    redirect_url: str
    raw: Dict[str, Any] = field(default_factory=dict)


class BasePaymentProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> ProviderName:
        raise NotImplementedError

    @abc.abstractmethod
    def create_session(self, *, order_id: str, gross_amount: int, contact: PaymentContact) -> PaymentSession:
        """
        Create a hosted checkout session for `order_id`.

        Implementations do not retry; a failure surfaces as PaymentProviderError.
        """


class MockProvider(BasePaymentProvider):
    @property
    def name(self) -> ProviderName:
        return "mock"

    def create_session(self, *, order_id: str, gross_amount: int, contact: PaymentContact) -> PaymentSession:
        _ = contact
        # Development-only; never a real payment page.
        return PaymentSession(
            provider="mock",
            token=f"mock-{order_id}",
            redirect_url=f"https://pay.invalid/mock/{order_id}?amount={int(gross_amount)}",
            raw={},
        )


class MidtransSnapProvider(BasePaymentProvider):
    """Midtrans Snap API client (POST /snap/v1/transactions, basic auth with the server key)."""

    def __init__(
        self,
        *,
        server_key: str = "",
        base_url: str = "",
        timeout: float = 0.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._server_key = server_key or MIDTRANS_SERVER_KEY
        self._base_url = (base_url or MIDTRANS_SNAP_BASE_URL).rstrip("/")
        self._timeout = timeout or MIDTRANS_TIMEOUT_SECONDS
        self._client = client

    @property
    def name(self) -> ProviderName:
        return "midtrans"

    def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        auth = (self._server_key, "")
        if self._client is not None:
            return self._client.post(url, json=payload, headers=headers, auth=auth, timeout=self._timeout)
        return httpx.post(url, json=payload, headers=headers, auth=auth, timeout=self._timeout, trust_env=False)

    def create_session(self, *, order_id: str, gross_amount: int, contact: PaymentContact) -> PaymentSession:
        if not self._server_key:
            raise PaymentProviderError("MIDTRANS_SERVER_KEY is missing")
        payload = {
            "transaction_details": {"order_id": order_id, "gross_amount": int(gross_amount)},
            "customer_details": {"first_name": contact.name, "email": contact.email},
        }
        try:
            resp = self._post(f"{self._base_url}/snap/v1/transactions", payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"midtrans session request failed: {exc}") from exc
        data = resp.json() if resp.content else {}
        token = str(data.get("token") or "").strip()
        redirect_url = str(data.get("redirect_url") or "").strip()
        if not token or not redirect_url:
            raise PaymentProviderError(
                f"midtrans token missing: status={resp.status_code} body={(resp.text or '')[:200]}"
            )
        return PaymentSession(provider="midtrans", token=token, redirect_url=redirect_url, raw=dict(data))


def get_payment_provider(name: Optional[str] = None) -> BasePaymentProvider:
    """Provider factory; falls back to config.PAYMENT_PROVIDER, then mock."""

    selected = (name or PAYMENT_PROVIDER or "mock").strip().lower()
    if selected == "midtrans":
        return MidtransSnapProvider()
    return MockProvider()
