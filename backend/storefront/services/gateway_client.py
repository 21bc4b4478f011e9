# Overview: Outbound client for the hosted payment gateway (session initiation and status pull).

"""
Payment gateway adapter.

Two calls, both JSON over HTTP with an X-API-Key header:
- POST /api/v1/payment/initiate -> {success, sessionId, paymentUrl, expiresAt}
- POST /api/v1/payment/verify   -> {success, status, transactionId, paidAt, cardLast4, cardBrand}

Transport problems and {"success": false} answers both surface as
GatewayError. The client is created per request from app config; tests hand
in an httpx.MockTransport.
"""
from __future__ import annotations

from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import GatewayError
from ..time_utils import parse_iso_datetime


INITIATE_PATH = "/api/v1/payment/initiate"
VERIFY_PATH = "/api/v1/payment/verify"


@dataclass(frozen=True)
class GatewaySession:
    session_id: str
    payment_url: str
    expires_at: str | None = None


@dataclass(frozen=True)
class GatewayStatus:
    session_id: str
    status: str
    transaction_id: str | None = None
    paid_at: object = None
    card_last4: str | None = None
    card_brand: str | None = None


class PaymentGatewayClient:
    def __init__(
        self,
        base_url: str,
        *,
        merchant_id: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.merchant_id = merchant_id
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Content-Type": "application/json",
                "X-API-Key": api_key,
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config) -> "PaymentGatewayClient":
        return cls(
            config["PAYMENT_GATEWAY_URL"],
            merchant_id=config["PAYMENT_GATEWAY_MERCHANT_ID"],
            api_key=config["PAYMENT_GATEWAY_API_KEY"],
            timeout=config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10.0),
            transport=config.get("PAYMENT_GATEWAY_TRANSPORT"),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _post(self, path: str, body: dict) -> dict:
        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            current_app.logger.warning("Payment gateway unreachable: %s", exc)
            raise GatewayError("Payment gateway is unavailable") from exc

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(f"Payment gateway returned HTTP {response.status_code}")
        if not isinstance(data, dict):
            raise GatewayError(f"Payment gateway returned HTTP {response.status_code}")

        if response.status_code >= 400 or not data.get("success"):
            raise GatewayError(data.get("error") or "Payment gateway rejected the request")
        return data

    def initiate(
        self,
        *,
        amount_cents: int,
        currency: str,
        order_number: str,
        customer_email: str,
        customer_phone: str | None,
        customer_name: str | None,
        return_url: str,
        cancel_url: str,
        notify_url: str,
    ) -> GatewaySession:
        data = self._post(INITIATE_PATH, {
            "merchantId": self.merchant_id,
            "amount": round(amount_cents / 100, 2),
            "currency": currency,
            "orderId": order_number,
            "description": f"Order {order_number}",
            "customerEmail": customer_email,
            "customerPhone": customer_phone or "",
            "customerName": customer_name or "",
            "returnUrl": return_url,
            "cancelUrl": cancel_url,
            "notifyUrl": notify_url,
        })
        if not data.get("sessionId") or not data.get("paymentUrl"):
            raise GatewayError("Payment gateway response is missing the session")
        return GatewaySession(
            session_id=data["sessionId"],
            payment_url=data["paymentUrl"],
            expires_at=data.get("expiresAt"),
        )

    def verify(self, session_id: str) -> GatewayStatus:
        data = self._post(VERIFY_PATH, {"sessionId": session_id})
        return GatewayStatus(
            session_id=session_id,
            status=data.get("status") or "pending",
            transaction_id=data.get("transactionId"),
            paid_at=parse_iso_datetime(data.get("paidAt")),
            card_last4=data.get("cardLast4"),
            card_brand=data.get("cardBrand"),
        )


def get_gateway_client() -> PaymentGatewayClient:
    return PaymentGatewayClient.from_config(current_app.config)
