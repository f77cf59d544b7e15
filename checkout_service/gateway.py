"""Adapter around the hosted checkout form of the payment provider (iyzico).

Only two calls are used: ``initialize`` opens a hosted payment page and returns
its token; ``detail`` re-reads the outcome of that page. The callback the
customer's browser brings back is never trusted on its own.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from .config import (
    GATEWAY_TIMEOUT_SECONDS,
    IYZICO_API_KEY,
    IYZICO_BASE_URL,
    IYZICO_SECRET_KEY,
    PUBLIC_BASE_URL,
)
from .errors import GatewayDeclinedError, GatewayTransportError
from .log import get_logger

logger = get_logger("gateway")

INITIALIZE_PATH = "/payment/iyzipos/checkoutform/initialize/auth/ecom"
RETRIEVE_PATH = "/payment/iyzipos/checkoutform/auth/ecom/detail"


@dataclass(frozen=True)
class GatewaySession:
    redirect_url: str
    gateway_token: str
    idempotency_key: str


@dataclass(frozen=True)
class PaymentOutcome:
    verified: bool
    amount: Optional[Decimal]
    currency: Optional[str]
    provider_transaction_id: Optional[str]
    payment_status: Optional[str] = None
    error_code: Optional[str] = None


def idempotency_key_for(session_id: str, secret: str = IYZICO_SECRET_KEY) -> str:
    """Stable per session, so a resubmitted checkout reuses the provider's page."""
    digest = hmac.new((secret or "checkout").encode(), f"checkout:{session_id}".encode(), hashlib.sha256)
    return f"chk_{digest.hexdigest()[:40]}"


def _format_amount(value) -> str:
    return str(Decimal(value).quantize(Decimal("0.01")))


def _parse_amount(value) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


class IyzicoGateway:
    def __init__(
        self,
        api_key: str = IYZICO_API_KEY,
        secret_key: str = IYZICO_SECRET_KEY,
        base_url: str = IYZICO_BASE_URL,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        callback_url: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.callback_url = callback_url or f"{PUBLIC_BASE_URL.rstrip('/')}/payment/callback"
        self.http = http or requests.Session()

    # --- Signing ---

    def _headers(self, path: str, body: str) -> Dict[str, str]:
        random_key = f"{int(time.time() * 1000)}{secrets.token_hex(4)}"
        signature = hmac.new(
            self.secret_key.encode(), f"{random_key}{path}{body}".encode(), hashlib.sha256
        ).hexdigest()
        auth = f"apiKey:{self.api_key}&randomKey:{random_key}&signature:{signature}"
        return {
            "Authorization": "IYZWSv2 " + base64.b64encode(auth.encode()).decode(),
            "x-iyzi-rnd": random_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":"))
        try:
            response = self.http.post(
                self.base_url + path,
                data=body,
                headers=self._headers(path, body),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise GatewayTransportError(f"Gateway timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise GatewayTransportError(f"Gateway unreachable: {e}") from e

        if response.status_code >= 500:
            raise GatewayTransportError(f"Gateway returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayTransportError("Gateway returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise GatewayTransportError("Gateway returned an unexpected body")
        return data

    # --- Payload ---

    def _initialize_payload(self, session, idempotency_key: str) -> Dict[str, Any]:
        address = session.shipping_address or {}
        full_name = (address.get("full_name") or "Guest Customer").strip()
        name, _, surname = full_name.partition(" ")
        contact = {
            "contactName": full_name,
            "city": address.get("city", ""),
            "country": address.get("country", ""),
            "address": address.get("address", ""),
            "zipCode": address.get("zip_code") or "",
        }

        basket = [
            {
                "id": f"{item.product_id}-{item.position}",
                "name": item.product_name,
                "category1": "Textile",
                "itemType": "PHYSICAL",
                "price": _format_amount(item.line_total),
            }
            for item in session.items
            if Decimal(item.line_total) > 0
        ]
        if Decimal(session.shipping_cost) > 0:
            basket.append(
                {
                    "id": "shipping",
                    "name": "Shipping",
                    "category1": "Shipping",
                    "itemType": "VIRTUAL",
                    "price": _format_amount(session.shipping_cost),
                }
            )

        return {
            "locale": "tr",
            "conversationId": idempotency_key,
            "price": _format_amount(session.total),
            "paidPrice": _format_amount(session.total),
            "currency": session.currency,
            "basketId": session.id,
            "paymentGroup": "PRODUCT",
            "callbackUrl": self.callback_url,
            "enabledInstallments": [1],
            "buyer": {
                "id": session.user_id or f"guest_{session.id}",
                "name": name or full_name,
                "surname": surname or name or full_name,
                "email": address.get("email") or "guest@example.com",
                "gsmNumber": address.get("phone") or "",
                "identityNumber": "11111111111",
                "registrationAddress": address.get("address", ""),
                "city": address.get("city", ""),
                "country": address.get("country", ""),
                "zipCode": address.get("zip_code") or "",
                "ip": "0.0.0.0",
            },
            "shippingAddress": contact,
            "billingAddress": contact,
            "basketItems": basket,
        }

    # --- Operations ---

    def initialize_gateway_session(self, session) -> GatewaySession:
        key = idempotency_key_for(session.id, self.secret_key)
        data = self._post(INITIALIZE_PATH, self._initialize_payload(session, key))

        if data.get("status") != "success":
            raise GatewayDeclinedError(
                str(data.get("errorCode") or "unknown"),
                data.get("errorMessage") or "Payment provider rejected the request",
            )

        token = data.get("token")
        url = data.get("paymentPageUrl")
        if not token or not url:
            raise GatewayTransportError("Gateway response did not include a token and payment page")

        logger.info("gateway_session_initialized", session_id=session.id, idempotency_key=key)
        return GatewaySession(redirect_url=url, gateway_token=token, idempotency_key=key)

    def verify_payment_outcome(self, gateway_token: str) -> PaymentOutcome:
        data = self._post(RETRIEVE_PATH, {"locale": "tr", "token": gateway_token})

        verified = data.get("status") == "success" and data.get("paymentStatus") == "SUCCESS"
        amount = _parse_amount(data.get("paidPrice"))
        if amount is None:
            amount = _parse_amount(data.get("price"))

        outcome = PaymentOutcome(
            verified=verified,
            amount=amount,
            currency=data.get("currency"),
            provider_transaction_id=str(data["paymentId"]) if data.get("paymentId") else None,
            payment_status=data.get("paymentStatus"),
            error_code=data.get("errorCode"),
        )
        logger.info(
            "gateway_outcome_retrieved",
            verified=outcome.verified,
            payment_status=outcome.payment_status,
            error_code=outcome.error_code,
        )
        return outcome
