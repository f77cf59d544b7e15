import base64
import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
import requests

from checkout_service.errors import GatewayDeclinedError, GatewayTransportError
from checkout_service.gateway import INITIALIZE_PATH, RETRIEVE_PATH, IyzicoGateway, idempotency_key_for


class StubResponse:
    def __init__(self, status_code=200, payload=None, bad_json=False):
        self.status_code = status_code
        self.payload = payload or {}
        self.bad_json = bad_json

    def json(self):
        if self.bad_json:
            raise ValueError("not json")
        return self.payload


class StubHttp:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "body": json.loads(data), "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def make_session(session_id="sess-1", total="220.00"):
    return SimpleNamespace(
        id=session_id,
        user_id=None,
        currency="TRY",
        subtotal=Decimal("200.00"),
        shipping_cost=Decimal("20.00"),
        total=Decimal(total),
        shipping_address={"full_name": "Deniz Yilmaz", "address": "Marina Cd. 12", "city": "Bodrum",
                          "country": "Türkiye", "email": "deniz@example.com"},
        items=[
            SimpleNamespace(position=0, product_id="p1", product_name="Yacht Seat Cover",
                            line_total=Decimal("200.00")),
        ],
    )


def make_gateway(http):
    return IyzicoGateway(api_key="api-key", secret_key="secret", base_url="https://gateway.test/",
                         timeout=30, callback_url="https://shop.test/payment/callback", http=http)


def test_initialize_returns_page_and_token():
    http = StubHttp(StubResponse(payload={
        "status": "success",
        "token": "tok-123",
        "paymentPageUrl": "https://gateway.test/pay/tok-123",
    }))

    result = make_gateway(http).initialize_gateway_session(make_session())

    assert result.gateway_token == "tok-123"
    assert result.redirect_url == "https://gateway.test/pay/tok-123"
    call = http.calls[0]
    assert call["url"] == "https://gateway.test" + INITIALIZE_PATH
    assert call["timeout"] == 30
    assert call["body"]["price"] == "220.00"
    assert call["body"]["paidPrice"] == "220.00"
    assert call["body"]["basketId"] == "sess-1"
    assert call["body"]["conversationId"] == result.idempotency_key
    basket_total = sum(Decimal(item["price"]) for item in call["body"]["basketItems"])
    assert basket_total == Decimal("220.00")


def test_request_is_signed():
    http = StubHttp(StubResponse(payload={"status": "success", "token": "t", "paymentPageUrl": "u"}))

    make_gateway(http).initialize_gateway_session(make_session())

    headers = http.calls[0]["headers"]
    assert headers["Authorization"].startswith("IYZWSv2 ")
    decoded = base64.b64decode(headers["Authorization"][len("IYZWSv2 "):]).decode()
    assert decoded.startswith("apiKey:api-key&randomKey:" + headers["x-iyzi-rnd"])
    assert "&signature:" in decoded


def test_idempotency_key_is_stable_per_session():
    assert idempotency_key_for("sess-1", "secret") == idempotency_key_for("sess-1", "secret")
    assert idempotency_key_for("sess-1", "secret") != idempotency_key_for("sess-2", "secret")


def test_decline_carries_provider_code():
    http = StubHttp(StubResponse(payload={
        "status": "failure",
        "errorCode": "5006",
        "errorMessage": "Transaction not permitted",
    }))

    with pytest.raises(GatewayDeclinedError) as exc:
        make_gateway(http).initialize_gateway_session(make_session())

    assert exc.value.error_code == "5006"
    assert exc.value.message == "Transaction not permitted"


@pytest.mark.parametrize(
    "http",
    [
        StubHttp(error=requests.exceptions.Timeout()),
        StubHttp(error=requests.exceptions.ConnectionError()),
        StubHttp(StubResponse(status_code=502)),
        StubHttp(StubResponse(bad_json=True)),
        StubHttp(StubResponse(payload={"status": "success"})),
    ],
    ids=["timeout", "connection", "server-error", "bad-json", "no-token"],
)
def test_transport_failures_are_retryable(http):
    with pytest.raises(GatewayTransportError):
        make_gateway(http).initialize_gateway_session(make_session())


def test_verify_success():
    http = StubHttp(StubResponse(payload={
        "status": "success",
        "paymentStatus": "SUCCESS",
        "paymentId": 24913521,
        "price": 220,
        "paidPrice": 220.0,
        "currency": "TRY",
        "token": "tok-123",
    }))

    outcome = make_gateway(http).verify_payment_outcome("tok-123")

    assert outcome.verified is True
    assert outcome.amount == Decimal("220.00")
    assert outcome.currency == "TRY"
    assert outcome.provider_transaction_id == "24913521"
    assert http.calls[0]["url"] == "https://gateway.test" + RETRIEVE_PATH
    assert http.calls[0]["body"]["token"] == "tok-123"


@pytest.mark.parametrize(
    "payload",
    [
        {"status": "success", "paymentStatus": "FAILURE", "paidPrice": "220.00", "currency": "TRY"},
        {"status": "failure", "errorCode": "10051", "errorMessage": "Insufficient funds"},
    ],
    ids=["payment-failed", "request-failed"],
)
def test_verify_unsuccessful_payment(payload):
    outcome = make_gateway(StubHttp(StubResponse(payload=payload))).verify_payment_outcome("tok-123")

    assert outcome.verified is False


def test_verify_transport_failure_raises():
    with pytest.raises(GatewayTransportError):
        make_gateway(StubHttp(error=requests.exceptions.Timeout())).verify_payment_outcome("tok-123")
