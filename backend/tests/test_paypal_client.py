"""
Tests for the PayPal Orders client.

The HTTP side is served by httpx.MockTransport; no network access.
"""
import json

import httpx
import pytest

from config import settings
from domain.errors import PaymentGatewayError, ValidationError
from services.paypal_client import PayPalClient, gateway_amount, is_already_captured, money


@pytest.fixture(autouse=True)
def paypal_settings(monkeypatch):
    monkeypatch.setattr(settings, "paypal_client_id", "client-id")
    monkeypatch.setattr(settings, "paypal_client_secret", "client-secret")
    monkeypatch.setattr(settings, "paypal_base_url", "https://api-m.sandbox.paypal.com")
    monkeypatch.setattr(settings, "app_base_url", "https://shop.example.com")


class Recorder:
    """MockTransport handler that records requests and replays canned answers."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes[(request.method, request.url.path)]
        if isinstance(answer, Exception):
            raise answer
        status, body = answer
        return httpx.Response(status, json=body)

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


TOKEN_ROUTE = ("POST", "/v1/oauth2/token")
TOKEN_OK = (200, {"access_token": "A21AAtoken", "expires_in": 32400})


def make_client(routes: dict) -> tuple[PayPalClient, Recorder]:
    recorder = Recorder({TOKEN_ROUTE: TOKEN_OK, **routes})
    return PayPalClient(transport=httpx.MockTransport(recorder)), recorder


@pytest.mark.unit
def test_money_formats_two_decimals():
    assert money(10) == "10.00"
    assert money(19.999) == "20.00"
    assert money(0.125) == "0.13"


@pytest.mark.asyncio
async def test_create_order_payload_and_approval_url():
    client, recorder = make_client({
        ("POST", "/v2/checkout/orders"): (201, {
            "id": "5O190127TN364715T",
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T"},
                {"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T"},
            ],
        }),
    })

    result = await client.create_order(
        [{"title": "X" * 200, "authors": ["Jane Doe", "John Roe"], "quantity": 2, "unit_price": 10}],
        20.0,
    )

    assert result["id"] == "5O190127TN364715T"
    assert result["approvalUrl"].endswith("token=5O190127TN364715T")

    request = recorder.calls("POST", "/v2/checkout/orders")[0]
    assert request.headers["Authorization"] == "Bearer A21AAtoken"
    payload = json.loads(request.content)
    assert payload["intent"] == "CAPTURE"
    unit = payload["purchase_units"][0]
    assert unit["amount"] == {
        "currency_code": "USD",
        "value": "20.00",
        "breakdown": {"item_total": {"currency_code": "USD", "value": "20.00"}},
    }
    item = unit["items"][0]
    assert len(item["name"]) == 127
    assert item["description"] == "By Jane Doe, John Roe"
    assert item["quantity"] == "2"
    assert item["unit_amount"]["value"] == "10.00"
    context = payload["application_context"]
    assert context["return_url"] == "https://shop.example.com/checkout/success"
    assert context["cancel_url"] == "https://shop.example.com/cart"
    assert context["shipping_preference"] == "NO_SHIPPING"
    assert context["user_action"] == "PAY_NOW"


@pytest.mark.asyncio
async def test_create_order_without_approve_link_fails():
    client, _ = make_client({
        ("POST", "/v2/checkout/orders"): (201, {"id": "ABC", "status": "CREATED", "links": []}),
    })
    with pytest.raises(PaymentGatewayError):
        await client.create_order([{"title": "T", "quantity": 1, "unit_price": 5}], 5.0)


@pytest.mark.asyncio
async def test_token_is_cached_between_calls():
    client, recorder = make_client({
        ("GET", "/v2/checkout/orders/ORDER1"): (200, {"id": "ORDER1", "status": "APPROVED"}),
    })
    await client.get_order_details("ORDER1")
    await client.get_order_details("ORDER1")

    assert len(recorder.calls(*TOKEN_ROUTE)) == 1
    token_request = recorder.calls(*TOKEN_ROUTE)[0]
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert token_request.content == b"grant_type=client_credentials"


@pytest.mark.asyncio
async def test_capture_sends_deterministic_request_id():
    client, recorder = make_client({
        ("POST", "/v2/checkout/orders/ORDER1/capture"): (201, {
            "id": "ORDER1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [
                {"id": "CAP1", "status": "COMPLETED", "amount": {"currency_code": "USD", "value": "20.00"}},
            ]}}],
        }),
    })
    data = await client.capture_order("ORDER1")
    await client.capture_order("ORDER1")

    assert data["status"] == "COMPLETED"
    assert gateway_amount(data) == 20.0
    ids = {r.headers["PayPal-Request-Id"] for r in recorder.calls("POST", "/v2/checkout/orders/ORDER1/capture")}
    assert ids == {"capture-ORDER1"}


@pytest.mark.asyncio
async def test_non_2xx_raises_with_status_and_body():
    body = {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]}
    client, _ = make_client({("POST", "/v2/checkout/orders/ORDER1/capture"): (422, body)})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await client.capture_order("ORDER1")

    error = exc_info.value
    assert error.status_code == 502
    assert error.gateway_status == 422
    assert error.gateway_body == body
    assert is_already_captured(error) is True


@pytest.mark.asyncio
async def test_transport_failure_raises_without_status():
    client, _ = make_client({
        ("GET", "/v2/checkout/orders/ORDER1"): httpx.ConnectError("connection refused"),
    })
    with pytest.raises(PaymentGatewayError) as exc_info:
        await client.get_order_details("ORDER1")
    assert exc_info.value.gateway_status is None
    assert is_already_captured(exc_info.value) is False


@pytest.mark.asyncio
async def test_missing_credentials_fail_before_network(monkeypatch):
    monkeypatch.setattr(settings, "paypal_client_id", "")
    client, recorder = make_client({})
    with pytest.raises(PaymentGatewayError):
        await client.get_access_token()
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_malformed_order_id_rejected():
    client, recorder = make_client({})
    with pytest.raises(ValidationError):
        await client.capture_order("../../v1/oauth2/token")
    assert recorder.requests == []
