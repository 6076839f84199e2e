"""
PayPal Orders v2 client.

Handles:
    1. OAuth2 client-credentials token exchange (cached until shortly before expiry)
    2. Remote order creation → approval URL for the browser redirect
    3. Capture, with a deterministic PayPal-Request-Id so retries never double-charge
    4. Order details lookup (used by reconciliation to detect already-captured orders)

Every non-2xx answer is raised as PaymentGatewayError carrying the gateway's
status and body. Transport failures (timeouts, DNS, resets) are raised the same
way with gateway_status=None.
"""
import logging
import re
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from config import settings
from domain.constants import GATEWAY_ISSUE_ALREADY_CAPTURED, GATEWAY_TEXT_LIMIT
from domain.errors import PaymentGatewayError, ValidationError

logger = logging.getLogger(__name__)

# Refresh the cached token this many seconds before PayPal says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60

_PAYPAL_ORDER_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,64}$")


def money(value) -> str:
    """Format an amount the way PayPal expects it ("12.50")."""
    return str(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def validate_paypal_order_id(paypal_order_id: str) -> str:
    if not paypal_order_id or not _PAYPAL_ORDER_ID_RE.match(paypal_order_id):
        raise ValidationError(f"Invalid PayPal order ID: {str(paypal_order_id)[:70]}", field="orderId")
    return paypal_order_id


def is_already_captured(error: PaymentGatewayError) -> bool:
    """True when the gateway refused a capture because it already happened."""
    body = error.gateway_body
    if not isinstance(body, dict):
        return False
    return any(
        isinstance(d, dict) and d.get("issue") == GATEWAY_ISSUE_ALREADY_CAPTURED
        for d in body.get("details") or []
    )


def _safe_body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


class PayPalClient:
    """
    Thin async REST client for the PayPal Orders API.

    Configuration is read from settings on every call, so tests and
    the app can adjust settings without rebuilding the client.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    # ── HTTP plumbing ───────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.paypal_base_url.rstrip("/"),
            timeout=settings.paypal_timeout_seconds,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"PayPal {method} {path} failed: {e.__class__.__name__}: {e}")
            raise PaymentGatewayError(f"PayPal request failed: {e.__class__.__name__}") from e

        if not response.is_success:
            body = _safe_body(response)
            logger.error(f"PayPal {method} {path} → {response.status_code}: {body}")
            raise PaymentGatewayError(
                f"PayPal returned HTTP {response.status_code}",
                gateway_status=response.status_code,
                gateway_body=body,
            )

        if not response.content:
            return {}
        body = _safe_body(response)
        if not isinstance(body, dict):
            raise PaymentGatewayError(
                "PayPal returned a non-JSON body",
                gateway_status=response.status_code,
                gateway_body=body,
            )
        return body

    async def _authorized(self, method: str, path: str, headers: Optional[dict] = None, **kwargs) -> dict:
        token = await self.get_access_token()
        merged = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        merged.update(headers or {})
        return await self._send(method, path, headers=merged, **kwargs)

    # ── Token ───────────────────────────────────────────────────────

    async def get_access_token(self) -> str:
        """Client-credentials exchange. Reuses the cached token while it is fresh."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not settings.paypal_client_id or not settings.paypal_client_secret:
            raise PaymentGatewayError("PayPal credentials not configured")

        data = await self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(settings.paypal_client_id, settings.paypal_client_secret),
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise PaymentGatewayError("PayPal token response carried no access_token", gateway_body=data)

        expires_in = int(data.get("expires_in") or 0)
        self._token = token
        self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        return token

    def clear_token(self):
        self._token = None
        self._token_expires_at = 0.0

    # ── Orders ──────────────────────────────────────────────────────

    async def create_order(self, items: list[dict], total: float, reference: Optional[str] = None) -> dict:
        """
        Create a remote order.

        Args:
            items: [{title, authors: [str], quantity, unit_price}]
            total: amount to charge (already re-priced by the caller)
            reference: our own reference, echoed back by PayPal as reference_id

        Returns:
            dict: {id, status, approvalUrl, raw}
        """
        currency = settings.paypal_currency
        purchase_unit = {
            "amount": {
                "currency_code": currency,
                "value": money(total),
                "breakdown": {
                    "item_total": {"currency_code": currency, "value": money(total)},
                },
            },
            "description": f"{settings.brand_name} Order - {len(items)} item(s)",
            "items": [_gateway_item(i, currency) for i in items],
        }
        if reference:
            purchase_unit["reference_id"] = reference

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "return_url": settings.paypal_return_url,
                "cancel_url": settings.paypal_cancel_url,
                "brand_name": settings.brand_name,
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
            },
        }

        data = await self._authorized("POST", "/v2/checkout/orders", json=payload)

        approval_url = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not data.get("id") or not approval_url:
            logger.error(f"No approval URL in PayPal response: {data}")
            raise PaymentGatewayError("No approval URL returned from PayPal", gateway_body=data)

        logger.info(f"  💳 PayPal order created: {data['id']} ({money(total)} {currency}, {len(items)} item(s))")
        return {"id": data["id"], "status": data.get("status"), "approvalUrl": approval_url, "raw": data}

    async def capture_order(self, paypal_order_id: str) -> dict:
        validate_paypal_order_id(paypal_order_id)
        logger.info(f"Capturing PayPal order {paypal_order_id}")
        data = await self._authorized(
            "POST",
            f"/v2/checkout/orders/{paypal_order_id}/capture",
            headers={
                "PayPal-Request-Id": f"capture-{paypal_order_id}",
                "Prefer": "return=representation",
            },
        )
        capture = _first_capture(data)
        if capture:
            logger.info(
                f"Funds captured for {paypal_order_id}: "
                f"{capture.get('amount', {}).get('value')} {capture.get('amount', {}).get('currency_code')} "
                f"({capture.get('status')})"
            )
        return data

    async def get_order_details(self, paypal_order_id: str) -> dict:
        validate_paypal_order_id(paypal_order_id)
        return await self._authorized("GET", f"/v2/checkout/orders/{paypal_order_id}")


def _gateway_item(item: dict, currency: str) -> dict:
    out = {
        "name": item["title"][:GATEWAY_TEXT_LIMIT],
        "quantity": str(item["quantity"]),
        "unit_amount": {"currency_code": currency, "value": money(item["unit_price"])},
        "category": "PHYSICAL_GOODS",
    }
    authors = item.get("authors") or []
    if authors:
        out["description"] = f"By {', '.join(authors)}"[:GATEWAY_TEXT_LIMIT]
    return out


def _first_capture(data: dict) -> Optional[dict]:
    for unit in data.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


def gateway_amount(data: dict) -> float:
    """Charged amount from an order/capture payload (0.0 when absent)."""
    capture = _first_capture(data)
    if capture and capture.get("amount", {}).get("value"):
        return float(capture["amount"]["value"])
    units = data.get("purchase_units") or []
    if units and units[0].get("amount", {}).get("value"):
        return float(units[0]["amount"]["value"])
    return 0.0


# Global client instance
paypal_client = PayPalClient()
