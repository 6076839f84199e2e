"""
Reconciliation Service — turns a PayPal approval into a finalized order.

Called when the buyer comes back from PayPal (POST /checkout/capture) and by
support tooling. Every entry point is safe to repeat:

    1. Local order already paid            → already_processed (nothing changes)
    2. Remote order already COMPLETED      → finalize without capturing
    3. Capture                             → captured / already_captured
    4. Capture failed, remote COMPLETED    → recovered (no second capture)
    5. Still unconfirmed                   → RECONCILIATION_POLICY decides:
         manual_review: order parked in needs_reconciliation, stock untouched
         optimistic:    order finalized anyway, flagged with a warning
       A token with no local order is only recorded once its payment is
       confirmed; otherwise the call answers 404.

Finalize = payment completed + status completed + one stock decrement +
purchased books removed from the server-side cart, all in the caller's
transaction.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order
from domain.constants import GATEWAY_STATUS_COMPLETED, PROVISIONAL_CHECKOUT_MESSAGE
from domain.enums import (
    DeliveryStatus,
    FINALIZED_ORDER_STATUSES,
    OrderStatus,
    PaymentStatus,
    ReconciliationOutcome,
    UserRole,
)
from domain.errors import ConflictError, NotFoundError, PaymentGatewayError, PermissionDeniedError, ValidationError
from middleware.auth import Principal
from services import cart_service, stock_service
from services.order_service import get_order, get_order_by_paypal_id, order_to_dict
from services.paypal_client import gateway_amount, is_already_captured, validate_paypal_order_id
from utils.validators import parse_order_id

logger = logging.getLogger(__name__)

POLICY_MANUAL_REVIEW = "manual_review"
POLICY_OPTIMISTIC = "optimistic"

RESOLVE_ACTIONS = ("mark_paid", "cancel")


def _join_warnings(*parts: Optional[str]) -> Optional[str]:
    kept = [p for p in parts if p]
    return "; ".join(kept) if kept else None


def _ensure_owner(order: Order, principal: Optional[Principal]) -> None:
    if principal is None or principal["role"] == UserRole.ADMIN.value:
        return
    if order.user_id == principal["user_id"] or (
        order.user_email and order.user_email == principal["email"]
    ):
        return
    raise PermissionDeniedError("Order belongs to another user")


async def _remote_details(gateway, paypal_order_id: str) -> Optional[dict]:
    """Order details, or None when the gateway can't be asked right now."""
    try:
        return await gateway.get_order_details(paypal_order_id)
    except PaymentGatewayError as e:
        logger.warning(f"⚠️  Details lookup for {paypal_order_id} failed: {e.message} ({e.gateway_status})")
        return None


def _is_completed(payload: Optional[dict]) -> bool:
    return bool(payload) and payload.get("status") == GATEWAY_STATUS_COMPLETED


async def finalize_order(
    db: AsyncSession,
    order: Order,
    payload: Optional[dict] = None,
    *,
    warning: Optional[str] = None,
    capture_error: Optional[str] = None,
) -> Order:
    """Mark an order paid and completed, taking its stock once."""
    now = datetime.utcnow()
    order.payment_status = PaymentStatus.COMPLETED.value
    order.status = OrderStatus.COMPLETED.value
    order.captured_at = order.captured_at or now
    order.completed_at = now
    if payload:
        order.gateway_response = json.dumps(payload)
    if capture_error:
        order.capture_error = capture_error

    oversold = await stock_service.decrement_for_order(db, order)
    order.reconciliation_warning = _join_warnings(order.reconciliation_warning, warning, oversold)

    if order.user_id and order.items:
        await cart_service.remove_items(db, order.user_id, [i.book_id for i in order.items])

    await db.flush()
    logger.info(
        f"✅ Order #{order.id} finalized ({order.paypal_order_id})"
        f"{' with warning: ' + order.reconciliation_warning if order.reconciliation_warning else ''}"
    )
    return order


async def _recover_missing_order(
    db: AsyncSession,
    paypal_order_id: str,
    payload: Optional[dict],
    principal: Optional[Principal],
) -> Order:
    """A remote order with no local record: create one so the payment is not lost."""
    order = Order(
        paypal_order_id=paypal_order_id,
        status=OrderStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        delivery_status=DeliveryStatus.PENDING.value,
        total_amount=gateway_amount(payload or {}),
        currency=settings.paypal_currency,
        user_id=principal["user_id"] if principal else None,
        user_email=principal["email"] if principal else None,
        reconciliation_warning="Recovered: no local order existed for this PayPal order",
        # Nothing was reserved and the line items are unknown
        stock_decremented=True,
        items=[],
    )
    db.add(order)
    await db.flush()
    logger.warning(f"⚠️  Recovered missing local order #{order.id} for PayPal {paypal_order_id}")
    return order


def _result(outcome: ReconciliationOutcome, order: Order, message: str) -> dict:
    return {
        "outcome": outcome.value,
        "message": message,
        "order": order_to_dict(order),
    }


# ════════════════════════════════════════════════════════════════════
# Capture + reconcile
# ════════════════════════════════════════════════════════════════════

async def reconcile_payment(
    db: AsyncSession,
    gateway,
    paypal_order_id: str,
    *,
    policy: str = POLICY_MANUAL_REVIEW,
    principal: Optional[Principal] = None,
) -> dict:
    """
    Capture (if needed) and finalize the order for a PayPal token.

    Gateway failures never escape this function; they end in one of the
    outcomes listed in the module docstring. A token with no local order is
    only turned into an order once the gateway confirms it was paid;
    otherwise NotFoundError is raised and nothing is stored.

    Returns:
        dict: {outcome, message, order}
    """
    validate_paypal_order_id(paypal_order_id)

    order = await get_order_by_paypal_id(db, paypal_order_id)
    if order is not None:
        _ensure_owner(order, principal)

        # Replay guard #1: already paid locally
        if order.payment_status == PaymentStatus.COMPLETED.value:
            logger.info(f"Reconcile {paypal_order_id}: already processed (order #{order.id})")
            return _result(ReconciliationOutcome.ALREADY_PROCESSED, order, "Order already processed")
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(f"Order #{order.id} was cancelled; payment will not be captured")

    async def _finalize(payload, outcome, message, **kwargs) -> dict:
        target = order or await _recover_missing_order(db, paypal_order_id, payload, principal)
        await finalize_order(db, target, payload, **kwargs)
        return _result(outcome, target, message)

    # Replay guard #2: remote side already captured
    details = await _remote_details(gateway, paypal_order_id)
    if _is_completed(details):
        logger.info(f"Reconcile {paypal_order_id}: remote order already COMPLETED, skipping capture")
        return await _finalize(details, ReconciliationOutcome.ALREADY_CAPTURED, "Payment already captured")

    capture_error: Optional[str] = None
    try:
        capture = await gateway.capture_order(paypal_order_id)
    except PaymentGatewayError as e:
        if is_already_captured(e):
            logger.info(f"Reconcile {paypal_order_id}: gateway reports ORDER_ALREADY_CAPTURED")
            payload = await _remote_details(gateway, paypal_order_id) or e.gateway_body
            return await _finalize(
                payload if isinstance(payload, dict) else None,
                ReconciliationOutcome.ALREADY_CAPTURED,
                "Payment already captured",
            )
        capture_error = f"{e.message} (gateway status {e.gateway_status})"
        logger.error(f"Reconcile {paypal_order_id}: capture failed: {capture_error}")
    else:
        if _is_completed(capture):
            return await _finalize(capture, ReconciliationOutcome.CAPTURED, "Payment captured")
        capture_error = f"Capture returned status {capture.get('status')}"
        logger.error(f"Reconcile {paypal_order_id}: {capture_error}")

    # Capture outcome unclear: ask the gateway what actually happened
    details = await _remote_details(gateway, paypal_order_id)
    if _is_completed(details):
        logger.info(f"Reconcile {paypal_order_id}: recovered, remote order is COMPLETED")
        return await _finalize(
            details,
            ReconciliationOutcome.RECOVERED,
            "Payment confirmed",
            capture_error=capture_error,
        )

    if order is None:
        # Only a confirmed payment may create a local order
        logger.warning(f"⚠️  Reconcile {paypal_order_id}: no local order and payment not confirmed")
        raise NotFoundError("Order", paypal_order_id, details={"captureError": capture_error})

    warning = f"Capture not confirmed: {capture_error}"

    if policy == POLICY_OPTIMISTIC:
        logger.warning(f"⚠️  Reconcile {paypal_order_id}: finalizing without confirmed capture (optimistic policy)")
        return await _finalize(
            details,
            ReconciliationOutcome.COMPLETED_WITH_WARNING,
            "Order completed; payment confirmation pending review",
            warning=warning,
            capture_error=capture_error,
        )

    order.status = OrderStatus.NEEDS_RECONCILIATION.value
    order.payment_status = PaymentStatus.UNKNOWN.value
    order.capture_error = capture_error
    order.reconciliation_warning = _join_warnings(order.reconciliation_warning, warning)
    if details:
        order.gateway_response = json.dumps(details)
    await db.flush()
    logger.warning(f"⚠️  Order #{order.id} ({paypal_order_id}) needs manual reconciliation")
    return _result(ReconciliationOutcome.PENDING_REVIEW, order, PROVISIONAL_CHECKOUT_MESSAGE)


# ════════════════════════════════════════════════════════════════════
# Simple success path & support tooling
# ════════════════════════════════════════════════════════════════════

async def mark_order_success(
    db: AsyncSession,
    principal: Principal,
    *,
    order_id=None,
    paypal_order_id: Optional[str] = None,
    policy: str = POLICY_MANUAL_REVIEW,
) -> dict:
    """
    Mark an order successful after the buyer returned from PayPal.

    Only orders whose payment is confirmed are completed, unless the
    optimistic policy is active (then the order is finalized with a warning).
    """
    if order_id is None and not paypal_order_id:
        raise ValidationError("orderId or paypalOrderId is required")

    if order_id is not None:
        order = await get_order(db, parse_order_id(order_id))
    else:
        validate_paypal_order_id(paypal_order_id)
        order = await get_order_by_paypal_id(db, paypal_order_id)
        if order is None:
            raise NotFoundError("Order", paypal_order_id)

    _ensure_owner(order, principal)
    if order.status == OrderStatus.CANCELLED.value:
        raise ConflictError(f"Order #{order.id} was cancelled")

    if order.payment_status == PaymentStatus.COMPLETED.value:
        if order.status != OrderStatus.COMPLETED.value:
            order.status = OrderStatus.COMPLETED.value
            order.completed_at = order.completed_at or datetime.utcnow()
            await db.flush()
            logger.info(f"Order #{order.id} marked completed")
        return _result(ReconciliationOutcome.ALREADY_PROCESSED, order, "Order marked as successful")

    if policy == POLICY_OPTIMISTIC:
        await finalize_order(
            db, order,
            warning="Marked successful without a confirmed capture",
        )
        return _result(
            ReconciliationOutcome.COMPLETED_WITH_WARNING, order, "Order marked as successful",
        )

    raise ConflictError(
        f"Payment for order #{order.id} is {order.payment_status}; it cannot be marked successful yet",
        details={"orderId": order.id, "paymentStatus": order.payment_status},
    )


async def resolve_order(
    db: AsyncSession,
    order_id: int,
    action: str,
    note: Optional[str] = None,
) -> Order:
    """
    Support decision for an order the automated flow could not settle.

    mark_paid → finalize (stock taken once)
    cancel    → cancelled, stock is not returned
    """
    if action not in RESOLVE_ACTIONS:
        raise ValidationError(f"Unknown action: {action}. Valid: {', '.join(RESOLVE_ACTIONS)}", field="action")

    order = await get_order(db, order_id)
    if order.status in FINALIZED_ORDER_STATUSES:
        raise ConflictError(f"Order #{order.id} is already {order.status}")

    note_text = f"Support: {note}" if note else None

    if action == "mark_paid":
        await finalize_order(db, order, warning=_join_warnings("Resolved as paid by support", note_text))
    else:
        order.status = OrderStatus.CANCELLED.value
        if order.delivery_status == DeliveryStatus.PENDING.value:
            order.delivery_status = DeliveryStatus.CANCELLED.value
        order.reconciliation_warning = _join_warnings(
            order.reconciliation_warning, "Cancelled by support", note_text,
        )
        await db.flush()

    logger.info(f"Order #{order.id} resolved: {action}")
    return order


async def get_checkout_status(
    db: AsyncSession,
    principal: Principal,
    paypal_order_id: str,
) -> dict:
    """Authoritative checkout state for client polling."""
    validate_paypal_order_id(paypal_order_id)
    order = await get_order_by_paypal_id(db, paypal_order_id)
    if order is None:
        raise NotFoundError("Order", paypal_order_id)
    _ensure_owner(order, principal)

    final = order.status in FINALIZED_ORDER_STATUSES
    if order.status == OrderStatus.COMPLETED.value:
        message = "Order confirmed"
    elif order.status == OrderStatus.CANCELLED.value:
        message = "Order cancelled"
    else:
        message = PROVISIONAL_CHECKOUT_MESSAGE
    return {
        "orderId": order.id,
        "paypalOrderId": order.paypal_order_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "deliveryStatus": order.delivery_status,
        "final": final,
        "message": message,
    }
