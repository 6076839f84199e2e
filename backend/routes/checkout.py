"""
Checkout endpoints — PayPal order creation, capture/reconciliation and status polling.

Endpoints:
    POST /checkout/create-order              — re-price cart, create PayPal order
    POST /checkout/capture                   — capture + finalize (202 when unconfirmed)
    POST /checkout/mark-success              — simple success path after PayPal return
    GET  /checkout/status/{paypal_order_id}  — authoritative order state for polling
"""
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import get_payment_gateway, get_reconciliation_policy, require_customer
from domain.enums import ReconciliationOutcome
from domain.responses import success_response
from middleware.auth import Principal
from middleware.rate_limit import rate_limit
from models import CaptureRequest, CreateOrderRequest, MarkSuccessRequest
from services import order_service, reconciliation_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkout", tags=["checkout"])


# ── POST /checkout/create-order ─────────────────────────────────────
@router.post("/create-order", dependencies=[Depends(rate_limit(10, 60))])
async def create_order(
    body: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
    gateway=Depends(get_payment_gateway),
):
    """Create the PayPal order; the browser is sent to `approvalUrl`."""
    result = await order_service.create_checkout_order(
        db,
        gateway,
        principal,
        items=[i.model_dump() for i in body.items],
        total_amount=body.total_amount,
        reservation_id=body.reservation_id,
    )
    await db.commit()
    return success_response(result)


# ── POST /checkout/capture ──────────────────────────────────────────
@router.post("/capture", dependencies=[Depends(rate_limit(20, 60))])
async def capture_payment(
    body: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
    gateway=Depends(get_payment_gateway),
    policy: str = Depends(get_reconciliation_policy),
):
    """
    Capture the approved PayPal order and finalize it.

    Answers 202 with a provisional message when the payment could not be
    confirmed and the order was parked for manual reconciliation.
    """
    result = await reconciliation_service.reconcile_payment(
        db, gateway, body.order_id, policy=policy, principal=principal,
    )
    await db.commit()

    if result["outcome"] == ReconciliationOutcome.PENDING_REVIEW.value:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=success_response(result),
        )
    return success_response(result)


# ── POST /checkout/mark-success ─────────────────────────────────────
@router.post("/mark-success")
async def mark_success(
    body: MarkSuccessRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
    policy: str = Depends(get_reconciliation_policy),
):
    result = await reconciliation_service.mark_order_success(
        db,
        principal,
        order_id=body.order_id,
        paypal_order_id=body.paypal_order_id,
        policy=policy,
    )
    await db.commit()
    return success_response(result)


# ── GET /checkout/status/{paypal_order_id} ──────────────────────────
@router.get("/status/{paypal_order_id}")
async def checkout_status(
    paypal_order_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    return success_response(
        await reconciliation_service.get_checkout_status(db, principal, paypal_order_id)
    )
