"""
Order endpoints — customer history, admin order desk, courier worklist.

Endpoints:
    GET   /orders/me                              — customer's completed/processing orders
    GET   /admin/orders                           — all orders (filters, paginated)
    PATCH /admin/orders/{order_id}                — status / deliveryStatus / courierId
    POST  /admin/orders/{order_id}/assign-courier — delivery pending → processing
    POST  /admin/orders/{order_id}/resolve        — settle a needs_reconciliation order
    GET   /admin/couriers                         — courier accounts
    GET   /courier/orders                         — orders assigned to the caller
    PATCH /courier/orders/{order_id}/delivery     — delivered | cancelled
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params, require_admin, require_courier, require_customer
from domain.responses import paginated_response, success_response
from middleware.auth import Principal
from models import (
    AdminOrderUpdateRequest,
    AssignCourierRequest,
    DeliveryUpdateRequest,
    ResolveOrderRequest,
)
from services import order_service, reconciliation_service
from services.order_service import order_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
courier_router = APIRouter(prefix="/courier", tags=["courier"])


# ── GET /orders/me ──────────────────────────────────────────────────
@router.get("/me")
async def my_orders(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    orders = await order_service.list_user_orders(db, principal)
    return success_response([order_to_dict(o) for o in orders])


# ════════════════════════════════════════════════════════════════════
# Admin
# ════════════════════════════════════════════════════════════════════

@admin_router.get("/orders")
async def list_orders(
    status: Optional[str] = Query(None),
    delivery_status: Optional[str] = Query(None, alias="deliveryStatus"),
    courier_id: Optional[int] = Query(None, alias="courierId"),
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    orders, total = await order_service.list_orders(
        db,
        status=status,
        delivery_status=delivery_status,
        courier_id=courier_id,
        limit=page["limit"],
        offset=page["offset"],
    )
    return paginated_response([order_to_dict(o) for o in orders], page["limit"], page["offset"], total)


@admin_router.patch("/orders/{order_id}")
async def update_order(
    order_id: int,
    body: AdminOrderUpdateRequest,
    db: AsyncSession = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    order = await order_service.admin_update_order(db, order_id, body.changes())
    await db.commit()
    return success_response(order_to_dict(order))


@admin_router.post("/orders/{order_id}/assign-courier")
async def assign_courier(
    order_id: int,
    body: AssignCourierRequest,
    db: AsyncSession = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    order = await order_service.assign_courier(db, order_id, body.courier_id)
    await db.commit()
    return success_response(order_to_dict(order))


@admin_router.post("/orders/{order_id}/resolve")
async def resolve_order(
    order_id: int,
    body: ResolveOrderRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    order = await reconciliation_service.resolve_order(db, order_id, body.action, body.note)
    await db.commit()
    logger.info(f"Order #{order_id} resolved as {body.action} by {principal['email']}")
    return success_response(order_to_dict(order))


@admin_router.get("/couriers")
async def list_couriers(
    db: AsyncSession = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    couriers = await order_service.list_couriers(db)
    return success_response([{"id": c.id, "name": c.name, "email": c.email} for c in couriers])


# ════════════════════════════════════════════════════════════════════
# Courier
# ════════════════════════════════════════════════════════════════════

@courier_router.get("/orders")
async def courier_orders(
    delivery_status: Optional[str] = Query(None, alias="deliveryStatus"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_courier),
):
    orders = await order_service.list_courier_orders(db, principal["user_id"], delivery_status)
    return success_response([order_to_dict(o) for o in orders])


@courier_router.patch("/orders/{order_id}/delivery")
async def update_delivery(
    order_id: int,
    body: DeliveryUpdateRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_courier),
):
    order = await order_service.update_delivery_status(
        db, order_id, principal["user_id"], body.delivery_status,
    )
    await db.commit()
    return success_response(order_to_dict(order))
