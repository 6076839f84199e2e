"""
Cart endpoints — server-side cart mirror.

Endpoints:
    GET  /cart          — current cart with live prices and stock
    PUT  /cart          — replace the cart
    POST /cart/remove   — drop books from the cart
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_customer
from domain.responses import success_response
from middleware.auth import Principal
from models import CartRemoveRequest, CartSyncRequest
from services import cart_service

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("")
async def get_cart(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    return success_response(await cart_service.get_cart(db, principal["user_id"]))


@router.put("")
async def sync_cart(
    body: CartSyncRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    items = await cart_service.sync_cart(
        db, principal["user_id"], [i.model_dump() for i in body.items],
    )
    await db.commit()
    return success_response(items)


@router.post("/remove")
async def remove_from_cart(
    body: CartRemoveRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    removed = await cart_service.remove_items(db, principal["user_id"], body.book_ids)
    await db.commit()
    return success_response({"removed": removed})
