"""
Stock endpoints — pre-checkout validation and reservation release.

Endpoints:
    POST /stock/validate   — check + reserve stock for the whole cart
    POST /stock/release    — give a held reservation back
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_customer
from domain.responses import success_response
from middleware.auth import Principal
from middleware.rate_limit import rate_limit
from models import StockReleaseRequest, StockValidateRequest
from services import stock_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/stock", tags=["stock"])


# ── POST /stock/validate ────────────────────────────────────────────
@router.post("/validate", dependencies=[Depends(rate_limit(30, 60))])
async def validate_stock(
    body: StockValidateRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    """
    Validate and reserve stock for every cart line.

    Shortfalls are a normal answer (200, valid=false, errors listed);
    nothing is reserved unless every line can be served.
    """
    result = await stock_service.validate_and_reserve(
        db,
        [i.model_dump(by_alias=True) for i in body.items],
        user_id=principal["user_id"],
    )
    await db.commit()
    return success_response(result)


# ── POST /stock/release ─────────────────────────────────────────────
@router.post("/release")
async def release_stock(
    body: StockReleaseRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_customer),
):
    result = await stock_service.release_reservation(
        db, body.reservation_id, principal["user_id"],
    )
    await db.commit()
    return success_response(result)
