"""
Shared FastAPI dependencies.

Centralizes common dependencies so routers import from a single place
(DB session, role guards, pagination, external collaborators).
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Depends, Query

from config import settings
from domain.enums import UserRole
from domain.errors import PermissionDeniedError
from middleware.auth import Principal, require_principal


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


def _require_role(principal: Principal, *roles: UserRole) -> Principal:
    allowed = {r.value for r in roles}
    if principal["role"] not in allowed:
        raise PermissionDeniedError(
            f"{' or '.join(sorted(allowed))} role required for this endpoint."
        )
    return principal


async def require_customer(principal: Principal = Depends(require_principal)) -> Principal:
    """Shoppers. Admins may shop too (staff purchases)."""
    return _require_role(principal, UserRole.CUSTOMER, UserRole.ADMIN)


async def require_courier(principal: Principal = Depends(require_principal)) -> Principal:
    return _require_role(principal, UserRole.COURIER)


async def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    return _require_role(principal, UserRole.ADMIN)


def get_payment_gateway():
    """The PayPal client singleton. Overridden in tests."""
    from services.paypal_client import paypal_client
    return paypal_client


def get_mailer():
    """Coroutine function used to send one email. Overridden in tests."""
    from services.email_service import send_email
    return send_email


def get_reconciliation_policy() -> str:
    return settings.reconciliation_policy
