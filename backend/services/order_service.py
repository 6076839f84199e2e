"""
Order Service — checkout order creation, courier assignment, delivery status
and order listings.

Checkout creation re-prices every line from the catalog; the client total is
only used as a cross-check. Payment capture and finalization live in
reconciliation_service.
"""
import json
import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, OrderItem, User
from domain.constants import TOTAL_TOLERANCE, VISIBLE_ORDER_STATUSES
from domain.enums import (
    DELIVERY_TRANSITIONS,
    DeliveryStatus,
    OrderStatus,
    PaymentStatus,
    UserRole,
)
from domain.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    UnauthorizedError,
    ValidationError,
)
from middleware.auth import Principal
from services import stock_service
from utils.validators import validate_amount, validate_quantity

logger = logging.getLogger(__name__)


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def order_to_dict(order: Order) -> dict:
    """API projection of an order (camelCase keys)."""
    return {
        "id": order.id,
        "paypalOrderId": order.paypal_order_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "deliveryStatus": order.delivery_status,
        "totalAmount": order.total_amount,
        "currency": order.currency,
        "userId": order.user_id,
        "userEmail": order.user_email,
        "userName": order.user_name,
        "courierId": order.courier_id,
        "reservationId": order.reservation_id,
        "captureError": order.capture_error,
        "reconciliationWarning": order.reconciliation_warning,
        "items": [
            {
                "bookId": i.book_id,
                "title": i.title,
                "quantity": i.quantity,
                "unitPrice": i.unit_price,
            }
            for i in order.items
        ],
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
        "capturedAt": _iso(order.captured_at),
        "completedAt": _iso(order.completed_at),
    }


async def get_order(db: AsyncSession, order_id: int) -> Order:
    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order", str(order_id))
    return order


async def get_order_by_paypal_id(db: AsyncSession, paypal_order_id: str) -> Optional[Order]:
    result = await db.execute(select(Order).where(Order.paypal_order_id == paypal_order_id))
    return result.scalar_one_or_none()


# ════════════════════════════════════════════════════════════════════
# Checkout order creation
# ════════════════════════════════════════════════════════════════════

async def create_checkout_order(
    db: AsyncSession,
    gateway,
    principal: Optional[Principal],
    *,
    items: list[dict],
    total_amount,
    reservation_id: Optional[str] = None,
) -> dict:
    """
    Create the remote PayPal order and its pending local record.

    Args:
        db: Database session (caller commits)
        gateway: PayPalClient-compatible object
        principal: authenticated customer
        items: [{"id": book id or slug, "quantity": int}, ...]
        total_amount: what the client displayed; must match the server re-price
        reservation_id: held stock reservation from /stock/validate. When omitted,
            the user's held reservation for the same items is used if one exists

    Returns:
        dict: {orderId, paypalOrderId, approvalUrl}
    """
    if not principal or not principal.get("email"):
        raise UnauthorizedError("User authentication required for checkout")
    if not items:
        raise ValidationError("Items array is required", field="items")
    client_total = validate_amount(total_amount)

    user = await db.get(User, principal["user_id"])
    if user is None:
        raise NotFoundError("User", str(principal["user_id"]))

    lines = []
    quantities: dict[int, int] = {}
    for item in items:
        identifier = item.get("id")
        if identifier is None or not str(identifier).strip():
            raise ValidationError("Every item needs an id", field="id")
        quantity = validate_quantity(item.get("quantity"), field="quantity")
        book = await stock_service.resolve_book(db, identifier)
        if book is None:
            raise NotFoundError("Book", str(identifier))
        lines.append({
            "book": book,
            "quantity": quantity,
            "unit_price": round(float(book.effective_price), 2),
        })
        quantities[book.id] = quantities.get(book.id, 0) + quantity

    server_total = round(sum(line["unit_price"] * line["quantity"] for line in lines), 2)
    if abs(server_total - client_total) > TOTAL_TOLERANCE + 1e-9:
        logger.warning(
            f"⚠️  Checkout total mismatch for {user.email}: client={client_total} server={server_total}"
        )
        raise ValidationError(
            f"Total amount {client_total:.2f} does not match current prices ({server_total:.2f})",
            field="totalAmount",
            details={"clientTotal": client_total, "serverTotal": server_total},
        )

    if reservation_id:
        await stock_service.check_reservation(db, reservation_id, user.id, quantities)
    else:
        # Stock already taken by /stock/validate belongs to this order
        held = await stock_service.find_held_reservation(db, user.id, quantities)
        if held is not None:
            reservation_id = held.id
            logger.info(f"Order for {user.email} picks up held reservation {reservation_id}")

    remote = await gateway.create_order(
        [
            {
                "title": line["book"].title,
                "authors": [a.name for a in line["book"].authors],
                "quantity": line["quantity"],
                "unit_price": line["unit_price"],
            }
            for line in lines
        ],
        server_total,
    )

    order = Order(
        paypal_order_id=remote["id"],
        status=OrderStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        delivery_status=DeliveryStatus.PENDING.value,
        total_amount=server_total,
        currency=settings.paypal_currency,
        user_id=user.id,
        user_email=user.email,
        user_name=user.name,
        reservation_id=reservation_id,
        gateway_response=json.dumps(remote.get("raw") or {}),
        items=[
            OrderItem(
                book_id=line["book"].id,
                title=line["book"].title,
                quantity=line["quantity"],
                unit_price=line["unit_price"],
            )
            for line in lines
        ],
    )
    db.add(order)
    await db.flush()

    if reservation_id:
        await stock_service.consume_reservation(
            db, reservation_id, user.id, quantities, order_id=order.id,
        )
        # Reserved stock is this order's stock; finalize must not take it again
        order.stock_decremented = True
        await db.flush()

    logger.info(
        f"🛒 Order #{order.id} created for {user.email}: {server_total:.2f} {order.currency}, "
        f"PayPal {order.paypal_order_id}{' (reserved)' if reservation_id else ''}"
    )
    return {
        "orderId": order.id,
        "paypalOrderId": order.paypal_order_id,
        "approvalUrl": remote["approvalUrl"],
    }


# ════════════════════════════════════════════════════════════════════
# Courier assignment & delivery status
# ════════════════════════════════════════════════════════════════════

def _parse_delivery_status(value) -> DeliveryStatus:
    try:
        return DeliveryStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown delivery status: {value}. "
            f"Valid: {', '.join(s.value for s in DeliveryStatus)}",
            field="deliveryStatus",
        )


def _apply_delivery_transition(order: Order, new_status: DeliveryStatus) -> None:
    current = DeliveryStatus(order.delivery_status)
    if new_status not in DELIVERY_TRANSITIONS[current]:
        raise ConflictError(
            f"Cannot change delivery status of order #{order.id} from {current.value} to {new_status.value}"
        )
    order.delivery_status = new_status.value


async def assign_courier(db: AsyncSession, order_id: int, courier_id: int) -> Order:
    """Hand an order to a courier: delivery pending → processing."""
    order = await get_order(db, order_id)
    if order.status in (OrderStatus.CANCELLED.value, OrderStatus.NEEDS_RECONCILIATION.value):
        raise ConflictError(f"Order #{order.id} is {order.status}; it cannot be assigned")

    courier = await db.get(User, courier_id)
    if courier is None:
        raise NotFoundError("Courier", str(courier_id))
    if courier.role != UserRole.COURIER.value:
        raise ValidationError(f"User {courier_id} is not a courier", field="courierId")

    if order.delivery_status == DeliveryStatus.PENDING.value:
        _apply_delivery_transition(order, DeliveryStatus.PROCESSING)
    elif order.delivery_status != DeliveryStatus.PROCESSING.value:
        raise ConflictError(f"Order #{order.id} delivery is already {order.delivery_status}")

    order.courier_id = courier.id
    await db.flush()
    logger.info(f"🚚 Order #{order.id} assigned to courier {courier.email}")
    return order


async def update_delivery_status(
    db: AsyncSession,
    order_id: int,
    courier_id: int,
    status: str,
) -> Order:
    """Assigned courier reports the outcome: processing → delivered | cancelled."""
    order = await get_order(db, order_id)
    if order.courier_id != courier_id:
        raise PermissionDeniedError("Order is not assigned to you")

    _apply_delivery_transition(order, _parse_delivery_status(status))
    await db.flush()
    logger.info(f"Order #{order.id} delivery → {order.delivery_status} (courier {courier_id})")
    return order


ADMIN_UPDATABLE_FIELDS = ("status", "deliveryStatus", "courierId")


async def admin_update_order(db: AsyncSession, order_id: int, fields: dict) -> Order:
    """
    Generic admin update limited to status, deliveryStatus and courierId.

    Payment-affecting moves go through reconciliation_service.resolve_order.
    """
    unknown = set(fields) - set(ADMIN_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    if not fields:
        raise ValidationError("Nothing to update")

    order = await get_order(db, order_id)

    if fields.get("courierId") is not None:
        order = await assign_courier(db, order_id, int(fields["courierId"]))

    if fields.get("deliveryStatus") is not None:
        new_delivery = _parse_delivery_status(fields["deliveryStatus"])
        if new_delivery.value != order.delivery_status:
            if new_delivery == DeliveryStatus.PROCESSING and order.courier_id is None:
                raise ConflictError("Assign a courier before moving delivery to processing")
            _apply_delivery_transition(order, new_delivery)

    if fields.get("status") is not None:
        try:
            new_status = OrderStatus(fields["status"])
        except ValueError:
            raise ValidationError(f"Unknown order status: {fields['status']}", field="status")
        if new_status == OrderStatus.NEEDS_RECONCILIATION:
            raise ValidationError("needs_reconciliation is set by payment reconciliation only", field="status")
        if new_status == OrderStatus.COMPLETED and order.payment_status != PaymentStatus.COMPLETED.value:
            raise ConflictError(
                f"Order #{order.id} payment is {order.payment_status}; resolve it before completing"
            )
        order.status = new_status.value

    await db.flush()
    logger.info(f"Admin updated order #{order.id}: {fields}")
    return order


# ════════════════════════════════════════════════════════════════════
# Listings
# ════════════════════════════════════════════════════════════════════

async def list_user_orders(db: AsyncSession, principal: Principal) -> list[Order]:
    """Owner's completed/processing orders, newest first."""
    result = await db.execute(
        select(Order)
        .where(
            or_(Order.user_id == principal["user_id"], Order.user_email == principal["email"]),
            Order.status.in_(VISIBLE_ORDER_STATUSES),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    return list(result.scalars().all())


async def list_orders(
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    delivery_status: Optional[str] = None,
    courier_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    """Admin order list. Returns (page, total matching)."""
    filters = []
    if status:
        filters.append(Order.status == status)
    if delivery_status:
        filters.append(Order.delivery_status == delivery_status)
    if courier_id is not None:
        filters.append(Order.courier_id == courier_id)

    total = await db.scalar(select(func.count(Order.id)).where(*filters))
    result = await db.execute(
        select(Order)
        .where(*filters)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


async def list_courier_orders(
    db: AsyncSession,
    courier_id: int,
    delivery_status: Optional[str] = None,
) -> list[Order]:
    query = select(Order).where(Order.courier_id == courier_id)
    if delivery_status:
        query = query.where(Order.delivery_status == delivery_status)
    result = await db.execute(query.order_by(Order.created_at.desc(), Order.id.desc()))
    return list(result.scalars().all())


async def list_couriers(db: AsyncSession) -> list[User]:
    result = await db.execute(
        select(User).where(User.role == UserRole.COURIER.value).order_by(User.name, User.id)
    )
    return list(result.scalars().all())
