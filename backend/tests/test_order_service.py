"""
Unit tests for checkout order creation, courier assignment and delivery status.
"""
import pytest

from db_models import StockReservation
from domain.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    UnauthorizedError,
    ValidationError,
)
from services import order_service, stock_service
from tests.conftest import stock_of


def principal_of(user) -> dict:
    return {"user_id": user.id, "email": user.email, "role": user.role}


async def create(db, gateway, user, items, total, **kwargs) -> dict:
    result = await order_service.create_checkout_order(
        db, gateway, principal_of(user), items=items, total_amount=total, **kwargs,
    )
    await db.commit()
    return result


# ── create_checkout_order ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_order_reprices_from_catalog(db_session, fake_gateway, customer, book_a, book_b):
    result = await create(
        db_session, fake_gateway, customer,
        [{"id": book_a.id, "quantity": 2}, {"id": "the-last-copy", "quantity": 1}],
        35.0,  # 2 x 10.00 + 1 x 15.00 (sale price)
    )

    assert result["paypalOrderId"] == "PAYPAL0001"
    assert result["approvalUrl"].endswith("PAYPAL0001")
    sent = fake_gateway.created[0]
    assert sent["total"] == 35.0
    assert [i["unit_price"] for i in sent["items"]] == [10.0, 15.0]
    assert sent["items"][0]["authors"] == ["Author of A Tale of Stock"]

    order = await order_service.get_order(db_session, result["orderId"])
    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.delivery_status == "pending"
    assert order.user_email == "reader@example.com"
    assert order.user_name == "Ada Reader"
    assert order.stock_decremented is False
    assert [(i.book_id, i.quantity, i.unit_price) for i in order.items] == [
        (book_a.id, 2, 10.0),
        (book_b.id, 1, 15.0),
    ]
    # Creating an order never touches stock on its own
    assert await stock_of(db_session, book_a) == 5


@pytest.mark.asyncio
async def test_client_total_mismatch_rejected(db_session, fake_gateway, customer, book_a):
    with pytest.raises(ValidationError) as exc_info:
        await create(db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 2}], 2.0)
    assert exc_info.value.details == {"clientTotal": 2.0, "serverTotal": 20.0}
    assert fake_gateway.created == []


@pytest.mark.asyncio
async def test_total_within_a_cent_is_accepted(db_session, fake_gateway, customer, book_a):
    result = await create(db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 1}], 10.01)
    order = await order_service.get_order(db_session, result["orderId"])
    assert order.total_amount == 10.0


@pytest.mark.asyncio
async def test_create_order_preconditions(db_session, fake_gateway, customer, book_a):
    with pytest.raises(UnauthorizedError):
        await order_service.create_checkout_order(
            db_session, fake_gateway, None, items=[{"id": book_a.id, "quantity": 1}], total_amount=10.0,
        )
    with pytest.raises(ValidationError):
        await create(db_session, fake_gateway, customer, [], 10.0)
    with pytest.raises(ValidationError):
        await create(db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 1}], 0)
    with pytest.raises(ValidationError):
        await create(db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 0}], 10.0)
    with pytest.raises(NotFoundError):
        await create(db_session, fake_gateway, customer, [{"id": "missing-book", "quantity": 1}], 10.0)

    ghost = {"user_id": 9999, "email": "ghost@example.com", "role": "customer"}
    with pytest.raises(NotFoundError):
        await order_service.create_checkout_order(
            db_session, fake_gateway, ghost, items=[{"id": book_a.id, "quantity": 1}], total_amount=10.0,
        )
    assert fake_gateway.created == []


@pytest.mark.asyncio
async def test_create_order_consumes_reservation(db_session, fake_gateway, customer, book_a):
    reserved = await stock_service.validate_and_reserve(
        db_session, [{"id": book_a.id, "requestedQuantity": 2}], user_id=customer.id,
    )
    await db_session.commit()

    result = await create(
        db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 2}], 20.0,
        reservation_id=reserved["reservationId"],
    )

    order = await order_service.get_order(db_session, result["orderId"])
    assert order.stock_decremented is True
    assert order.reservation_id == reserved["reservationId"]
    reservation = await db_session.get(StockReservation, reserved["reservationId"])
    await db_session.refresh(reservation)
    assert reservation.status == "consumed"
    assert reservation.order_id == order.id
    assert await stock_of(db_session, book_a) == 3

    # A consumed reservation can't back a second order
    with pytest.raises(ConflictError):
        await create(
            db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 2}], 20.0,
            reservation_id=reserved["reservationId"],
        )


@pytest.mark.asyncio
async def test_create_order_picks_up_matching_held_reservation(db_session, fake_gateway, customer, book_a):
    """Validated stock is not taken a second time when the client omits reservationId."""
    reserved = await stock_service.validate_and_reserve(
        db_session, [{"id": book_a.id, "requestedQuantity": 2}], user_id=customer.id,
    )
    await db_session.commit()

    result = await create(db_session, fake_gateway, customer, [{"id": "a-tale-of-stock", "quantity": 2}], 20.0)

    order = await order_service.get_order(db_session, result["orderId"])
    assert order.reservation_id == reserved["reservationId"]
    assert order.stock_decremented is True
    reservation = await db_session.get(StockReservation, reserved["reservationId"])
    await db_session.refresh(reservation)
    assert reservation.status == "consumed"
    assert await stock_of(db_session, book_a) == 3


@pytest.mark.asyncio
async def test_held_reservation_for_other_items_is_left_alone(
    db_session, fake_gateway, customer, other_customer, book_a,
):
    mine = await stock_service.validate_and_reserve(
        db_session, [{"id": book_a.id, "requestedQuantity": 1}], user_id=customer.id,
    )
    theirs = await stock_service.validate_and_reserve(
        db_session, [{"id": book_a.id, "requestedQuantity": 2}], user_id=other_customer.id,
    )
    await db_session.commit()

    result = await create(db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 2}], 20.0)

    order = await order_service.get_order(db_session, result["orderId"])
    assert order.reservation_id is None
    assert order.stock_decremented is False
    for reservation_id in (mine["reservationId"], theirs["reservationId"]):
        reservation = await db_session.get(StockReservation, reservation_id)
        await db_session.refresh(reservation)
        assert reservation.status == "held"


@pytest.mark.asyncio
async def test_reservation_must_match_order(db_session, fake_gateway, customer, book_a):
    reserved = await stock_service.validate_and_reserve(
        db_session, [{"id": book_a.id, "requestedQuantity": 1}], user_id=customer.id,
    )
    await db_session.commit()

    with pytest.raises(ValidationError):
        await create(
            db_session, fake_gateway, customer, [{"id": book_a.id, "quantity": 3}], 30.0,
            reservation_id=reserved["reservationId"],
        )
    assert fake_gateway.created == []


# ── Courier assignment & delivery ───────────────────────────────────


async def _pending_order(db, gateway, customer, book) -> int:
    result = await create(db, gateway, customer, [{"id": book.id, "quantity": 1}], book.effective_price)
    return result["orderId"]


@pytest.mark.asyncio
async def test_assign_courier_moves_delivery_to_processing(db_session, fake_gateway, customer, courier, book_a):
    order_id = await _pending_order(db_session, fake_gateway, customer, book_a)

    order = await order_service.assign_courier(db_session, order_id, courier.id)
    await db_session.commit()

    assert order.courier_id == courier.id
    assert order.delivery_status == "processing"
    assert [o.id for o in await order_service.list_courier_orders(db_session, courier.id)] == [order_id]


@pytest.mark.asyncio
async def test_assign_requires_a_courier(db_session, fake_gateway, customer, other_customer, book_a):
    order_id = await _pending_order(db_session, fake_gateway, customer, book_a)
    with pytest.raises(ValidationError):
        await order_service.assign_courier(db_session, order_id, other_customer.id)
    with pytest.raises(NotFoundError):
        await order_service.assign_courier(db_session, order_id, 4242)


@pytest.mark.asyncio
async def test_delivery_transitions(db_session, fake_gateway, customer, courier, book_a):
    order_id = await _pending_order(db_session, fake_gateway, customer, book_a)

    # Not assigned yet
    with pytest.raises(PermissionDeniedError):
        await order_service.update_delivery_status(db_session, order_id, courier.id, "delivered")

    await order_service.assign_courier(db_session, order_id, courier.id)
    order = await order_service.update_delivery_status(db_session, order_id, courier.id, "delivered")
    await db_session.commit()
    assert order.delivery_status == "delivered"

    # delivered is terminal
    with pytest.raises(ConflictError):
        await order_service.update_delivery_status(db_session, order_id, courier.id, "cancelled")
    with pytest.raises(ValidationError):
        await order_service.update_delivery_status(db_session, order_id, courier.id, "lost")


@pytest.mark.asyncio
async def test_admin_update_limits_fields_and_transitions(db_session, fake_gateway, customer, courier, book_a):
    order_id = await _pending_order(db_session, fake_gateway, customer, book_a)

    with pytest.raises(ValidationError):
        await order_service.admin_update_order(db_session, order_id, {"totalAmount": 0})
    with pytest.raises(ConflictError):
        await order_service.admin_update_order(db_session, order_id, {"deliveryStatus": "processing"})
    with pytest.raises(ConflictError):
        await order_service.admin_update_order(db_session, order_id, {"status": "completed"})

    order = await order_service.admin_update_order(
        db_session, order_id, {"courierId": courier.id, "status": "processing"},
    )
    await db_session.commit()
    assert order.delivery_status == "processing"
    assert order.status == "processing"

    order = await order_service.admin_update_order(db_session, order_id, {"deliveryStatus": "cancelled"})
    assert order.delivery_status == "cancelled"


@pytest.mark.asyncio
async def test_listings(db_session, fake_gateway, customer, other_customer, courier, book_a):
    first = await _pending_order(db_session, fake_gateway, customer, book_a)
    second = await _pending_order(db_session, fake_gateway, customer, book_a)
    await _pending_order(db_session, fake_gateway, other_customer, book_a)

    # Pending orders are not part of the customer's history
    assert await order_service.list_user_orders(db_session, principal_of(customer)) == []

    for order_id in (first, second):
        order = await order_service.get_order(db_session, order_id)
        order.status = "completed"
        order.payment_status = "completed"
    await db_session.commit()

    mine = await order_service.list_user_orders(db_session, principal_of(customer))
    assert [o.id for o in mine] == [second, first]

    page, total = await order_service.list_orders(db_session, status="pending", limit=10, offset=0)
    assert total == 1
    assert page[0].user_email == "other@example.com"

    page, total = await order_service.list_orders(db_session, limit=1, offset=0)
    assert total == 3
    assert len(page) == 1

    assert [c.id for c in await order_service.list_couriers(db_session)] == [courier.id]
