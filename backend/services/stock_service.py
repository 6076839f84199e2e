"""
Stock Service — the only code that changes Book.stock.

Every change is a single conditional UPDATE (`stock = stock - q WHERE stock >= q`)
so concurrent checkouts can never drive a counter below zero, and every change
is written to the stock_movements ledger.

Flow:
    validate_and_reserve  → all-or-nothing decrement, creates a held reservation
    consume_reservation   → binds the held reservation to a checkout order
    release_reservation   → returns a held reservation's stock
    decrement_for_order   → one-time decrement for orders created without a reservation
"""
import json
import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Book, Order, StockMovement, StockReservation
from domain.enums import ReservationStatus
from domain.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from utils.validators import validate_quantity

logger = logging.getLogger(__name__)

UNKNOWN_BOOK_TITLE = "Unknown Book"
CLAMP_ATTEMPTS = 5


# ── Low-level counter operations ────────────────────────────────────

async def _take_stock(db: AsyncSession, book_id: int, quantity: int) -> bool:
    """Conditional decrement. False when fewer than `quantity` copies are left."""
    res = await db.execute(
        update(Book)
        .where(Book.id == book_id, Book.stock >= quantity)
        .values(stock=Book.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    return getattr(res, "rowcount", 0) == 1


async def _return_stock(db: AsyncSession, book_id: int, quantity: int) -> None:
    await db.execute(
        update(Book)
        .where(Book.id == book_id)
        .values(stock=Book.stock + quantity)
        .execution_options(synchronize_session=False)
    )


async def _take_remaining(db: AsyncSession, book_id: int, wanted: int) -> Optional[int]:
    """
    Take up to `wanted` copies, never going below zero.

    Each attempt is conditional on the stock value just read, so a release
    committed in between makes the attempt miss and retry instead of being
    overwritten. Returns the number of copies actually taken, or None when
    the book no longer exists.
    """
    for _ in range(CLAMP_ATTEMPTS):
        available = await current_stock(db, book_id)
        if available is None:
            return None
        taken = min(available, wanted)
        res = await db.execute(
            update(Book)
            .where(Book.id == book_id, Book.stock == available)
            .values(stock=available - taken)
            .execution_options(synchronize_session=False)
        )
        if getattr(res, "rowcount", 0) == 1:
            return taken
    raise ConflictError(f"Stock for book #{book_id} kept changing; finalize again")


async def current_stock(db: AsyncSession, book_id: int) -> Optional[int]:
    return await db.scalar(select(Book.stock).where(Book.id == book_id))


async def resolve_book(db: AsyncSession, identifier) -> Optional[Book]:
    """Look a book up by numeric id first, then by slug."""
    key = str(identifier).strip()
    if key.isdigit():
        result = await db.execute(select(Book).where(Book.id == int(key)))
        book = result.scalar_one_or_none()
        if book:
            return book
    result = await db.execute(select(Book).where(Book.slug == key))
    return result.scalar_one_or_none()


def _record(db: AsyncSession, book_id: int, delta: int, reason: str, reference: str) -> None:
    db.add(StockMovement(book_id=book_id, delta=delta, reason=reason, reference=reference))


async def _shortfall(db: AsyncSession, identifier: str, quantity: int, book: Optional[Book]) -> dict:
    if book is None:
        return {
            "itemId": identifier,
            "requestedQuantity": quantity,
            "availableStock": 0,
            "title": UNKNOWN_BOOK_TITLE,
            "error": "Book not found",
        }
    available = await current_stock(db, book.id)
    return {
        "itemId": identifier,
        "requestedQuantity": quantity,
        "availableStock": available or 0,
        "title": book.title,
    }


def _normalize_items(items: list) -> list[tuple[str, int]]:
    if not items:
        raise ValidationError("Items array is required", field="items")
    normalized = []
    for item in items:
        identifier = item.get("id") if isinstance(item, dict) else None
        if identifier is None or not str(identifier).strip():
            raise ValidationError("Every item needs an id", field="id")
        quantity = validate_quantity(item.get("requestedQuantity"))
        normalized.append((str(identifier).strip(), quantity))
    return normalized


# ════════════════════════════════════════════════════════════════════
# Validation + reservation
# ════════════════════════════════════════════════════════════════════

async def validate_and_reserve(
    db: AsyncSession,
    items: list[dict],
    user_id: Optional[int] = None,
) -> dict:
    """
    Check and take stock for a whole cart in one go.

    Args:
        db: Database session (caller commits)
        items: [{"id": book id or slug, "requestedQuantity": int}, ...]
        user_id: owner of the resulting reservation

    Returns:
        {"valid": True, "reservationId": str, "message": str}
        or {"valid": False, "errors": [...]} with stock left untouched.

    Raises:
        ValidationError: empty list, blank id or non-positive quantity
    """
    normalized = _normalize_items(items)

    failed: list[tuple[str, int, Optional[Book]]] = []
    applied: list[tuple[int, int]] = []

    # Every item is attempted so the caller sees all shortfalls at once
    for identifier, quantity in normalized:
        book = await resolve_book(db, identifier)
        if book is not None and await _take_stock(db, book.id, quantity):
            applied.append((book.id, quantity))
            continue
        failed.append((identifier, quantity, book))

    if failed:
        # Compensate inside the same transaction: net stock change is zero
        for book_id, quantity in applied:
            await _return_stock(db, book_id, quantity)
        # Read after compensation so a book listed twice reports its real stock
        errors = [await _shortfall(db, identifier, quantity, book) for identifier, quantity, book in failed]
        logger.warning(
            f"⚠️  Stock validation failed for {len(errors)}/{len(normalized)} item(s): "
            f"{[e['itemId'] for e in errors]}"
        )
        return {"valid": False, "errors": errors}

    reservation = StockReservation(
        id=uuid.uuid4().hex,
        user_id=user_id,
        items=json.dumps([{"bookId": b, "quantity": q} for b, q in applied]),
        status=ReservationStatus.HELD.value,
    )
    db.add(reservation)
    for book_id, quantity in applied:
        _record(db, book_id, -quantity, "reservation", reservation.id)
    await db.flush()

    logger.info(f"✅ Stock reserved: {reservation.id} ({len(applied)} item(s), user={user_id})")
    return {
        "valid": True,
        "reservationId": reservation.id,
        "message": "Stock validated and reserved",
    }


def reservation_quantities(reservation: StockReservation) -> dict[int, int]:
    """{book_id: total quantity} held by a reservation."""
    totals: dict[int, int] = {}
    for entry in json.loads(reservation.items or "[]"):
        totals[int(entry["bookId"])] = totals.get(int(entry["bookId"]), 0) + int(entry["quantity"])
    return totals


async def _get_owned_reservation(db: AsyncSession, reservation_id: str, user_id: Optional[int]) -> StockReservation:
    reservation = await db.get(StockReservation, reservation_id)
    if reservation is None:
        raise NotFoundError("Reservation", reservation_id)
    if reservation.user_id is not None and reservation.user_id != user_id:
        raise PermissionDeniedError("Reservation belongs to another user")
    return reservation


async def check_reservation(
    db: AsyncSession,
    reservation_id: str,
    user_id: Optional[int],
    order_items: dict[int, int],
) -> StockReservation:
    """
    Verify a reservation can back an order (held, owned, same books and quantities).

    Raises:
        NotFoundError, PermissionDeniedError, ConflictError, ValidationError
    """
    reservation = await _get_owned_reservation(db, reservation_id, user_id)
    if reservation.status != ReservationStatus.HELD.value:
        raise ConflictError(f"Reservation {reservation_id} is already {reservation.status}")
    if reservation_quantities(reservation) != order_items:
        raise ValidationError(
            "Reservation does not match the order items",
            field="reservationId",
        )
    return reservation


async def find_held_reservation(
    db: AsyncSession,
    user_id: int,
    order_items: dict[int, int],
) -> Optional[StockReservation]:
    """The user's newest held reservation covering exactly these books and quantities."""
    result = await db.execute(
        select(StockReservation)
        .where(
            StockReservation.user_id == user_id,
            StockReservation.status == ReservationStatus.HELD.value,
        )
        .order_by(StockReservation.created_at.desc(), StockReservation.id)
    )
    for reservation in result.scalars():
        if reservation_quantities(reservation) == order_items:
            return reservation
    return None


async def consume_reservation(
    db: AsyncSession,
    reservation_id: str,
    user_id: Optional[int],
    order_items: dict[int, int],
    *,
    order_id: int,
) -> StockReservation:
    """Bind a held reservation to an order. The stock it holds becomes the order's stock."""
    reservation = await check_reservation(db, reservation_id, user_id, order_items)

    res = await db.execute(
        update(StockReservation)
        .where(
            StockReservation.id == reservation_id,
            StockReservation.status == ReservationStatus.HELD.value,
        )
        .values(status=ReservationStatus.CONSUMED.value, order_id=order_id)
        .execution_options(synchronize_session=False)
    )
    if getattr(res, "rowcount", 0) != 1:
        raise ConflictError(f"Reservation {reservation_id} was consumed concurrently")

    await db.refresh(reservation)
    logger.info(f"Reservation {reservation_id} consumed by order #{order_id}")
    return reservation


async def release_reservation(
    db: AsyncSession,
    reservation_id: str,
    user_id: Optional[int],
) -> dict:
    """
    Give a held reservation's stock back (customer abandoned the checkout).

    Raises:
        NotFoundError: unknown reservation
        PermissionDeniedError: reservation owned by someone else
        ConflictError: reservation already consumed or released
    """
    reservation = await _get_owned_reservation(db, reservation_id, user_id)

    res = await db.execute(
        update(StockReservation)
        .where(
            StockReservation.id == reservation_id,
            StockReservation.status == ReservationStatus.HELD.value,
        )
        .values(status=ReservationStatus.RELEASED.value)
        .execution_options(synchronize_session=False)
    )
    if getattr(res, "rowcount", 0) != 1:
        await db.refresh(reservation)
        raise ConflictError(f"Reservation {reservation_id} is already {reservation.status}")

    released = []
    for book_id, quantity in reservation_quantities(reservation).items():
        await _return_stock(db, book_id, quantity)
        _record(db, book_id, quantity, "reservation_release", reservation_id)
        released.append({"bookId": book_id, "quantity": quantity})
    await db.flush()
    await db.refresh(reservation)

    logger.info(f"Reservation {reservation_id} released ({len(released)} item(s))")
    return {"reservationId": reservation_id, "released": released}


# ════════════════════════════════════════════════════════════════════
# Finalize-time decrement
# ════════════════════════════════════════════════════════════════════

async def decrement_for_order(db: AsyncSession, order: Order) -> Optional[str]:
    """
    Take stock for a paid order, at most once per order.

    The Order.stock_decremented false→true flip is the gate; a second call
    (replayed capture, concurrent reconciliation) is a no-op.

    Returns:
        An "oversold" warning when a book no longer had enough copies
        (its stock is clamped to 0), otherwise None.
    """
    res = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.stock_decremented.is_(False))
        .values(stock_decremented=True)
        .execution_options(synchronize_session=False)
    )
    if getattr(res, "rowcount", 0) != 1:
        logger.info(f"Order #{order.id}: stock already taken, skipping decrement")
        return None
    order.stock_decremented = True

    reference = str(order.id)
    oversold = []
    for item in order.items:
        if await _take_stock(db, item.book_id, item.quantity):
            _record(db, item.book_id, -item.quantity, "order_finalize", reference)
            continue

        taken = await _take_remaining(db, item.book_id, item.quantity)
        if taken is None:
            oversold.append(f"{item.title} (book #{item.book_id} no longer exists)")
            continue
        if taken:
            _record(db, item.book_id, -taken, "order_finalize", reference)
        if taken < item.quantity:
            oversold.append(f"{item.title} (wanted {item.quantity}, had {taken})")

    await db.flush()

    if oversold:
        warning = "Oversold: " + "; ".join(oversold)
        logger.warning(f"⚠️  Order #{order.id}: {warning}")
        return warning

    logger.info(f"Stock decremented for order #{order.id} ({len(order.items)} line(s))")
    return None
