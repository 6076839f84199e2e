"""
Cart Service — server-side mirror of each customer's cart.

The browser keeps its own copy; this one survives device switches and is
cleared line by line when an order containing those books is finalized.
"""
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Book, CartItem
from domain.errors import NotFoundError, ValidationError
from services.stock_service import resolve_book
from utils.validators import validate_quantity

logger = logging.getLogger(__name__)


async def get_cart(db: AsyncSession, user_id: int) -> list[dict]:
    result = await db.execute(
        select(CartItem, Book)
        .join(Book, Book.id == CartItem.book_id)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.id)
    )
    return [
        {
            "bookId": book.id,
            "slug": book.slug,
            "title": book.title,
            "quantity": item.quantity,
            "unitPrice": book.effective_price,
            "inStock": book.stock,
        }
        for item, book in result.all()
    ]


async def sync_cart(db: AsyncSession, user_id: int, items: list[dict]) -> list[dict]:
    """
    Replace the user's cart with `items` ([{"id": book id or slug, "quantity": int}]).

    Repeated books are merged. Unknown books raise NotFoundError and leave the
    stored cart unchanged.
    """
    merged: dict[int, int] = {}
    for item in items:
        identifier = item.get("id")
        if identifier is None or not str(identifier).strip():
            raise ValidationError("Every item needs an id", field="id")
        quantity = validate_quantity(item.get("quantity"), field="quantity")
        book = await resolve_book(db, identifier)
        if book is None:
            raise NotFoundError("Book", str(identifier))
        merged[book.id] = merged.get(book.id, 0) + quantity

    await db.execute(delete(CartItem).where(CartItem.user_id == user_id))
    for book_id, quantity in merged.items():
        db.add(CartItem(user_id=user_id, book_id=book_id, quantity=quantity))
    await db.flush()

    logger.info(f"Cart synced for user {user_id}: {len(merged)} line(s)")
    return await get_cart(db, user_id)


async def remove_items(db: AsyncSession, user_id: int, book_ids: list[int]) -> list[int]:
    """Drop the given books from the cart. Returns the ids that were actually there."""
    if not book_ids:
        return []
    result = await db.execute(
        select(CartItem.book_id).where(
            CartItem.user_id == user_id,
            CartItem.book_id.in_(book_ids),
        )
    )
    present = sorted(result.scalars().all())
    if present:
        await db.execute(
            delete(CartItem).where(
                CartItem.user_id == user_id,
                CartItem.book_id.in_(present),
            )
        )
        logger.info(f"Removed {len(present)} purchased book(s) from cart of user {user_id}")
    return present
