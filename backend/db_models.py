"""
SQLAlchemy ORM models for the BookScape backend.

Tables:
    users               — customers, couriers and admins (owned by the identity provider)
    authors, genres     — catalog references (many-to-many with books)
    books               — catalog entries with the shared mutable stock counter
    stock_reservations  — stock taken by the validator, later bound to an order
    stock_movements     — append-only ledger of every stock change
    orders, order_items — checkout orders and their price/quantity snapshot
    cart_items          — server-side mirror of each customer's cart
    subscribers         — newsletter recipients
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey, Table,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


class User(Base):
    """Accounts known to the storefront. Created by the auth collaborator."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(254), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default="customer")  # "customer" | "courier" | "admin"
    created_at = Column(DateTime, default=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Catalog
# ════════════════════════════════════════════════════════════════════

book_authors = Table(
    "book_authors",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("books.id"), primary_key=True),
    Column("author_id", Integer, ForeignKey("authors.id"), primary_key=True),
)

book_genres = Table(
    "book_genres",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("books.id"), primary_key=True),
    Column("genre_id", Integer, ForeignKey("genres.id"), primary_key=True),
)


class Author(Base):
    __tablename__ = "authors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, index=True)

    books = relationship("Book", secondary=book_authors, back_populates="authors")


class Genre(Base):
    __tablename__ = "genres"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)

    books = relationship("Book", secondary=book_genres, back_populates="genres")


class Book(Base):
    """
    A catalog entry.

    `stock` is the only resource shared between concurrent checkouts. It is
    only ever changed through conditional UPDATE statements in stock_service.
    """
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(200), unique=True, nullable=True, index=True)  # secondary identifier
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0.0)
    stock = Column(Integer, nullable=False, default=0)
    is_on_sale = Column(Boolean, nullable=False, default=False)
    sale_percentage = Column(Float, nullable=False, default=0.0)
    sale_price = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    authors = relationship("Author", secondary=book_authors, back_populates="books", lazy="selectin")
    genres = relationship("Genre", secondary=book_genres, back_populates="books", lazy="selectin")

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_books_stock_non_negative"),
    )

    @property
    def effective_price(self) -> float:
        """Unit price charged at checkout (sale price wins when a sale is active)."""
        if self.is_on_sale and (self.sale_price or 0) > 0:
            return self.sale_price
        return self.price


# ════════════════════════════════════════════════════════════════════
# Stock bookkeeping
# ════════════════════════════════════════════════════════════════════

class StockReservation(Base):
    """
    Stock taken by a successful validation.

    Lifecycle: held → consumed (bound to an order at checkout creation)
                    → released (returned to stock by the customer)
    """
    __tablename__ = "stock_reservations"

    id = Column(String(32), primary_key=True)  # uuid4 hex
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    items = Column(Text, nullable=False)  # JSON list of {"bookId": int, "quantity": int}
    status = Column(String(20), nullable=False, default="held", index=True)  # held | consumed | released
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StockMovement(Base):
    """Append-only ledger: one row per stock change, with why it happened."""
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)  # negative = taken, positive = returned
    reason = Column(String(30), nullable=False)  # reservation | reservation_release | order_finalize
    reference = Column(String(64), nullable=True, index=True)  # reservation id or order id
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


# ════════════════════════════════════════════════════════════════════
# Orders
# ════════════════════════════════════════════════════════════════════

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    paypal_order_id = Column(String(64), unique=True, nullable=False, index=True)

    status = Column(String(30), nullable=False, default="pending", index=True)
    # pending | processing | completed | cancelled | needs_reconciliation
    payment_status = Column(String(20), nullable=False, default="pending", index=True)
    # pending | completed | unknown
    delivery_status = Column(String(20), nullable=False, default="pending", index=True)
    # pending | processing | delivered | cancelled

    total_amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="USD")

    # Denormalized owner projection, fixed at creation
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    user_email = Column(String(254), nullable=True, index=True)
    user_name = Column(String(200), nullable=True)

    courier_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    reservation_id = Column(String(32), nullable=True)

    # Idempotency flag: stock for this order has been taken exactly once
    stock_decremented = Column(Boolean, nullable=False, default=False)

    gateway_response = Column(Text, nullable=True)  # JSON payload of the last capture/details call
    capture_error = Column(Text, nullable=True)
    reconciliation_warning = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    captured_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    __table_args__ = (
        # For customer order history: filter by user_email, order by created_at DESC
        Index("ix_orders_email_created", "user_email", "created_at"),
        # For courier worklists
        Index("ix_orders_courier_delivery", "courier_id", "delivery_status"),
    )


class OrderItem(Base):
    """Line item snapshot taken when the order is created (never re-priced)."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    title = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)

    order = relationship("Order", back_populates="items")


# ════════════════════════════════════════════════════════════════════
# Cart & Newsletter
# ════════════════════════════════════════════════════════════════════

class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_cart_user_book"),
    )


class Subscriber(Base):
    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(254), unique=True, nullable=False, index=True)
    unsubscribe_token = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
