"""
Domain enums for order, payment and delivery state.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NEEDS_RECONCILIATION = "needs_reconciliation"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    UNKNOWN = "unknown"  # capture outcome could not be confirmed


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    COURIER = "courier"
    ADMIN = "admin"


class ReservationStatus(str, Enum):
    HELD = "held"
    CONSUMED = "consumed"
    RELEASED = "released"


class ReconciliationOutcome(str, Enum):
    ALREADY_PROCESSED = "already_processed"
    ALREADY_CAPTURED = "already_captured"
    CAPTURED = "captured"
    RECOVERED = "recovered"
    COMPLETED_WITH_WARNING = "completed_with_warning"
    PENDING_REVIEW = "pending_review"


# Delivery transitions: current → allowed next states
DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.PROCESSING, DeliveryStatus.CANCELLED},
    DeliveryStatus.PROCESSING: {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED},
    DeliveryStatus.DELIVERED: set(),
    DeliveryStatus.CANCELLED: set(),
}

# Orders in these states are final; reconciliation never touches them again
FINALIZED_ORDER_STATUSES = {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value}
