"""
Input validation utilities for the BookScape backend.

Presence/shape checks shared by services. Raise domain ValidationError (400).
"""
import math
import re

from domain.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_email(email: str) -> str:
    """
    Validate and normalize an email address (trimmed, lower-cased).

    Raises:
        ValidationError if the address is missing or malformed
    """
    if not email or not isinstance(email, str):
        raise ValidationError("Email is required", field="email")
    normalized = email.strip().lower()
    if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
        raise ValidationError(f"Invalid email address: {email[:40]}", field="email")
    return normalized


def validate_quantity(quantity, field: str = "requestedQuantity") -> int:
    """A purchase quantity must be a positive integer (bools are rejected)."""
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be an integer", field=field)
    if quantity <= 0:
        raise ValidationError(f"Quantity must be positive, got {quantity}", field=field)
    return quantity


def validate_amount(amount, field: str = "totalAmount") -> float:
    """A money amount must be a finite number > 0."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Amount must be a number", field=field)
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}", field=field)
    return float(amount)


def parse_order_id(order_id) -> int:
    """Internal order ids are integers; accept numeric strings from JSON bodies."""
    try:
        value = int(str(order_id).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid order ID: {order_id}", field="orderId")
    if value <= 0:
        raise ValidationError(f"Invalid order ID: {order_id}", field="orderId")
    return value
