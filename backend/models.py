"""
Pydantic models for request validation.

Field names follow the storefront's camelCase JSON; every model also accepts
the Python names.
"""
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ApiBase(BaseModel):
    """Shared base — allows construction by Python name or alias."""
    model_config = ConfigDict(populate_by_name=True)


BookRef = Union[int, str]


# ── Stock Models ────────────────────────────────────────────────────

class StockItem(ApiBase):
    id: BookRef = Field(..., description="Book id or slug")
    requested_quantity: int = Field(..., alias="requestedQuantity", gt=0)


class StockValidateRequest(ApiBase):
    items: List[StockItem] = Field(..., min_length=1)


class StockReleaseRequest(ApiBase):
    reservation_id: str = Field(..., alias="reservationId", min_length=1, max_length=32)


# ── Checkout Models ─────────────────────────────────────────────────

class CheckoutItem(ApiBase):
    id: BookRef = Field(..., description="Book id or slug")
    quantity: int = Field(..., gt=0)


class CreateOrderRequest(ApiBase):
    items: List[CheckoutItem] = Field(..., min_length=1)
    total_amount: float = Field(
        ...,
        alias="totalAmount",
        gt=0,
        description="Total shown to the buyer; must match the server re-price",
    )
    reservation_id: Optional[str] = Field(
        default=None,
        alias="reservationId",
        max_length=32,
        description="Held reservation from /stock/validate",
    )


class CaptureRequest(ApiBase):
    order_id: str = Field(..., alias="orderId", min_length=1, max_length=64, description="PayPal order token")


class MarkSuccessRequest(ApiBase):
    order_id: Optional[Union[int, str]] = Field(default=None, alias="orderId")
    paypal_order_id: Optional[str] = Field(default=None, alias="paypalOrderId", max_length=64)


# ── Order Admin / Courier Models ────────────────────────────────────

class AdminOrderUpdateRequest(ApiBase):
    status: Optional[str] = None
    delivery_status: Optional[str] = Field(default=None, alias="deliveryStatus")
    courier_id: Optional[int] = Field(default=None, alias="courierId")

    def changes(self) -> dict:
        """Only the fields the caller actually sent, keyed by their JSON names."""
        return self.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)


class AssignCourierRequest(ApiBase):
    courier_id: int = Field(..., alias="courierId", gt=0)


class ResolveOrderRequest(ApiBase):
    action: Literal["mark_paid", "cancel"]
    note: Optional[str] = Field(default=None, max_length=500)


class DeliveryUpdateRequest(ApiBase):
    delivery_status: Literal["delivered", "cancelled"] = Field(..., alias="deliveryStatus")


# ── Cart Models ─────────────────────────────────────────────────────

class CartLine(ApiBase):
    id: BookRef = Field(..., description="Book id or slug")
    quantity: int = Field(..., gt=0)


class CartSyncRequest(ApiBase):
    items: List[CartLine] = Field(default_factory=list)


class CartRemoveRequest(ApiBase):
    book_ids: List[int] = Field(..., alias="bookIds", min_length=1)


# ── Newsletter Models ───────────────────────────────────────────────

class SubscribeRequest(ApiBase):
    email: str = Field(..., min_length=3, max_length=254)


class NewsletterSendRequest(ApiBase):
    subject: str = Field(..., min_length=1, max_length=300)
    html_content: str = Field(..., alias="htmlContent", min_length=1)
