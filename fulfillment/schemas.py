from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.models import OrderStatus, StockMutationReason, StockStatus


class StockItem(BaseModel):
    product_id: str = Field(..., examples=["product-1"])
    quantity: int = Field(..., gt=0, examples=[2])
    variant_id: Optional[str] = None


class ItemAvailability(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    requested_quantity: int
    available_stock: int
    is_available: bool


class StockLevel(BaseModel):
    """Counter state after a mutation, or as currently stored."""

    product_id: str
    variant_id: str
    previous_quantity: Optional[int] = None
    stock: int
    total_stock: int
    stock_status: StockStatus


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    variant_id: Optional[str] = None
    actor: str = "admin"
    reason: Literal["restock", "refund", "manual-adjustment"] = "restock"


class StockMutationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: str
    variant_id: str
    delta: int
    previous_quantity: int
    new_quantity: int
    reason: StockMutationReason
    actor: Optional[str] = None
    order_id: Optional[str] = None
    payment_event_id: Optional[str] = None
    created_at: datetime


class ProcessingResult(BaseModel):
    success: bool
    order_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class RetryResult(BaseModel):
    processed: int
    failed: int


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    actor: str = "admin"
    reason: Optional[str] = None


class BulkStatusUpdateRequest(BaseModel):
    order_ids: List[str]
    status: OrderStatus
    actor: str = "admin"
    reason: Optional[str] = None


class BulkUpdateResult(BaseModel):
    success: bool
    matched_count: int
    modified_count: int
    message: str


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    variant_id: Optional[str] = None
    variant_label: Optional[str] = None
    quantity: int
    price: float


class StatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: OrderStatus
    to_status: OrderStatus
    actor: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    user_id: str
    email: str
    items: List[OrderItemRead]
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total_amount: float
    checkout_session_id: str
    payment_intent_id: Optional[str] = None
    coupon_code: Optional[str] = None
    status: OrderStatus
    inventory_issues: Optional[List[str]] = None
    status_history: List[StatusHistoryRead]
    created_at: datetime
    updated_at: datetime


class StockUpdateMessage(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    available_stock: int
    total_stock: int
    stock_status: StockStatus


class CartValidationMessage(BaseModel):
    user_id: str
    product_id: str
    variant_id: Optional[str] = None
    requested_quantity: int
    available_quantity: int
    action: Literal["reduce", "remove", "ok"]
