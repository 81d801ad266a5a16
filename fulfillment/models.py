import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from fulfillment import config
from fulfillment.database import Base


def utcnow() -> datetime:
    # Naive UTC, stored the same way on every backend
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


DEFAULT_VARIANT_ID = "default"


class OrderStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PENDING_INVENTORY = "pending_inventory"


class StockStatus(enum.Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class StockMutationReason(enum.Enum):
    SALE = "sale"
    RESTOCK = "restock"
    MANUAL_ADJUSTMENT = "manual-adjustment"
    REFUND = "refund"


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    low_stock_threshold = Column(Integer, nullable=False, default=config.LOW_STOCK_THRESHOLD)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ProductVariant(Base):
    """One independent stock counter. Products without variants own a single `default` one."""

    __tablename__ = "product_variants"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_product_variants_stock_non_negative"),)

    product_id = Column(String, ForeignKey("products.id"), primary_key=True)
    variant_id = Column(String, primary_key=True, default=DEFAULT_VARIANT_ID)
    position = Column(Integer, nullable=False, default=0)
    label = Column(String)
    stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    product = relationship("Product", back_populates="variants")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False)
    name = Column(String)
    applied_coupon = Column(String)

    cart_items = relationship("CartItem", cascade="all, delete-orphan", lazy="selectin")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    product_id = Column(String, index=True, nullable=False)
    variant_id = Column(String)
    quantity = Column(Integer, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True, default=new_id)
    order_number = Column(String, unique=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    email = Column(String, nullable=False)
    subtotal = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    shipping = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False)
    # At most one order per checkout session
    checkout_session_id = Column(String, unique=True, nullable=False)
    payment_intent_id = Column(String, index=True)
    coupon_code = Column(String)
    payment_event_id = Column(String)
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    inventory_issues = Column(JSON)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", cascade="all, delete-orphan", lazy="selectin")
    status_history = relationship(
        "OrderStatusHistory",
        order_by="OrderStatusHistory.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String, nullable=False)
    variant_id = Column(String)
    variant_label = Column(String)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    from_status = Column(Enum(OrderStatus), nullable=False)
    to_status = Column(Enum(OrderStatus), nullable=False)
    actor = Column(String)
    reason = Column(Text)
    timestamp = Column(DateTime, default=utcnow, nullable=False)


class PaymentEvent(Base):
    """Idempotency anchor: one row per externally delivered event id."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, unique=True, nullable=False)
    event_type = Column(String, nullable=False)
    checkout_session_id = Column(String, index=True)
    payload = Column(JSON)
    raw_body = Column(Text)
    processed = Column(Boolean, nullable=False, default=False)
    retry_count = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    retryable = Column(Boolean, nullable=False, default=True)
    last_error = Column(Text)
    order_id = Column(String, ForeignKey("orders.id"))
    received_at = Column(DateTime, default=utcnow, nullable=False)
    last_attempt_at = Column(DateTime)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class StockMutation(Base):
    """Append-only ledger entry written alongside every counter change."""

    __tablename__ = "stock_mutations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, nullable=False)
    delta = Column(Integer, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    reason = Column(Enum(StockMutationReason), nullable=False)
    actor = Column(String)
    order_id = Column(String)
    payment_event_id = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class OrderSequence(Base):
    """Per-day counter behind order numbers; advanced with a conditional update, never read-then-written."""

    __tablename__ = "order_sequences"

    day = Column(String(8), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
