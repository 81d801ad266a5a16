from unittest.mock import AsyncMock

import pytest

from fulfillment.database import build_engine, build_session_factory, drop_db, init_db, transaction
from fulfillment.main import build_services
from fulfillment.messaging import NotificationPublisher
from fulfillment.models import CartItem, Order, OrderStatus, OrderStatusHistory, Product, ProductVariant, User


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test; each session gets its own connection."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")
    await init_db(engine)
    yield engine
    await drop_db(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def mock_publisher():
    return AsyncMock(spec=NotificationPublisher)


@pytest.fixture
def services(session_factory, mock_publisher):
    return build_services(session_factory, mock_publisher)


@pytest.fixture
def seed_product(session_factory):
    async def _seed(product_id="prod-A", stock=10, variants=None, low_stock_threshold=5):
        if variants is None:
            variant_rows = [ProductVariant(stock=stock)]
        else:
            variant_rows = [
                ProductVariant(variant_id=variant_id, position=position, stock=variant_stock)
                for position, (variant_id, variant_stock) in enumerate(variants.items())
            ]
        async with transaction(session_factory) as session:
            session.add(
                Product(
                    id=product_id,
                    name=f"Product {product_id}",
                    price=10.0,
                    low_stock_threshold=low_stock_threshold,
                    variants=variant_rows,
                )
            )
        return product_id

    return _seed


@pytest.fixture
def seed_user(session_factory):
    async def _seed(user_id="user-1", cart=None):
        async with transaction(session_factory) as session:
            session.add(
                User(
                    id=user_id,
                    email=f"{user_id}@example.com",
                    name=user_id,
                    applied_coupon="WELCOME10",
                    cart_items=[CartItem(**item) for item in (cart or [])],
                )
            )
        return user_id

    return _seed


@pytest.fixture
def seed_order(session_factory):
    """Insert an order directly in the given status, with its creation history entry."""
    counter = {"n": 0}

    async def _seed(status=OrderStatus.PENDING, user_id="user-orders"):
        counter["n"] += 1
        n = counter["n"]
        order_id = f"order-{n}"
        async with transaction(session_factory) as session:
            if await session.get(User, user_id) is None:
                session.add(User(id=user_id, email=f"{user_id}@example.com"))
            session.add(
                Order(
                    id=order_id,
                    order_number=f"ORD-TEST-{n:04d}",
                    user_id=user_id,
                    email=f"{user_id}@example.com",
                    total_amount=20.0,
                    checkout_session_id=f"cs_seed_{n}",
                    status=status,
                    status_history=[
                        OrderStatusHistory(
                            from_status=OrderStatus.PENDING,
                            to_status=status,
                            actor="seed",
                            reason="seeded",
                        )
                    ],
                )
            )
        return order_id

    return _seed
