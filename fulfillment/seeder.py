import asyncio

import structlog
from sqlalchemy import select

from fulfillment.database import build_engine, build_session_factory, init_db, transaction
from fulfillment.models import CartItem, Product, ProductVariant, User
from fulfillment.utils.logging import configure_logging

logger = structlog.get_logger(__name__)


async def seed(session_factory):
    async with transaction(session_factory) as session:
        # Check if the catalog is already seeded
        if (await session.execute(select(Product.id).where(Product.id == "product-A"))).first():
            logger.info("seeder.already_seeded")
            return

        session.add_all(
            [
                Product(id="product-A", name="Canvas Tote", price=25.0, variants=[ProductVariant(stock=10)]),
                Product(id="product-B", name="Enamel Mug", price=12.0, variants=[ProductVariant(stock=5)]),
                # Out of stock, for exercising the pending_inventory path
                Product(id="product-C", name="Poster", price=8.0, variants=[ProductVariant(stock=0)]),
                Product(
                    id="product-D",
                    name="Hoodie",
                    price=55.0,
                    variants=[
                        ProductVariant(variant_id="var-1", label="M", position=0, stock=8),
                        ProductVariant(variant_id="var-2", label="L", position=1, stock=12),
                    ],
                ),
                User(
                    id="user-1",
                    email="customer@example.com",
                    name="Test Customer",
                    cart_items=[CartItem(product_id="product-A", quantity=2)],
                ),
            ]
        )
    logger.info("seeder.done")


async def main():
    configure_logging()
    engine = build_engine()
    await init_db(engine)
    await seed(build_session_factory(engine))
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
