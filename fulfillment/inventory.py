"""Stock Ledger: atomic conditional mutations of per-variant stock counters.

Every mutation is one ``UPDATE ... WHERE <precondition> RETURNING`` statement,
so the check and the write are evaluated together by the database and no
lock is ever taken in-process. A product without explicit variants owns a
single ``default`` variant; calls that omit ``variant_id`` target the
product's first variant by position.
"""

import enum
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Union

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from fulfillment.audit import AuditHistory
from fulfillment.config import MAX_INVENTORY
from fulfillment.database import transaction
from fulfillment.errors import NotFoundError, ValidationError
from fulfillment.models import Product, ProductVariant, StockMutationReason, StockStatus, utcnow
from fulfillment.schemas import ItemAvailability, StockItem, StockLevel, StockUpdateMessage

logger = structlog.get_logger(__name__)


class Insufficient(enum.Enum):
    INSUFFICIENT = "insufficient"


# Returned by try_deduct when the counter cannot cover the request
INSUFFICIENT = Insufficient.INSUFFICIENT

DeductResult = Union[StockLevel, Insufficient]


def calculate_stock_status(available_stock: int, threshold: int) -> StockStatus:
    if available_stock <= 0:
        return StockStatus.OUT_OF_STOCK
    if available_stock <= threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def _require_positive(quantity: int):
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError(f"Quantity must be a positive integer, got {quantity!r}")


def _counter_filter(product_id: str, variant_id: Optional[str]):
    if variant_id is not None:
        return (ProductVariant.product_id == product_id, ProductVariant.variant_id == variant_id)
    first = aliased(ProductVariant)
    first_position = select(func.min(first.position)).where(first.product_id == product_id).scalar_subquery()
    return (ProductVariant.product_id == product_id, ProductVariant.position == first_position)


class StockLedger:
    def __init__(self, session_factory: async_sessionmaker, audit: AuditHistory, publisher=None):
        self.session_factory = session_factory
        self.audit = audit
        self.publisher = publisher

    async def try_deduct(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
        *,
        actor: Optional[str] = None,
        reason: StockMutationReason = StockMutationReason.SALE,
        order_id: Optional[str] = None,
        payment_event_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> DeductResult:
        """Subtract ``quantity`` only if the counter holds at least that much.

        Returns the new StockLevel, or INSUFFICIENT when the precondition
        fails. Raises NotFoundError for an unknown product or variant.
        When ``session`` is given the mutation joins the caller's transaction
        and nothing is published; the caller owns commit and notification.
        """
        _require_positive(quantity)

        async def deduct(db: AsyncSession) -> DeductResult:
            stmt = (
                update(ProductVariant)
                .where(*_counter_filter(product_id, variant_id), ProductVariant.stock >= quantity)
                .values(stock=ProductVariant.stock - quantity, updated_at=utcnow())
                .returning(ProductVariant.variant_id, ProductVariant.stock)
                .execution_options(synchronize_session=False)
            )
            row = (await db.execute(stmt)).first()
            if row is None:
                await self._ensure_counter_exists(db, product_id, variant_id)
                logger.info(
                    "inventory.deduct.insufficient",
                    product_id=product_id,
                    variant_id=variant_id,
                    quantity=quantity,
                )
                return INSUFFICIENT

            self.audit.record_stock_mutation(
                db,
                product_id=product_id,
                variant_id=row.variant_id,
                delta=-quantity,
                new_quantity=row.stock,
                reason=reason,
                actor=actor,
                order_id=order_id,
                payment_event_id=payment_event_id,
            )
            return await self._stock_level(db, product_id, row.variant_id, row.stock, row.stock + quantity)

        result = await self._run(deduct, session)
        if result is not INSUFFICIENT:
            logger.info(
                "inventory.deduct.success",
                product_id=product_id,
                variant_id=result.variant_id,
                quantity=quantity,
                new_quantity=result.stock,
                reason=reason.value,
            )
            if session is None:
                await self.announce(result)
        return result

    async def restock(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
        *,
        actor: Optional[str] = None,
        reason: StockMutationReason = StockMutationReason.RESTOCK,
        order_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> StockLevel:
        """Add ``quantity`` to the counter. Raises NotFoundError for unknown targets."""
        _require_positive(quantity)

        async def add(db: AsyncSession) -> StockLevel:
            stmt = (
                update(ProductVariant)
                .where(*_counter_filter(product_id, variant_id), ProductVariant.stock <= MAX_INVENTORY - quantity)
                .values(stock=ProductVariant.stock + quantity, updated_at=utcnow())
                .returning(ProductVariant.variant_id, ProductVariant.stock)
                .execution_options(synchronize_session=False)
            )
            row = (await db.execute(stmt)).first()
            if row is None:
                await self._ensure_counter_exists(db, product_id, variant_id)
                raise ValidationError(f"Inventory limit exceeded. Maximum allowed: {MAX_INVENTORY}")

            self.audit.record_stock_mutation(
                db,
                product_id=product_id,
                variant_id=row.variant_id,
                delta=quantity,
                new_quantity=row.stock,
                reason=reason,
                actor=actor,
                order_id=order_id,
            )
            return await self._stock_level(db, product_id, row.variant_id, row.stock, row.stock - quantity)

        result = await self._run(add, session)
        logger.info(
            "inventory.restock.success",
            product_id=product_id,
            variant_id=result.variant_id,
            quantity=quantity,
            new_quantity=result.stock,
            reason=reason.value,
        )
        if session is None:
            await self.announce(result)
        return result

    async def adjust(
        self,
        product_id: str,
        delta: int,
        variant_id: Optional[str] = None,
        *,
        actor: Optional[str] = None,
        reason: StockMutationReason = StockMutationReason.MANUAL_ADJUSTMENT,
    ) -> StockLevel:
        """Signed manual correction. A negative delta that cannot be covered is rejected."""
        if delta == 0:
            raise ValidationError("Adjustment must be non-zero")
        if delta > 0:
            return await self.restock(product_id, delta, variant_id, actor=actor, reason=reason)

        result = await self.try_deduct(product_id, -delta, variant_id, actor=actor, reason=reason)
        if result is INSUFFICIENT:
            raise ValidationError(f"Insufficient inventory. Requested adjustment: {delta}")
        return result

    async def check_availability(
        self,
        items: Iterable[StockItem],
        session: Optional[AsyncSession] = None,
    ) -> List[ItemAvailability]:
        """Read-only batch check.

        Items without a variant are checked against the product's stock
        summed over all its variants. Lines that target the same counter
        are checked against their cumulative demand. Unknown products report
        zero availability.
        """
        items = list(items)
        if not items:
            return []

        product_ids = {item.product_id for item in items}
        query = select(ProductVariant.product_id, ProductVariant.variant_id, ProductVariant.stock).where(
            ProductVariant.product_id.in_(product_ids)
        )
        if session is not None:
            rows = (await session.execute(query)).all()
        else:
            async with self.session_factory() as own_session:
                rows = (await own_session.execute(query)).all()

        per_variant = {(row.product_id, row.variant_id): row.stock for row in rows}
        per_product = defaultdict(int)
        for row in rows:
            per_product[row.product_id] += row.stock

        demanded = defaultdict(int)
        results = []
        for item in items:
            key = (item.product_id, item.variant_id)
            if item.variant_id is not None:
                available = per_variant.get(key, 0)
            else:
                available = per_product.get(item.product_id, 0)
            demanded[key] += item.quantity
            results.append(
                ItemAvailability(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    requested_quantity=item.quantity,
                    available_stock=available,
                    is_available=demanded[key] <= available,
                )
            )
        return results

    async def default_variants(self, product_ids: Iterable[str], session: AsyncSession) -> Dict[str, str]:
        """Map each known product to its first variant, the counter a variant-less deduction hits."""
        rows = await session.execute(
            select(ProductVariant.product_id, ProductVariant.variant_id)
            .where(ProductVariant.product_id.in_(set(product_ids)))
            .order_by(ProductVariant.product_id, ProductVariant.position)
        )
        defaults = {}
        for row in rows:
            defaults.setdefault(row.product_id, row.variant_id)
        return defaults

    async def get_stock_level(self, product_id: str, variant_id: Optional[str] = None) -> StockLevel:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(ProductVariant.variant_id, ProductVariant.stock).where(*_counter_filter(product_id, variant_id))
                )
            ).first()
            if row is None:
                await self._ensure_counter_exists(session, product_id, variant_id)
            return await self._stock_level(session, product_id, row.variant_id, row.stock)

    async def announce(self, level: StockLevel):
        """Publish a stock-level update; never raises."""
        if self.publisher is None:
            return
        try:
            await self.publisher.publish_stock_update(
                StockUpdateMessage(
                    product_id=level.product_id,
                    variant_id=level.variant_id,
                    available_stock=level.stock,
                    total_stock=level.total_stock,
                    stock_status=level.stock_status,
                )
            )
        except Exception as e:
            logger.error("inventory.broadcast.error", product_id=level.product_id, error=str(e))

    async def _run(self, operation, session: Optional[AsyncSession]):
        if session is not None:
            return await operation(session)

        # A lock timeout rolls the attempt back entirely, so it is safe to repeat
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.05, max=1),
            reraise=True,
        ):
            with attempt:
                async with transaction(self.session_factory) as own_session:
                    return await operation(own_session)

    async def _ensure_counter_exists(self, session: AsyncSession, product_id: str, variant_id: Optional[str]):
        product_found = (await session.execute(select(Product.id).where(Product.id == product_id))).first()
        if product_found is None:
            raise NotFoundError("Product not found")
        query = select(ProductVariant.variant_id).where(ProductVariant.product_id == product_id)
        if variant_id is not None:
            query = query.where(ProductVariant.variant_id == variant_id)
        if (await session.execute(query)).first() is None:
            raise NotFoundError("Variant not found")

    async def _stock_level(
        self,
        session: AsyncSession,
        product_id: str,
        variant_id: str,
        stock: int,
        previous: Optional[int] = None,
    ) -> StockLevel:
        total, threshold = (
            await session.execute(
                select(func.coalesce(func.sum(ProductVariant.stock), 0), Product.low_stock_threshold)
                .select_from(ProductVariant)
                .join(Product, Product.id == ProductVariant.product_id)
                .where(ProductVariant.product_id == product_id)
                .group_by(Product.low_stock_threshold)
            )
        ).one()
        return StockLevel(
            product_id=product_id,
            variant_id=variant_id,
            previous_quantity=previous,
            stock=stock,
            total_stock=int(total),
            stock_status=calculate_stock_status(stock, threshold),
        )
