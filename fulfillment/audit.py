"""Append-only history of stock mutations and order status transitions.

Writers take the caller's session so each entry lands in the same
transaction as the change it describes. Readers open their own short
sessions and are used by reconciliation and support tooling.
"""

from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.errors import NotFoundError
from fulfillment.models import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    ProductVariant,
    StockMutation,
    StockMutationReason,
    utcnow,
)

logger = structlog.get_logger(__name__)


class AuditHistory:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def record_stock_mutation(
        session: AsyncSession,
        *,
        product_id: str,
        variant_id: str,
        delta: int,
        new_quantity: int,
        reason: StockMutationReason,
        actor: Optional[str],
        order_id: Optional[str] = None,
        payment_event_id: Optional[str] = None,
    ) -> StockMutation:
        record = StockMutation(
            product_id=product_id,
            variant_id=variant_id,
            delta=delta,
            previous_quantity=new_quantity - delta,
            new_quantity=new_quantity,
            reason=reason,
            actor=actor,
            order_id=order_id,
            payment_event_id=payment_event_id,
            created_at=utcnow(),
        )
        session.add(record)
        return record

    @staticmethod
    def record_status_change(
        session: AsyncSession,
        *,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        actor: Optional[str],
        reason: Optional[str] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            reason=reason,
            timestamp=utcnow(),
        )
        session.add(entry)
        return entry

    async def stock_history(self, product_id: str, variant_id: Optional[str] = None, limit: int = 100) -> List[StockMutation]:
        """Newest first."""
        query = select(StockMutation).where(StockMutation.product_id == product_id)
        if variant_id is not None:
            query = query.where(StockMutation.variant_id == variant_id)
        query = query.order_by(StockMutation.id.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def order_history(self, order_id: str) -> List[OrderStatusHistory]:
        async with self.session_factory() as session:
            if await session.get(Order, order_id) is None:
                raise NotFoundError("Order not found")
            result = await session.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.id)
            )
            return list(result.scalars().all())

    async def net_stock_delta(self, product_id: str, variant_id: Optional[str] = None) -> int:
        query = select(func.coalesce(func.sum(StockMutation.delta), 0)).where(StockMutation.product_id == product_id)
        if variant_id is not None:
            query = query.where(StockMutation.variant_id == variant_id)
        async with self.session_factory() as session:
            return int((await session.execute(query)).scalar_one())

    async def reconcile(self, product_id: str, variant_id: Optional[str], initial_stock: int) -> dict:
        """Compare the ledger against the live counter(s).

        The signed deltas recorded since `initial_stock` must add up to the
        difference between the initial and the current counter value.
        """
        query = select(func.coalesce(func.sum(ProductVariant.stock), 0)).where(ProductVariant.product_id == product_id)
        if variant_id is not None:
            query = query.where(ProductVariant.variant_id == variant_id)
        async with self.session_factory() as session:
            actual = int((await session.execute(query)).scalar_one())

        delta_sum = await self.net_stock_delta(product_id, variant_id)
        expected = initial_stock + delta_sum
        consistent = expected == actual
        if not consistent:
            logger.warning(
                "audit.reconcile.mismatch",
                product_id=product_id,
                variant_id=variant_id,
                expected=expected,
                actual=actual,
            )
        return {
            "expected": expected,
            "actual": actual,
            "delta_sum": delta_sum,
            "consistent": consistent,
        }
