"""Order status state machine.

    pending ──────────► completed ──► refunded (terminal)
       │  ▲
       ▼  │
    cancelled

``pending_inventory`` is assigned only by payment processing when stock was
short. As a source state it behaves like ``pending``; nothing may move an
order into it.
"""

from typing import Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from fulfillment.audit import AuditHistory
from fulfillment.database import transaction
from fulfillment.errors import (
    BulkTransitionError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from fulfillment.models import Order, OrderStatus, utcnow
from fulfillment.schemas import BulkUpdateResult

logger = structlog.get_logger(__name__)

_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.PENDING_INVENTORY: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: {OrderStatus.PENDING},
    OrderStatus.REFUNDED: set(),  # Terminal
}

MAX_TRANSITION_ATTEMPTS = 3


class _StaleStatus(Exception):
    """The order changed between the read and the conditional update."""


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in _VALID_TRANSITIONS.get(from_status, set())


def transition_error_message(from_status: OrderStatus, to_status: OrderStatus) -> str:
    prefix = f"Cannot transition from {from_status.value} to {to_status.value}"
    if from_status == to_status:
        return f"{prefix}: order is already {to_status.value}"
    if from_status == OrderStatus.REFUNDED:
        return f"{prefix}: refunded is a final state"
    if from_status == OrderStatus.CANCELLED and to_status == OrderStatus.REFUNDED:
        return f"{prefix}: the order was never paid"
    if from_status == OrderStatus.COMPLETED and to_status == OrderStatus.CANCELLED:
        return f"{prefix}: a completed order must be refunded instead"
    if to_status == OrderStatus.PENDING_INVENTORY:
        return f"{prefix}: pending_inventory is only set during payment processing"
    return prefix


def validate_transition(from_status: OrderStatus, to_status: OrderStatus):
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(transition_error_message(from_status, to_status), from_status, to_status)


class OrderStatusMachine:
    def __init__(self, session_factory: async_sessionmaker, audit: AuditHistory):
        self.session_factory = session_factory
        self.audit = audit

    async def get_order(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            return order

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor: Optional[str],
        reason: Optional[str] = None,
    ) -> Order:
        """Move one order to ``target`` and append a history entry.

        The update only applies while the stored status still equals the
        status this call read. If another writer got there first the order
        is re-read and the transition re-validated against the new status.
        """
        target = OrderStatus(target)
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_StaleStatus),
                stop=stop_after_attempt(MAX_TRANSITION_ATTEMPTS),
                wait=wait_exponential(multiplier=0.01, max=0.1),
                reraise=True,
            ):
                with attempt:
                    current = (await self.get_order(order_id)).status
                    validate_transition(current, target)
                    async with transaction(self.session_factory) as session:
                        if not await self._apply(session, order_id, current, target, actor, reason):
                            raise _StaleStatus()
        except _StaleStatus:
            logger.warning("order.status.conflict", order_id=order_id, target=target.value)
            raise ConcurrentModificationError("Order was modified concurrently, please retry")

        logger.info(
            "order.status.updated",
            order_id=order_id,
            from_status=current.value,
            to_status=target.value,
            actor=actor,
        )
        return await self.get_order(order_id)

    async def bulk_transition(
        self,
        order_ids: Iterable[str],
        target: OrderStatus,
        actor: Optional[str],
        reason: Optional[str] = None,
    ) -> BulkUpdateResult:
        """Apply the same transition to many orders, skipping the illegal ones."""
        target = OrderStatus(target)
        order_ids = list(dict.fromkeys(order_ids))
        if not order_ids:
            raise ValidationError("At least one order id is required")

        async with self.session_factory() as session:
            rows = (await session.execute(select(Order.id, Order.status).where(Order.id.in_(order_ids)))).all()
        if not rows:
            raise NotFoundError("No orders found")

        modified_count = 0
        skipped = []
        async with transaction(self.session_factory) as session:
            for row in rows:
                if not can_transition(row.status, target):
                    skipped.append(transition_error_message(row.status, target))
                    continue
                if await self._apply(session, row.id, row.status, target, actor, reason):
                    modified_count += 1
                else:
                    skipped.append(f"Order {row.id} was modified concurrently")

        if modified_count == 0:
            logger.warning("order.status.bulk.none_updated", target=target.value, matched=len(rows))
            raise BulkTransitionError("Failed to update orders")

        message = f"Successfully updated {modified_count} orders"
        if skipped:
            message += f" ({len(skipped)} orders were not updated - {skipped[0]})"

        logger.info(
            "order.status.bulk.updated",
            target=target.value,
            matched=len(rows),
            modified=modified_count,
            skipped=len(skipped),
        )
        return BulkUpdateResult(
            success=True,
            matched_count=len(rows),
            modified_count=modified_count,
            message=message,
        )

    async def _apply(
        self,
        session: AsyncSession,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        actor: Optional[str],
        reason: Optional[str],
    ) -> bool:
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, version=Order.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        self.audit.record_status_change(
            session,
            order_id=order_id,
            from_status=expected,
            to_status=target,
            actor=actor,
            reason=reason,
        )
        return True
