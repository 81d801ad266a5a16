"""Payment event ingestion.

Payment events arrive at least once, so every delivery is first recorded
against its external event id and a processed record short-circuits any
repeat. Order creation, stock deduction and cart clearing run as one
transaction; the order's unique checkout session id is the final guard when
two deliveries race past the processed check.
"""

import asyncio
import json
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment import config
from fulfillment.audit import AuditHistory
from fulfillment.database import transaction
from fulfillment.errors import NotFoundError, WebhookError
from fulfillment.inventory import INSUFFICIENT, StockLedger
from fulfillment.models import (
    CartItem,
    Order,
    OrderItem,
    OrderSequence,
    OrderStatus,
    PaymentEvent,
    User,
    new_id,
    utcnow,
)
from fulfillment.schemas import CartValidationMessage, ProcessingResult, RetryResult, StockItem, StockLevel

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

RETRY_BATCH_SIZE = 100


def backoff_delay(
    attempts: int,
    base: float = config.RETRY_BASE_DELAY,
    cap: float = config.RETRY_MAX_DELAY,
    jitter: float = config.RETRY_JITTER,
) -> float:
    """Exponential delay doubled per attempt, capped, plus random jitter."""
    return min(base * (2 ** attempts), cap) + random.uniform(0, jitter)


def _data_object(event: dict) -> Optional[dict]:
    data = event.get("data")
    if not isinstance(data, dict):
        return None
    obj = data.get("object")
    return obj if isinstance(obj, dict) else None


def _metadata(obj: dict) -> dict:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _event_object(event: dict) -> dict:
    obj = _data_object(event)
    if obj is None:
        raise WebhookError("Event payload has no data object", "INVALID_EVENT", 400, retryable=False)
    return obj


def _session_reference(event: dict) -> Optional[str]:
    obj = _data_object(event) or {}
    if event.get("type") == CHECKOUT_COMPLETED:
        reference = obj.get("id")
    else:
        reference = _metadata(obj).get("checkoutSessionId")
    return reference if isinstance(reference, str) else None


@dataclass
class LineItem:
    product_id: str
    quantity: int
    price: float
    variant_id: Optional[str] = None
    variant_label: Optional[str] = None


def parse_line_items(products) -> List[LineItem]:
    """Decode the `products` metadata of a checkout session."""
    try:
        raw_items = json.loads(products) if isinstance(products, str) else products
        items = [
            LineItem(
                product_id=str(p["id"]),
                quantity=int(p["quantity"]),
                price=float(p.get("price", 0.0)),
                variant_id=p.get("variantId"),
                variant_label=p.get("variantLabel"),
            )
            for p in raw_items
        ]
    except (TypeError, ValueError, KeyError) as e:
        raise WebhookError(f"Malformed products metadata: {e}", "INVALID_SESSION_METADATA", 400, retryable=False)

    if not items or any(item.quantity <= 0 for item in items):
        raise WebhookError("Checkout session has no valid line items", "INVALID_SESSION_METADATA", 400, retryable=False)
    return items


class StoredCheckoutSessionSource:
    """Resolves a checkout session from the recorded `checkout.session.completed` event."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def retrieve(self, session_id: str) -> Optional[dict]:
        async with self.session_factory() as session:
            record = (
                await session.execute(
                    select(PaymentEvent)
                    .where(
                        PaymentEvent.event_type == CHECKOUT_COMPLETED,
                        PaymentEvent.checkout_session_id == session_id,
                    )
                    .order_by(PaymentEvent.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        if record is None or not isinstance(record.payload, dict):
            return None
        return _data_object(record.payload)


@dataclass
class _OrderOutcome:
    order_id: str
    created: bool
    status: Optional[OrderStatus] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    total_amount: float = 0.0
    inventory_issues: List[str] = field(default_factory=list)
    deducted: List[tuple] = field(default_factory=list)


class PaymentEventPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: StockLedger,
        audit: AuditHistory,
        publisher=None,
        session_source=None,
        transaction_timeout: float = config.TRANSACTION_TIMEOUT,
        max_attempts: int = config.RETRY_MAX_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.audit = audit
        self.publisher = publisher
        self.session_source = session_source or StoredCheckoutSessionSource(session_factory)
        self.transaction_timeout = transaction_timeout
        self.max_attempts = max_attempts
        self._handlers: Dict[str, Callable] = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
        }

    async def ingest(self, event: dict, raw_body: Optional[str] = None) -> ProcessingResult:
        event_id = event.get("id")
        event_type = event.get("type")
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
            raise WebhookError("Payment event is missing its id or type", "INVALID_EVENT", 400, retryable=False)

        log = logger.bind(event_id=event_id, event_type=event_type)
        try:
            await self._record_event(event, raw_body)

            if await self._is_processed(event_id):
                log.info("webhook.event.already_processed")
                return ProcessingResult(success=False, message="Event already processed")

            handler = self._handlers.get(event_type)
            if handler is None:
                log.warning("webhook.event.type.unhandled")
                result = ProcessingResult(success=True, message=f"Unhandled event type: {event_type}")
            else:
                result = await handler(event)

            if result.success:
                await self._mark_processed(event_id, result.order_id)
            return result
        except WebhookError as e:
            await self._handle_failure(event, e)
            raise
        except SQLAlchemyError as e:
            error = WebhookError(str(e), "STORAGE_UNAVAILABLE", 503, retryable=True)
            await self._handle_failure(event, error)
            raise error from e
        except Exception as e:
            error = WebhookError(str(e) or "Webhook processing failed", "PROCESSING_ERROR", 500, retryable=True)
            await self._handle_failure(event, error)
            raise error from e

    async def reprocess(self, event_id: str) -> ProcessingResult:
        """Re-run a recorded event from its stored payload."""
        async with self.session_factory() as session:
            record = (await session.execute(select(PaymentEvent).where(PaymentEvent.event_id == event_id))).scalar_one_or_none()
        if record is None:
            raise NotFoundError("Payment event not found")
        return await self.ingest(record.payload, record.raw_body)

    async def retry_failed_events(self, max_attempts: Optional[int] = None, older_than=None) -> RetryResult:
        """Re-ingest unprocessed, retryable events, oldest first.

        One event failing does not stop the batch.
        """
        if max_attempts is None:
            max_attempts = self.max_attempts
        if older_than is None:
            older_than = utcnow() - timedelta(hours=24)

        async with self.session_factory() as session:
            event_ids = (
                await session.execute(
                    select(PaymentEvent.event_id)
                    .where(
                        PaymentEvent.processed.is_(False),
                        PaymentEvent.retryable.is_(True),
                        PaymentEvent.retry_count < max_attempts,
                        PaymentEvent.created_at < older_than,
                    )
                    .order_by(PaymentEvent.created_at, PaymentEvent.id)
                    .limit(RETRY_BATCH_SIZE)
                )
            ).scalars().all()

        processed = 0
        failed = 0
        for event_id in event_ids:
            try:
                await self.reprocess(event_id)
                processed += 1
            except Exception as e:
                failed += 1
                logger.error("webhook.retry.failed", event_id=event_id, error=str(e))

        logger.info("webhook.retry.batch.complete", processed=processed, failed=failed)
        return RetryResult(processed=processed, failed=failed)

    async def schedule_retry(self, event_id: str) -> Optional[float]:
        """Queue a delayed re-attempt with backoff. Returns the delay, or None when not eligible."""
        async with self.session_factory() as session:
            record = (await session.execute(select(PaymentEvent).where(PaymentEvent.event_id == event_id))).scalar_one_or_none()
        if record is None or record.processed or not record.retryable:
            return None
        if record.retry_count >= self.max_attempts:
            logger.warning("webhook.retry.exhausted", event_id=event_id, retry_count=record.retry_count)
            return None

        delay = backoff_delay(record.retry_count)
        if self.publisher is not None:
            await self.publisher.schedule_retry(event_id, delay)
        return delay

    async def create_order_from_session(
        self,
        session_id: str,
        payment_intent_id: Optional[str],
        event_id: Optional[str] = None,
        checkout: Optional[dict] = None,
    ) -> ProcessingResult:
        log = logger.bind(session_id=session_id, event_id=event_id)

        # Fast path for repeat deliveries, outside any transaction
        existing_id = await self._find_order_id(session_id)
        if existing_id:
            log.info("webhook.order.already_exists", order_id=existing_id)
            return ProcessingResult(success=True, order_id=existing_id)

        try:
            outcome = await asyncio.wait_for(
                self._create_order(session_id, payment_intent_id, event_id, checkout),
                timeout=self.transaction_timeout,
            )
        except IntegrityError as e:
            winner_id = await self._find_order_id(session_id)
            if winner_id is None:
                raise
            log.info("webhook.order.duplicate_key", order_id=winner_id, error=str(e.orig))
            return ProcessingResult(success=True, order_id=winner_id, message="Order already exists")
        except asyncio.TimeoutError:
            raise WebhookError("Order transaction timed out", "TRANSACTION_TIMEOUT", 503, retryable=True)

        if not outcome.created:
            return ProcessingResult(success=True, order_id=outcome.order_id)

        if outcome.inventory_issues:
            log.warning(
                "webhook.order.created.with_inventory_issues",
                order_id=outcome.order_id,
                inventory_issues=outcome.inventory_issues,
            )
        else:
            log.info("webhook.order.created", order_id=outcome.order_id)

        await self._after_commit(outcome)
        return ProcessingResult(success=True, order_id=outcome.order_id)

    async def _handle_checkout_completed(self, event: dict) -> ProcessingResult:
        checkout = _event_object(event)
        if checkout.get("payment_status") != "paid":
            return ProcessingResult(success=True, message="Session not paid yet")
        session_id = checkout.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise WebhookError("Checkout session has no id", "INVALID_SESSION_METADATA", 400, retryable=False)

        logger.info("webhook.checkout.session.processing", session_id=session_id, event_id=event["id"])
        return await self.create_order_from_session(session_id, checkout.get("payment_intent"), event["id"], checkout)

    async def _handle_payment_succeeded(self, event: dict) -> ProcessingResult:
        intent = _event_object(event)
        logger.info("webhook.payment_intent.succeeded", payment_intent_id=intent.get("id"), amount=intent.get("amount"))

        session_id = _metadata(intent).get("checkoutSessionId")
        if not isinstance(session_id, str) or not session_id:
            return ProcessingResult(success=True, message="Payment intent succeeded")

        async with self.session_factory() as session:
            existing_id = (
                await session.execute(select(Order.id).where(Order.payment_intent_id == intent.get("id")))
            ).scalar_one_or_none()
        if existing_id:
            return ProcessingResult(success=True, order_id=existing_id, message="Payment intent succeeded")

        return await self.create_order_from_session(session_id, intent.get("id"), event["id"])

    async def _handle_payment_failed(self, event: dict) -> ProcessingResult:
        intent = _event_object(event)
        logger.warning(
            "webhook.payment_intent.failed",
            payment_intent_id=intent.get("id"),
            error=intent.get("last_payment_error"),
            user_id=_metadata(intent).get("userId"),
        )
        return ProcessingResult(success=True, error="Payment failed")

    async def _create_order(
        self,
        session_id: str,
        payment_intent_id: Optional[str],
        event_id: Optional[str],
        checkout: Optional[dict],
    ) -> _OrderOutcome:
        async with transaction(self.session_factory) as session:
            # Authoritative re-check: a concurrent first delivery may have won
            existing_id = await self._find_order_id(session_id, session)
            if existing_id:
                return _OrderOutcome(order_id=existing_id, created=False)

            if checkout is None:
                checkout = await self.session_source.retrieve(session_id)
            if not checkout:
                raise WebhookError("Session not found", "SESSION_NOT_FOUND", 400, retryable=False)

            metadata = checkout.get("metadata")
            if (
                not isinstance(metadata, dict)
                or not isinstance(metadata.get("userId"), str)
                or not metadata["userId"]
                or not metadata.get("products")
            ):
                raise WebhookError(
                    "Missing required metadata in checkout session",
                    "INVALID_SESSION_METADATA",
                    400,
                    retryable=False,
                )
            user_id = metadata["userId"]
            lines = parse_line_items(metadata["products"])

            user = await session.get(User, user_id)
            if user is None:
                raise WebhookError("User not found", "USER_NOT_FOUND", 404, retryable=False)

            # Check each line against the counter its deduction will hit
            defaults = await self.ledger.default_variants([l.product_id for l in lines], session)
            counters = [l.variant_id or defaults.get(l.product_id) for l in lines]
            availability = await self.ledger.check_availability(
                [
                    StockItem(product_id=l.product_id, quantity=l.quantity, variant_id=counter)
                    for l, counter in zip(lines, counters)
                ],
                session=session,
            )
            inventory_issues = [
                f"Product {l.product_id}"
                + (f" variant {l.variant_id}" if l.variant_id else "")
                + f": requested {l.quantity}, available {a.available_stock}"
                for l, a in zip(lines, availability)
                if not a.is_available
            ]
            status = OrderStatus.PENDING_INVENTORY if inventory_issues else OrderStatus.COMPLETED

            totals = checkout.get("total_details")
            if not isinstance(totals, dict):
                totals = {}
            order = Order(
                id=new_id(),
                order_number=await self._generate_order_number(),
                user_id=user_id,
                email=user.email,
                items=[
                    OrderItem(
                        product_id=l.product_id,
                        variant_id=l.variant_id,
                        variant_label=l.variant_label,
                        quantity=l.quantity,
                        price=l.price,
                    )
                    for l in lines
                ],
                subtotal=(checkout.get("amount_subtotal") or checkout.get("amount_total") or 0) / 100,
                tax=(totals.get("amount_tax") or 0) / 100,
                shipping=(totals.get("amount_shipping") or 0) / 100,
                discount=(totals.get("amount_discount") or 0) / 100,
                total_amount=(checkout.get("amount_total") or 0) / 100,
                checkout_session_id=session_id,
                payment_intent_id=payment_intent_id or checkout.get("payment_intent"),
                coupon_code=metadata.get("couponCode"),
                payment_event_id=event_id,
                status=status,
                inventory_issues=inventory_issues or None,
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            session.add(order)
            # Surface a duplicate session id before any stock is touched
            await session.flush()

            self.audit.record_status_change(
                session,
                order_id=order.id,
                from_status=OrderStatus.PENDING,
                to_status=status,
                actor=user_id,
                reason=(
                    "Payment processed via webhook with inventory issues"
                    if inventory_issues
                    else "Payment processed via webhook"
                ),
            )

            deducted = []
            if status == OrderStatus.COMPLETED:
                for line, counter in zip(lines, counters):
                    result = await self.ledger.try_deduct(
                        line.product_id,
                        line.quantity,
                        counter,
                        actor=user_id,
                        order_id=order.id,
                        payment_event_id=event_id,
                        session=session,
                    )
                    if result is INSUFFICIENT:
                        logger.error(
                            "webhook.inventory.deduction.failed",
                            session_id=session_id,
                            product_id=line.product_id,
                            variant_id=line.variant_id,
                            quantity=line.quantity,
                        )
                        raise WebhookError(
                            f"Insufficient stock for product {line.product_id} during deduction",
                            "INVENTORY_DEDUCTION_FAILED",
                            500,
                            retryable=True,
                        )
                    deducted.append((line, result))

            user.cart_items.clear()
            user.applied_coupon = None

            return _OrderOutcome(
                order_id=order.id,
                created=True,
                status=status,
                user_id=user_id,
                email=user.email,
                total_amount=order.total_amount,
                inventory_issues=inventory_issues,
                deducted=deducted,
            )

    async def _after_commit(self, outcome: _OrderOutcome):
        """Best-effort notifications; failures never touch the committed order."""
        if self.publisher is None:
            return
        try:
            await self.publisher.publish_order_confirmed(
                outcome.order_id, outcome.user_id, outcome.email, outcome.total_amount
            )
        except Exception as e:
            logger.error("webhook.order.confirmation.error", order_id=outcome.order_id, error=str(e))

        for line, level in outcome.deducted:
            await self.ledger.announce(level)
            try:
                await self._notify_affected_carts(line, level, outcome.user_id)
            except Exception as e:
                logger.error("webhook.cart.notification.error", product_id=line.product_id, error=str(e))

    async def _notify_affected_carts(self, line: LineItem, level: StockLevel, purchaser_id: str):
        query = select(CartItem).where(
            CartItem.product_id == line.product_id,
            CartItem.user_id != purchaser_id,
            CartItem.quantity > level.stock,
        )
        if line.variant_id is not None:
            query = query.where(CartItem.variant_id == line.variant_id)
        async with self.session_factory() as session:
            cart_items = (await session.execute(query)).scalars().all()

        for item in cart_items:
            await self.publisher.publish_cart_validation(
                CartValidationMessage(
                    user_id=item.user_id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    requested_quantity=item.quantity,
                    available_quantity=level.stock,
                    action="remove" if level.stock <= 0 else "reduce",
                )
            )

    async def _record_event(self, event: dict, raw_body: Optional[str]):
        values = {
            "event_type": event["type"],
            "checkout_session_id": _session_reference(event),
            "payload": event,
            "raw_body": raw_body,
            "received_at": utcnow(),
        }
        try:
            async with transaction(self.session_factory) as session:
                session.add(PaymentEvent(event_id=event["id"], **values))
        except IntegrityError:
            # Seen before: refresh what we know about it
            async with transaction(self.session_factory) as session:
                await session.execute(
                    update(PaymentEvent).where(PaymentEvent.event_id == event["id"]).values(**values)
                )

    async def _is_processed(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            processed = (
                await session.execute(select(PaymentEvent.processed).where(PaymentEvent.event_id == event_id))
            ).scalar_one_or_none()
        return bool(processed)

    async def _mark_processed(self, event_id: str, order_id: Optional[str]):
        now = utcnow()
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(PaymentEvent)
                .where(PaymentEvent.event_id == event_id)
                .values(processed=True, processed_at=now, last_attempt_at=now, order_id=order_id, last_error=None)
            )

    async def _handle_failure(self, event: dict, error: WebhookError):
        """Record a failed attempt, creating the event row if recording it never succeeded."""
        event_id = event["id"]
        logger.error(
            "webhook.event.failed",
            event_id=event_id,
            code=error.code,
            retryable=error.retryable,
            error=error.message,
        )
        now = utcnow()
        try:
            async with transaction(self.session_factory) as session:
                result = await session.execute(
                    update(PaymentEvent)
                    .where(PaymentEvent.event_id == event_id)
                    .values(
                        retry_count=PaymentEvent.retry_count + 1,
                        attempts=PaymentEvent.attempts + 1,
                        last_error=error.message,
                        last_attempt_at=now,
                        retryable=error.retryable,
                    )
                )
                if result.rowcount == 0:
                    session.add(
                        PaymentEvent(
                            event_id=event_id,
                            event_type=event["type"],
                            checkout_session_id=_session_reference(event),
                            payload=event,
                            retry_count=1,
                            attempts=1,
                            last_error=error.message,
                            last_attempt_at=now,
                            retryable=error.retryable,
                            received_at=now,
                        )
                    )
        except Exception as record_error:
            logger.error("webhook.event.failure.record.error", event_id=event_id, error=str(record_error))
            return

        if error.retryable:
            try:
                await self.schedule_retry(event_id)
            except Exception as schedule_error:
                logger.error("webhook.retry.schedule.error", event_id=event_id, error=str(schedule_error))

    async def _find_order_id(self, session_id: str, session: Optional[AsyncSession] = None) -> Optional[str]:
        query = select(Order.id).where(Order.checkout_session_id == session_id)
        if session is not None:
            return (await session.execute(query)).scalar_one_or_none()
        async with self.session_factory() as own_session:
            return (await own_session.execute(query)).scalar_one_or_none()

    async def _generate_order_number(self) -> str:
        """Next ``ORD-YYYYMMDD-NNNN`` number.

        The daily counter is advanced in its own short transaction, so
        concurrent checkouts never share a number. A number taken by an
        order transaction that later rolls back is simply skipped.
        """
        day = f"{utcnow():%Y%m%d}"
        value = await self._bump_order_sequence(day)
        if value is None:
            try:
                async with transaction(self.session_factory) as session:
                    session.add(OrderSequence(day=day, last_value=0))
            except IntegrityError:
                logger.debug("webhook.order_sequence.created_concurrently", day=day)
            value = await self._bump_order_sequence(day)
        return f"ORD-{day}-{value:04d}"

    async def _bump_order_sequence(self, day: str) -> Optional[int]:
        async with transaction(self.session_factory) as session:
            return (
                await session.execute(
                    update(OrderSequence)
                    .where(OrderSequence.day == day)
                    .values(last_value=OrderSequence.last_value + 1)
                    .returning(OrderSequence.last_value)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
