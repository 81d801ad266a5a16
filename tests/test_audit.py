import pytest

from fulfillment.database import transaction
from fulfillment.errors import NotFoundError
from fulfillment.inventory import INSUFFICIENT
from fulfillment.models import OrderStatus, ProductVariant, StockMutationReason


@pytest.mark.asyncio
async def test_stock_history_records_every_mutation(services, seed_product):
    """
    Test case 1: Each successful mutation leaves one entry with its signed delta, reason and actor.
    """
    await seed_product("prod-A", stock=10)

    await services.ledger.try_deduct("prod-A", 3, actor="user-1", order_id="order-1", payment_event_id="evt_1")
    await services.ledger.restock("prod-A", 5, actor="admin")
    await services.ledger.restock("prod-A", 1, actor="support", reason=StockMutationReason.REFUND, order_id="order-1")
    assert await services.ledger.try_deduct("prod-A", 100) is INSUFFICIENT

    history = await services.audit.stock_history("prod-A")

    assert [(h.delta, h.previous_quantity, h.new_quantity) for h in history] == [(1, 12, 13), (5, 7, 12), (-3, 10, 7)]
    assert [h.reason for h in history] == [
        StockMutationReason.REFUND,
        StockMutationReason.RESTOCK,
        StockMutationReason.SALE,
    ]
    assert history[2].actor == "user-1"
    assert history[2].order_id == "order-1"
    assert history[2].payment_event_id == "evt_1"


@pytest.mark.asyncio
async def test_stock_history_filters_and_limits(services, seed_product):
    """
    Test case 2: History can be narrowed to one variant and capped.
    """
    await seed_product("prod-D", variants={"var-1": 8, "var-2": 12})

    await services.ledger.try_deduct("prod-D", 1, "var-1")
    await services.ledger.try_deduct("prod-D", 2, "var-2")
    await services.ledger.try_deduct("prod-D", 3, "var-2")

    assert [h.delta for h in await services.audit.stock_history("prod-D", "var-2")] == [-3, -2]
    assert len(await services.audit.stock_history("prod-D", limit=1)) == 1


@pytest.mark.asyncio
async def test_reconcile_matches_counter(services, seed_product):
    """
    Test case 3: The sum of recorded deltas explains the live counter.
    """
    await seed_product("prod-A", stock=10)

    await services.ledger.try_deduct("prod-A", 4)
    await services.ledger.restock("prod-A", 2)
    await services.ledger.adjust("prod-A", -1)

    report = await services.audit.reconcile("prod-A", None, initial_stock=10)

    assert report == {"expected": 7, "actual": 7, "delta_sum": -3, "consistent": True}
    assert await services.audit.net_stock_delta("prod-A") == -3


@pytest.mark.asyncio
async def test_reconcile_detects_untracked_change(services, seed_product, session_factory):
    """
    Test case 4: A counter edited behind the ledger's back is reported as inconsistent.
    """
    await seed_product("prod-A", stock=10)
    await services.ledger.try_deduct("prod-A", 2)

    async with transaction(session_factory) as session:
        variant = await session.get(ProductVariant, ("prod-A", "default"))
        variant.stock = 3

    report = await services.audit.reconcile("prod-A", "default", initial_stock=10)

    assert report["expected"] == 8
    assert report["actual"] == 3
    assert report["consistent"] is False


@pytest.mark.asyncio
async def test_order_history_unknown_order(services):
    """
    Test case 5: History of a missing order is a not-found error.
    """
    with pytest.raises(NotFoundError):
        await services.audit.order_history("missing")


@pytest.mark.asyncio
async def test_order_history_in_order(services, seed_order):
    """
    Test case 6: Status history is returned oldest first.
    """
    order_id = await seed_order(OrderStatus.PENDING)
    await services.status_machine.transition(order_id, OrderStatus.CANCELLED, "admin")
    await services.status_machine.transition(order_id, OrderStatus.PENDING, "admin", "customer changed their mind")

    history = await services.audit.order_history(order_id)

    assert [h.to_status for h in history] == [OrderStatus.PENDING, OrderStatus.CANCELLED, OrderStatus.PENDING]
    assert history[-1].reason == "customer changed their mind"
