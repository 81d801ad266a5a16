import asyncio
from unittest.mock import patch

import pytest

from fulfillment.errors import (
    BulkTransitionError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from fulfillment.models import OrderStatus
from fulfillment.status import can_transition, transition_error_message, validate_transition


@pytest.mark.parametrize(
    "from_status,to_status,allowed",
    [
        (OrderStatus.PENDING, OrderStatus.COMPLETED, True),
        (OrderStatus.PENDING, OrderStatus.CANCELLED, True),
        (OrderStatus.PENDING, OrderStatus.REFUNDED, False),
        (OrderStatus.COMPLETED, OrderStatus.REFUNDED, True),
        (OrderStatus.COMPLETED, OrderStatus.CANCELLED, False),
        (OrderStatus.COMPLETED, OrderStatus.PENDING, False),
        (OrderStatus.CANCELLED, OrderStatus.PENDING, True),
        (OrderStatus.CANCELLED, OrderStatus.REFUNDED, False),
        (OrderStatus.REFUNDED, OrderStatus.PENDING, False),
        (OrderStatus.REFUNDED, OrderStatus.COMPLETED, False),
        (OrderStatus.PENDING_INVENTORY, OrderStatus.COMPLETED, True),
        (OrderStatus.PENDING_INVENTORY, OrderStatus.CANCELLED, True),
        (OrderStatus.PENDING_INVENTORY, OrderStatus.PENDING, False),
        (OrderStatus.PENDING, OrderStatus.PENDING_INVENTORY, False),
        (OrderStatus.PENDING, OrderStatus.PENDING, False),
    ],
)
def test_transition_table(from_status, to_status, allowed):
    """
    Test case 1: The legal transition table.
    """
    assert can_transition(from_status, to_status) is allowed


def test_transition_error_messages():
    """
    Test case 2: Rejections explain themselves.
    """
    assert transition_error_message(OrderStatus.COMPLETED, OrderStatus.COMPLETED).endswith("order is already completed")
    assert transition_error_message(OrderStatus.REFUNDED, OrderStatus.PENDING).endswith("refunded is a final state")
    assert transition_error_message(OrderStatus.CANCELLED, OrderStatus.REFUNDED).endswith("the order was never paid")
    assert "must be refunded instead" in transition_error_message(OrderStatus.COMPLETED, OrderStatus.CANCELLED)
    assert transition_error_message(OrderStatus.PENDING, OrderStatus.REFUNDED) == "Cannot transition from pending to refunded"

    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(OrderStatus.COMPLETED, OrderStatus.CANCELLED)
    assert exc_info.value.from_status == OrderStatus.COMPLETED
    assert exc_info.value.to_status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_transition_appends_history(services, seed_order):
    """
    Test case 3: pending -> completed -> refunded leaves two new history entries.
    """
    order_id = await seed_order(OrderStatus.PENDING)

    await services.status_machine.transition(order_id, OrderStatus.COMPLETED, "admin", "shipped")
    order = await services.status_machine.transition(order_id, OrderStatus.REFUNDED, "support")

    assert order.status == OrderStatus.REFUNDED
    assert order.version == 3
    history = await services.audit.order_history(order_id)
    assert [(h.from_status, h.to_status, h.actor) for h in history[1:]] == [
        (OrderStatus.PENDING, OrderStatus.COMPLETED, "admin"),
        (OrderStatus.COMPLETED, OrderStatus.REFUNDED, "support"),
    ]
    assert history[1].reason == "shipped"


@pytest.mark.asyncio
async def test_invalid_transition_changes_nothing(services, seed_order):
    """
    Test case 4: completed -> cancelled is rejected and the order and its history stay as they were.
    """
    order_id = await seed_order(OrderStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError, match="must be refunded instead"):
        await services.status_machine.transition(order_id, OrderStatus.CANCELLED, "admin")

    order = await services.status_machine.get_order(order_id)
    assert order.status == OrderStatus.COMPLETED
    assert len(await services.audit.order_history(order_id)) == 1


@pytest.mark.asyncio
async def test_transition_unknown_order(services):
    """
    Test case 5: Transitioning a missing order is a not-found error.
    """
    with pytest.raises(NotFoundError, match="Order not found"):
        await services.status_machine.transition("missing", OrderStatus.COMPLETED, "admin")


@pytest.mark.asyncio
async def test_transition_retries_then_revalidates(services, seed_order):
    """
    Test case 6: A status that changes under the writer is re-read and re-validated.
    """
    order_id = await seed_order(OrderStatus.PENDING)
    machine = services.status_machine
    real_apply = machine._apply
    calls = {"n": 0}

    async def racing_apply(session, oid, expected, target, actor, reason):
        calls["n"] += 1
        if calls["n"] == 1:
            # Someone else cancels the order between our read and our write
            await machine.transition(oid, OrderStatus.CANCELLED, "other-admin")
            return False
        return await real_apply(session, oid, expected, target, actor, reason)

    with patch.object(machine, "_apply", racing_apply):
        with pytest.raises(InvalidTransitionError):
            await machine.transition(order_id, OrderStatus.COMPLETED, "admin")

    order = await machine.get_order(order_id)
    assert order.status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_transition_gives_up_after_repeated_conflicts(services, seed_order):
    """
    Test case 7: Persistent conflicts surface as a concurrent modification error.
    """
    order_id = await seed_order(OrderStatus.PENDING)

    async def always_stale(*args):
        return False

    with patch.object(services.status_machine, "_apply", always_stale):
        with pytest.raises(ConcurrentModificationError):
            await services.status_machine.transition(order_id, OrderStatus.COMPLETED, "admin")


@pytest.mark.asyncio
async def test_concurrent_transitions_single_winner(services, seed_order):
    """
    Test case 8: Two writers completing and cancelling the same pending order: only one lands in history.
    """
    order_id = await seed_order(OrderStatus.PENDING)

    results = await asyncio.gather(
        services.status_machine.transition(order_id, OrderStatus.COMPLETED, "a"),
        services.status_machine.transition(order_id, OrderStatus.CANCELLED, "b"),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    order = await services.status_machine.get_order(order_id)
    history = await services.audit.order_history(order_id)
    assert order.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)
    # The loser's re-validation fails: neither completed nor cancelled can follow the other
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidTransitionError)
    assert len(history) == 2
    assert history[-1].to_status == order.status


@pytest.mark.asyncio
async def test_bulk_transition_partial(services, seed_order):
    """
    Test case 9: Bulk refund over pending, completed and refunded orders only moves the completed one.
    """
    pending = await seed_order(OrderStatus.PENDING)
    completed = await seed_order(OrderStatus.COMPLETED)
    refunded = await seed_order(OrderStatus.REFUNDED)

    result = await services.status_machine.bulk_transition(
        [pending, completed, refunded], OrderStatus.REFUNDED, "admin", "batch refund"
    )

    assert result.success is True
    assert result.matched_count == 3
    assert result.modified_count == 1
    assert result.message.startswith("Successfully updated 1 orders (2 orders were not updated - ")

    assert (await services.status_machine.get_order(pending)).status == OrderStatus.PENDING
    assert (await services.status_machine.get_order(completed)).status == OrderStatus.REFUNDED
    completed_history = await services.audit.order_history(completed)
    assert completed_history[-1].reason == "batch refund"
    assert len(await services.audit.order_history(pending)) == 1


@pytest.mark.asyncio
async def test_bulk_transition_all_invalid(services, seed_order):
    """
    Test case 10: When no order can move the whole request fails.
    """
    first = await seed_order(OrderStatus.REFUNDED)
    second = await seed_order(OrderStatus.CANCELLED)

    with pytest.raises(BulkTransitionError, match="Failed to update orders"):
        await services.status_machine.bulk_transition([first, second], OrderStatus.REFUNDED, "admin")


@pytest.mark.asyncio
async def test_bulk_transition_empty_and_missing(services):
    """
    Test case 11: An empty id list is invalid; ids that match nothing are not found.
    """
    with pytest.raises(ValidationError):
        await services.status_machine.bulk_transition([], OrderStatus.COMPLETED, "admin")
    with pytest.raises(NotFoundError, match="No orders found"):
        await services.status_machine.bulk_transition(["nope-1", "nope-2"], OrderStatus.COMPLETED, "admin")


@pytest.mark.asyncio
async def test_bulk_transition_ignores_unknown_ids(services, seed_order):
    """
    Test case 12: Unknown ids among known ones are left out of the matched count.
    """
    order_id = await seed_order(OrderStatus.PENDING)

    result = await services.status_machine.bulk_transition([order_id, "nope", order_id], OrderStatus.CANCELLED, "admin")

    assert result.matched_count == 1
    assert result.modified_count == 1
    assert result.message == "Successfully updated 1 orders"
