import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment.consumer import process_retry_message
from fulfillment.errors import NotFoundError, WebhookError
from fulfillment.schemas import ProcessingResult


@pytest.fixture
def mock_message_context():
    """Async context manager standing in for message.process()."""

    class AsyncContextManager:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return AsyncContextManager()


def _message(body, context):
    message = AsyncMock()
    message.body = body
    message.process = MagicMock(return_value=context)
    return message


@pytest.mark.asyncio
async def test_retry_message_reprocesses_event(mock_message_context):
    """
    Test case 1: A due retry re-runs the recorded event.
    """
    pipeline = AsyncMock()
    pipeline.reprocess.return_value = ProcessingResult(success=True, order_id="order-1")
    message = _message(json.dumps({"event_id": "evt_1"}).encode("utf-8"), mock_message_context)

    await process_retry_message(message, pipeline)

    message.process.assert_called_once()
    pipeline.reprocess.assert_awaited_once_with("evt_1")


@pytest.mark.asyncio
async def test_invalid_retry_message_is_dropped(mock_message_context):
    """
    Test case 2: Undecodable retry messages are acknowledged and ignored.
    """
    pipeline = AsyncMock()

    await process_retry_message(_message(b"not-json", mock_message_context), pipeline)
    await process_retry_message(_message(b'{"other": 1}', mock_message_context), pipeline)

    pipeline.reprocess.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        NotFoundError("Payment event not found"),
        WebhookError("Insufficient stock", "INVENTORY_DEDUCTION_FAILED", 500, retryable=True),
    ],
)
async def test_failed_retry_does_not_crash_consumer(mock_message_context, error):
    """
    Test case 3: A retry that fails again is logged; the consumer keeps going.
    """
    pipeline = AsyncMock()
    pipeline.reprocess.side_effect = error
    message = _message(json.dumps({"event_id": "evt_1"}).encode("utf-8"), mock_message_context)

    await process_retry_message(message, pipeline)

    pipeline.reprocess.assert_awaited_once_with("evt_1")
