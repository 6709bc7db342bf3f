import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from courier_dispatch.infrastructure.kafka_consumer import OrderEventConsumer


def _record(value: bytes | None, key: bytes | None = b"event-1"):
    return SimpleNamespace(key=key, value=value, topic="order-events", offset=7)


@pytest.fixture
def handler() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def consumer(handler: AsyncMock) -> OrderEventConsumer:
    return OrderEventConsumer(
        bootstrap_servers="kafka:9092", topic="order-events", handler=handler
    )


class TestOrderEventConsumer:
    @pytest.mark.asyncio
    async def test_hands_decoded_event_to_handler(self, consumer, handler):
        # Given
        event = {"type": "ORDER_UPDATED", "payload": {"id": "order-1", "status": "accepted"}}

        # When
        await consumer.handle(_record(json.dumps(event).encode("utf-8")))

        # Then
        handler.assert_awaited_once_with(
            message_id="event-1", event_data=event, topic="order-events"
        )

    @pytest.mark.asyncio
    async def test_missing_key_gives_no_message_id(self, consumer, handler):
        await consumer.handle(_record(b'{"type": "NOTIFICATION"}', key=None))

        assert handler.call_args.kwargs["message_id"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [b"not json", b"[1, 2]", b"\xff\xfe", None])
    async def test_undecodable_values_are_skipped(self, consumer, handler, value):
        await consumer.handle(_record(value))

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_consumption(self, consumer, handler):
        # Given
        handler.side_effect = [RuntimeError("hub broken"), None]

        # When
        await consumer.handle(_record(b'{"type": "NEW_ORDER_AVAILABLE"}'))
        await consumer.handle(_record(b'{"type": "NEW_ORDER_AVAILABLE"}', key=b"event-2"))

        # Then
        assert handler.await_count == 2
