import asyncio
import json
import logging
from typing import Awaitable, Callable

from aiokafka import AIOKafkaConsumer, ConsumerRecord

logger = logging.getLogger(__name__)

OrderEventHandler = Callable[..., Awaitable[None]]


def _decode(raw: bytes) -> dict | None:
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return value if isinstance(value, dict) else None


class OrderEventConsumer:
    """Reads the order-events topic and hands each event to ``handler``.

    With no group id the consumer starts at the live end of the topic and
    commits nothing; a hub only cares about events for sessions it holds now.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        handler: OrderEventHandler,
        group_id: str | None = None,
    ):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._handler = handler
        self._group_id = group_id
        self._consumer: AIOKafkaConsumer | None = None

    async def run(self):
        self._consumer = AIOKafkaConsumer(
            self._topic,
            bootstrap_servers=self._bootstrap_servers,
            group_id=self._group_id,
            auto_offset_reset="latest",
            enable_auto_commit=self._group_id is not None,
        )
        await self._consumer.start()
        logger.info(f"Relaying order events from {self._topic}")
        try:
            async for record in self._consumer:
                await self.handle(record)
        except asyncio.CancelledError:
            logger.info("Order event consumer cancelled")
            raise
        finally:
            await self._consumer.stop()
            self._consumer = None

    async def handle(self, record: ConsumerRecord) -> None:
        message_id = record.key.decode("utf-8") if record.key else None
        event_data = _decode(record.value) if record.value is not None else None
        if event_data is None:
            logger.warning(f"Skipping undecodable order event {message_id} at offset {record.offset}")
            return

        try:
            await self._handler(message_id=message_id, event_data=event_data, topic=record.topic)
        except Exception as e:
            logger.error(f"Order event {message_id} not relayed: {e}", exc_info=True)
