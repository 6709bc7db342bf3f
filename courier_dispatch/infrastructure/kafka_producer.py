import json
import logging

from aiokafka import AIOKafkaProducer

from courier_dispatch.core.models import OutboxEvent

logger = logging.getLogger(__name__)


def to_wire(event: OutboxEvent) -> dict:
    """The message relayed to hubs: the push envelope plus when it was recorded."""
    return {
        "type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }


class OrderEventPublisher:
    """Publishes recorded outbox events to the topic every hub relays from.

    The outbox event id is the message key, so a redelivered event can be
    recognised downstream.
    """

    def __init__(self, bootstrap_servers: str, topic: str):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: AIOKafkaProducer | None = None

    @property
    def topic(self) -> str:
        return self._topic

    async def start(self):
        if self._producer is not None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=str.encode,
            acks="all",
        )
        await producer.start()
        self._producer = producer
        logger.info(f"Publishing order events to {self._topic}")

    async def stop(self):
        producer, self._producer = self._producer, None
        if producer is not None:
            await producer.stop()

    async def publish(self, event: OutboxEvent) -> None:
        if self._producer is None:
            raise RuntimeError("Publisher is not started")
        await self._producer.send_and_wait(self._topic, value=to_wire(event), key=event.id)
