import logging

from courier_dispatch.application.relay_order_events import RelayOrderEventsUseCase
from courier_dispatch.infrastructure.kafka_consumer import OrderEventConsumer

logger = logging.getLogger(__name__)


class EventRelayWorker:
    """Consumes the order-events topic and pushes each event through the hub.

    Without a group id every server process reads the whole topic, so each
    hub reaches the sessions connected to it.
    """

    def __init__(
        self,
        relay_use_case: RelayOrderEventsUseCase,
        bootstrap_servers: str,
        topic: str,
        group_id: str | None = None,
    ):
        self._relay_use_case = relay_use_case
        self._consumer = OrderEventConsumer(
            bootstrap_servers=bootstrap_servers,
            topic=topic,
            handler=self._process_message,
            group_id=group_id or None,
        )

    async def _process_message(self, message_id: str | None, event_data: dict, topic: str):
        try:
            delivered = await self._relay_use_case(event_data=event_data, message_id=message_id)
        except Exception as e:
            logger.error(f"Error relaying message {message_id} from {topic}: {e}", exc_info=True)
            raise
        logger.debug(f"Relayed {message_id} to {delivered} sessions")

    async def run(self):
        await self._consumer.run()
