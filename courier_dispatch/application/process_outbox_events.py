import logging

from courier_dispatch.infrastructure.kafka_producer import OrderEventPublisher
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        publisher: OrderEventPublisher,
        batch_size: int = 100,
    ):
        self._unit_of_work = unit_of_work
        self._publisher = publisher
        self._batch_size = batch_size

    async def __call__(self) -> int:
        """Publish one batch of pending push events. Returns how many went out."""
        async with self._unit_of_work() as uow:
            events = await uow.outbox.get_pending_events(limit=self._batch_size)

        if not events:
            return 0

        await self._publisher.start()
        sent = 0
        for event in events:
            try:
                await self._publisher.publish(event)
            except Exception as e:
                # left pending, picked up again on the next pass
                logger.warning(f"Failed to publish {event.event_type} {event.id}: {e}")
                continue

            async with self._unit_of_work() as uow:
                await uow.outbox.mark_as_sent(event.id)
                await uow.commit()
            sent += 1

        logger.debug(f"Published {sent}/{len(events)} outbox events")
        return sent
