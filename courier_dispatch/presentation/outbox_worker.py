import asyncio
import logging

from courier_dispatch.application.process_outbox_events import ProcessOutboxEventsUseCase

logger = logging.getLogger(__name__)


class OutboxWorker:
    def __init__(self, use_case: ProcessOutboxEventsUseCase, poll_interval: float = 0.5):
        self._use_case = use_case
        self._poll_interval = poll_interval

    async def run(self):
        while True:
            try:
                sent = await self._use_case()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Outbox pass failed: {e}", exc_info=True)
                sent = 0
            # drain a full backlog without waiting
            if not sent:
                await asyncio.sleep(self._poll_interval)
