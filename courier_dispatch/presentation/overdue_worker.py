import asyncio
import logging

from courier_dispatch.application.expire_overdue_orders import ExpireOverdueOrdersUseCase

logger = logging.getLogger(__name__)


class OverdueOrdersWorker:
    def __init__(self, use_case: ExpireOverdueOrdersUseCase, interval: float = 15.0):
        self._use_case = use_case
        self._interval = interval

    async def run(self):
        while True:
            try:
                await self._use_case()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Overdue sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval)
