import logging

from courier_dispatch.application.order_claim import OrderClaimCoordinator
from courier_dispatch.core.clock import Clock, utcnow
from courier_dispatch.core.errors import OrderActionError
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ExpireOverdueOrdersUseCase:
    """Completes processing orders whose ETA passed while no client timer ran."""

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        coordinator: OrderClaimCoordinator,
        clock: Clock = utcnow,
        batch_size: int = 100,
    ):
        self._unit_of_work = unit_of_work
        self._coordinator = coordinator
        self._clock = clock
        self._batch_size = batch_size

    async def __call__(self) -> int:
        async with self._unit_of_work() as uow:
            overdue = await uow.orders.list_overdue(self._clock(), limit=self._batch_size)

        completed = 0
        for order in overdue:
            try:
                await self._coordinator.complete(order.id, order.courier_id)
                completed += 1
            except OrderActionError as e:
                logger.warning(f"Could not auto-complete order {order.id}: {e}")

        if completed:
            logger.info(f"Auto-completed {completed} overdue orders")
        return completed
