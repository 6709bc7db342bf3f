import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import DBAPIError

from courier_dispatch.core.clock import Clock, utcnow
from courier_dispatch.core.errors import (
    InvalidArgument,
    InvalidOrderState,
    OrderNotFound,
    PermissionDenied,
)
from courier_dispatch.core.models import (
    ClaimResult,
    CountdownPayload,
    EventTypeEnum,
    HistoryStatusEnum,
    Order,
    OrderStatusEnum,
    OrderUpdatePayload,
)
from courier_dispatch.infrastructure.repositories import (
    DoesNotExist,
    HistoryRepository,
    OutboxRepository,
)
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

# SQLSTATE raised by PostgreSQL when a policy or grant refuses the write
INSUFFICIENT_PRIVILEGE = "42501"

HistoryFailureHook = Callable[[str, str, Exception], None]


def _is_permission_error(error: DBAPIError) -> bool:
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == INSUFFICIENT_PRIVILEGE


@asynccontextmanager
async def _store_errors(order_id: str):
    try:
        yield
    except DoesNotExist:
        raise OrderNotFound(f"Order {order_id} not found")
    except DBAPIError as e:
        if _is_permission_error(e):
            raise PermissionDenied(f"Store refused write on order {order_id}")
        raise


class OrderClaimCoordinator:
    """Conditional writes for the claim -> ETA -> delivered lifecycle.

    Every successful write records its push events in the outbox inside the
    same transaction. The delivery history row is written afterwards by a
    background task in its own transaction and never unwinds the order write;
    ``drain()`` waits for the writes still in flight.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        clock: Clock = utcnow,
        on_history_failure: HistoryFailureHook | None = None,
    ):
        self._unit_of_work = unit_of_work
        self._clock = clock
        self._on_history_failure = on_history_failure
        self._history_writes: set[asyncio.Task] = set()

    async def claim(self, order_id: str, courier_id: str) -> ClaimResult:
        now = self._clock()
        async with _store_errors(order_id), self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            if order.status != OrderStatusEnum.PENDING or order.courier_id is not None:
                logger.info(
                    f"Order {order_id} already taken ({order.status}), "
                    f"courier {courier_id} skipped the write"
                )
                return ClaimResult.ALREADY_TAKEN

            claimed = await uow.orders.claim(order_id, courier_id, now)
            if claimed is None:
                logger.info(f"Courier {courier_id} lost the race for order {order_id}")
                return ClaimResult.ALREADY_TAKEN

            await self._publish_update(uow, claimed, previous=order.status)
            await self._notify(
                uow,
                claimed.shop_id,
                f"Order {claimed.order_number} was accepted by a courier",
            )
            await uow.commit()

        logger.info(f"Courier {courier_id} claimed order {claimed.order_number}")
        self._schedule_history(claimed, HistoryStatusEnum.ACCEPTED)
        return ClaimResult.CLAIMED

    async def set_completion_time(
        self, order_id: str, courier_id: str, minutes: int
    ) -> Order:
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise InvalidArgument(f"ETA must be a positive number of minutes, got {minutes!r}")

        now = self._clock()
        eta = now + timedelta(minutes=minutes)
        async with _store_errors(order_id), self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            self._check_owner(order, courier_id)
            if order.status != OrderStatusEnum.ACCEPTED:
                raise InvalidOrderState(
                    f"Order {order_id} is {order.status}, ETA needs an accepted order"
                )

            updated = await uow.orders.start_countdown(order_id, courier_id, eta, now)
            if updated is None:
                raise InvalidOrderState(f"Order {order_id} changed while setting ETA")

            await self._publish_update(uow, updated, previous=order.status)
            await uow.outbox.create(
                event=OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.COUNTDOWN_STARTED,
                    payload={
                        **CountdownPayload(
                            id=updated.id,
                            order_number=updated.order_number,
                            eta=eta,
                            courier_id=courier_id,
                        ).model_dump(mode="json"),
                        "order_id": updated.id,
                        "shop_id": updated.shop_id,
                        "minutes": minutes,
                    },
                )
            )
            await uow.commit()

        logger.info(f"Order {updated.order_number} ETA set to {minutes} minutes")
        self._schedule_history(
            updated, HistoryStatusEnum.ACCEPTED, notes=f"ETA {minutes} minutes"
        )
        return updated

    async def complete(self, order_id: str, courier_id: str) -> Order:
        now = self._clock()
        async with _store_errors(order_id), self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            self._check_owner(order, courier_id)
            if order.status == OrderStatusEnum.DELIVERED:
                logger.info(f"Order {order_id} already delivered, nothing to do")
                return order
            if order.status not in (OrderStatusEnum.ACCEPTED, OrderStatusEnum.PROCESSING):
                raise InvalidOrderState(f"Order {order_id} is {order.status}")

            delivered = await uow.orders.mark_delivered(order_id, courier_id, now)
            if delivered is None:
                # a concurrent completion (timer and manual) may have won
                current = await uow.orders.get_by_id(order_id)
                if current.status == OrderStatusEnum.DELIVERED:
                    return current
                raise InvalidOrderState(f"Order {order_id} is {current.status}")

            await self._publish_update(uow, delivered, previous=order.status)
            await self._notify(
                uow, delivered.shop_id, f"Order {delivered.order_number} was delivered"
            )
            await uow.commit()

        logger.info(f"Order {delivered.order_number} delivered by {courier_id}")
        self._schedule_history(delivered, HistoryStatusEnum.COMPLETED, completed_at=now)
        return delivered

    async def cancel(self, order_id: str, shop_id: str | None = None) -> Order:
        now = self._clock()
        async with _store_errors(order_id), self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            if shop_id is not None and order.shop_id != shop_id:
                raise PermissionDenied(f"Order {order_id} belongs to another shop")
            if order.status == OrderStatusEnum.CANCELLED:
                return order
            if order.status not in (OrderStatusEnum.PENDING, OrderStatusEnum.ACCEPTED):
                raise InvalidOrderState(f"Order {order_id} is {order.status}")

            cancelled = await uow.orders.cancel(order_id, now)
            if cancelled is None:
                current = await uow.orders.get_by_id(order_id)
                raise InvalidOrderState(f"Order {order_id} is {current.status}")

            await self._publish_update(uow, cancelled, previous=order.status)
            if cancelled.courier_id is not None:
                await self._notify(
                    uow,
                    cancelled.courier_id,
                    f"Order {cancelled.order_number} was cancelled",
                    kind="warning",
                )
            await uow.commit()

        logger.info(f"Order {cancelled.order_number} cancelled")
        return cancelled

    async def transfer(
        self, order_id: str, to_courier_id: str, from_courier_id: str | None = None
    ) -> Order:
        """Hand an accepted or processing order to another courier (admin action).

        The write is conditional on the courier read here, so a concurrent
        completion, cancellation or second transfer makes this one fail.
        """
        if not to_courier_id:
            raise InvalidArgument("Transfer needs a target courier")

        now = self._clock()
        async with _store_errors(order_id), self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            if from_courier_id is not None and order.courier_id != from_courier_id:
                raise PermissionDenied(
                    f"Order {order_id} is not assigned to courier {from_courier_id}"
                )
            if order.status not in (OrderStatusEnum.ACCEPTED, OrderStatusEnum.PROCESSING):
                raise InvalidOrderState(f"Order {order_id} is {order.status}")
            if order.courier_id == to_courier_id:
                raise InvalidArgument(f"Order {order_id} already belongs to {to_courier_id}")

            moved = await uow.orders.transfer(order_id, order.courier_id, to_courier_id, now)
            if moved is None:
                raise InvalidOrderState(f"Order {order_id} changed during transfer")

            await self._publish_update(uow, moved, previous=order.status)
            await self._notify(
                uow,
                order.courier_id,
                f"Order {moved.order_number} was transferred to another courier",
                kind="warning",
            )
            await self._notify(
                uow, to_courier_id, f"Order {moved.order_number} was transferred to you"
            )
            await uow.commit()

        logger.info(
            f"Order {moved.order_number} transferred from {order.courier_id} to {to_courier_id}"
        )
        self._schedule_history(
            moved, HistoryStatusEnum.ACCEPTED, notes=f"Transferred from {order.courier_id}"
        )
        return moved

    async def drain(self) -> None:
        while self._history_writes:
            await asyncio.gather(*self._history_writes)

    @staticmethod
    def _check_owner(order: Order, courier_id: str) -> None:
        if order.courier_id != courier_id:
            raise PermissionDenied(
                f"Order {order.id} is not assigned to courier {courier_id}"
            )

    @staticmethod
    async def _publish_update(uow, order: Order, previous: OrderStatusEnum) -> None:
        payload = OrderUpdatePayload.from_order(order).model_copy(
            update={"previous_status": previous}
        )
        await uow.outbox.create(
            event=OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.ORDER_UPDATED,
                payload=payload.model_dump(mode="json"),
            )
        )

    @staticmethod
    async def _notify(uow, user_id: str, message: str, kind: str = "info") -> None:
        await uow.outbox.create(
            event=OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.NOTIFICATION,
                payload={"user_id": user_id, "message": message, "type": kind},
            )
        )

    def _schedule_history(self, order: Order, status: HistoryStatusEnum, **fields) -> None:
        task = asyncio.create_task(self._record_history(order, status, **fields))
        self._history_writes.add(task)
        task.add_done_callback(self._history_writes.discard)

    async def _record_history(
        self,
        order: Order,
        status: HistoryStatusEnum,
        notes: str | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        try:
            async with self._unit_of_work() as uow:
                await uow.history.upsert(
                    HistoryRepository.UpsertDTO(
                        order_id=order.id,
                        order_number=order.order_number,
                        courier_id=order.courier_id,
                        customer_name=order.customer_name,
                        customer_phone=order.customer_phone,
                        delivery_address=order.delivery_address,
                        amount=order.amount,
                        status=status,
                        notes=notes,
                        accepted_at=order.assigned_at or self._clock(),
                        completed_at=completed_at,
                    )
                )
                await uow.commit()
        except Exception as e:
            logger.warning(
                f"Delivery history write failed for order {order.id} "
                f"courier {order.courier_id}: {e}",
                exc_info=True,
            )
            if self._on_history_failure is not None:
                self._on_history_failure(order.id, order.courier_id, e)
