import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from courier_dispatch.client.api_client import DispatchApiClient, DispatchUnavailable
from courier_dispatch.client.board import ACTIVE_STATUSES, OrderBoard
from courier_dispatch.client.countdown import CountdownEngine
from courier_dispatch.client.listener import ClientListener
from courier_dispatch.client.state_store import ClientState, JsonStateStore
from courier_dispatch.core.clock import Clock, utcnow
from courier_dispatch.core.errors import OrderActionError
from courier_dispatch.core.models import Order, OrderPreview, OrderStatusEnum, Role

logger = logging.getLogger(__name__)


class Reconciler:
    """Replaces the board with the store's view of this role's orders.

    Runs every ``interval`` seconds while visible, when visibility comes back,
    and on demand. Unforced requests within ``min_interval`` of the last
    resync are skipped; requests made while one is running share its result.
    """

    def __init__(
        self,
        user_id: str,
        role: Role,
        api: DispatchApiClient,
        board: OrderBoard,
        countdown: CountdownEngine,
        store: JsonStateStore,
        listener: ClientListener,
        clock: Clock = utcnow,
        interval: float = 10.0,
        min_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._user_id = user_id
        self._role = role
        self._api = api
        self._board = board
        self._countdown = countdown
        self._store = store
        self._listener = listener
        self._clock = clock
        self._interval = interval
        self._min_interval = timedelta(seconds=min_interval)
        self._sleep = sleep
        self._visible = True
        self._last_resync: datetime | None = None
        self._inflight: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def last_resync(self) -> datetime | None:
        return self._last_resync

    def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def set_visible(self, visible: bool) -> None:
        regained = visible and not self._visible
        self._visible = visible
        if regained:
            await self.resync()

    async def resync(self, force: bool = False) -> bool:
        task = self._inflight
        if task is None:
            if not force and self._too_soon():
                logger.debug("Resync skipped, last one was moments ago")
                return False
            task = self._inflight = asyncio.create_task(self._resync())
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    def _too_soon(self) -> bool:
        if self._last_resync is None:
            return False
        return self._clock() - self._last_resync < self._min_interval

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            if self._visible:
                await self.resync()

    async def _fetch(self) -> list[Order]:
        if self._role == Role.COURIER:
            available = await self._api.list_available()
            mine = await self._api.list_courier_orders(
                self._user_id,
                statuses=[*ACTIVE_STATUSES, OrderStatusEnum.DELIVERED],
            )
            return [*available, *mine]
        if self._role == Role.SHOP:
            return await self._api.list_shop_orders(self._user_id)
        return await self._api.list_orders()

    async def _resync(self) -> bool:
        try:
            orders = await self._fetch()
        except (DispatchUnavailable, OrderActionError) as e:
            logger.warning(f"Resync failed, keeping current board: {e}")
            return False

        previews = [OrderPreview.from_order(order) for order in orders]
        self._board.replace(previews)
        self._last_resync = self._clock()
        await self._reconcile_countdowns(previews)
        self._persist()
        logger.info(
            f"Resynced {len(previews)} orders: {len(self._board.unclaimed)} unclaimed, "
            f"{len(self._board.active)} active"
        )
        self._listener.on_resync(self._board)
        return True

    async def _reconcile_countdowns(self, orders: list[OrderPreview]) -> None:
        processing = {
            order.id: order
            for order in orders
            if order.status == OrderStatusEnum.PROCESSING and order.eta is not None
        }
        for order_id in self._countdown.running:
            if order_id not in processing:
                self._countdown.cancel(order_id)
        for order in processing.values():
            await self._countdown.start(
                order.id,
                order.eta,
                order.courier_id,
                publish=self._role == Role.COURIER and order.courier_id == self._user_id,
                resume=True,
            )

    def _persist(self) -> None:
        try:
            self._store.save(
                ClientState(
                    role=self._role,
                    user_id=self._user_id,
                    last_resync_at=self._last_resync,
                    unclaimed=self._board.unclaimed,
                )
            )
        except OSError as e:
            logger.warning(f"Could not persist client state: {e}")
