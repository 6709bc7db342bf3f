import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Awaitable, Callable

from pydantic import BaseModel

from courier_dispatch.core.clock import Clock, ensure_utc, utcnow
from courier_dispatch.core.models import Envelope, EventTypeEnum

logger = logging.getLogger(__name__)

URGENT_BELOW = timedelta(minutes=5)

ExpiryCallback = Callable[[str, str | None], Awaitable[None]]
Publish = Callable[[Envelope], Awaitable[None]]
TickListener = Callable[["CountdownTick"], None]


class CountdownState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CountdownTick(BaseModel):
    order_id: str
    remaining_seconds: int
    display: str
    urgent: bool


def format_remaining(remaining: timedelta) -> str:
    total = max(0, int(remaining.total_seconds()))
    minutes, seconds = divmod(total, 60)
    return f"{minutes:02d}:{seconds:02d}"


class _Timer:
    def __init__(self, order_id: str, eta: datetime, courier_id: str | None, publish: bool):
        self.order_id = order_id
        self.eta = eta
        self.courier_id = courier_id
        self.publish = publish
        self.state = CountdownState.RUNNING
        self.task: asyncio.Task | None = None


class CountdownEngine:
    """Per-order delivery countdowns, keyed by order id.

    Each running order has its own tick task. Expiry moves the order to
    EXPIRED and calls ``on_expired`` once. An expired order id is never
    restarted; a cancelled one only by an authoritative read of the store
    (``resume=True``), never by a push. The last ``remember`` finished ids
    are kept.
    """

    def __init__(
        self,
        on_expired: ExpiryCallback,
        clock: Clock = utcnow,
        tick_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        publish: Publish | None = None,
        sync_every: int = 30,
        remember: int = 1024,
    ):
        self._on_expired = on_expired
        self._clock = clock
        self._tick_interval = tick_interval
        self._sleep = sleep
        self._publish = publish
        self._sync_every = max(1, sync_every)
        self._timers: dict[str, _Timer] = {}
        self._remember = remember
        self._finished: OrderedDict[str, CountdownState] = OrderedDict()
        self._listeners: list[TickListener] = []

    def add_listener(self, listener: TickListener) -> None:
        self._listeners.append(listener)

    def state(self, order_id: str) -> CountdownState:
        if order_id in self._timers:
            return CountdownState.RUNNING
        return self._finished.get(order_id, CountdownState.IDLE)

    @property
    def running(self) -> list[str]:
        return list(self._timers)

    def remaining(self, order_id: str) -> timedelta | None:
        timer = self._timers.get(order_id)
        if timer is None:
            return None
        return self._remaining(timer)

    def _remaining(self, timer: _Timer) -> timedelta:
        return max(timedelta(0), timer.eta - self._clock())

    async def start(
        self,
        order_id: str,
        eta: datetime,
        courier_id: str | None = None,
        publish: bool = False,
        resume: bool = False,
    ) -> bool:
        """Start ticking for ``order_id``. Returns False when nothing new was started."""
        eta = ensure_utc(eta)
        finished = self._finished.get(order_id)
        if finished == CountdownState.EXPIRED or (
            finished == CountdownState.CANCELLED and not resume
        ):
            logger.debug(f"Countdown for {order_id} already {finished}, not restarting")
            return False

        timer = self._timers.get(order_id)
        if timer is not None:
            timer.eta = eta
            timer.courier_id = courier_id or timer.courier_id
            timer.publish = timer.publish or publish
            return False

        timer = _Timer(order_id, eta, courier_id, publish)
        self._timers[order_id] = timer
        self._finished.pop(order_id, None)
        logger.info(f"Countdown started for {order_id}, eta {eta.isoformat()}")
        timer.task = asyncio.create_task(self._run(timer))
        return True

    async def update(self, order_id: str, eta: datetime) -> None:
        eta = ensure_utc(eta)
        timer = self._timers.get(order_id)
        if timer is None:
            if order_id not in self._finished and eta > self._clock():
                await self.start(order_id, eta)
            return

        timer.eta = eta
        if self._remaining(timer) <= timedelta(0):
            await self._expire(timer)

    def cancel(self, order_id: str) -> None:
        timer = self._timers.pop(order_id, None)
        if timer is None:
            # a finished order may still see a late start or sync push
            if order_id not in self._finished:
                self._finish(order_id, CountdownState.CANCELLED)
            return
        timer.state = CountdownState.CANCELLED
        self._finish(order_id, CountdownState.CANCELLED)
        if timer.task is not None and timer.task is not asyncio.current_task():
            timer.task.cancel()
        logger.info(f"Countdown for {order_id} cancelled")

    async def shutdown(self) -> None:
        tasks = []
        for order_id in list(self._timers):
            timer = self._timers[order_id]
            self.cancel(order_id)
            if timer.task is not None:
                tasks.append(timer.task)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._finished.clear()

    def _finish(self, order_id: str, state: CountdownState) -> None:
        self._finished[order_id] = state
        self._finished.move_to_end(order_id)
        if len(self._finished) > self._remember:
            self._finished.popitem(last=False)

    async def _run(self, timer: _Timer) -> None:
        ticks = 0
        while timer.state == CountdownState.RUNNING:
            remaining = self._remaining(timer)
            self._notify(timer, remaining)
            if remaining <= timedelta(0):
                await self._expire(timer)
                return

            ticks += 1
            if timer.publish and self._publish is not None and ticks % self._sync_every == 0:
                await self._send_update(timer)
            await self._sleep(self._tick_interval)

    async def _expire(self, timer: _Timer) -> None:
        # state flips before the first await so a concurrent observer sees EXPIRED
        if timer.state != CountdownState.RUNNING:
            return
        timer.state = CountdownState.EXPIRED
        self._timers.pop(timer.order_id, None)
        self._finish(timer.order_id, CountdownState.EXPIRED)
        if timer.task is not None and timer.task is not asyncio.current_task():
            timer.task.cancel()

        logger.info(f"Countdown for {timer.order_id} expired")
        try:
            await self._on_expired(timer.order_id, timer.courier_id)
        except Exception as e:
            logger.error(f"Expiry handler failed for {timer.order_id}: {e}", exc_info=True)

    def _notify(self, timer: _Timer, remaining: timedelta) -> None:
        tick = CountdownTick(
            order_id=timer.order_id,
            remaining_seconds=int(remaining.total_seconds()),
            display=format_remaining(remaining),
            urgent=remaining < URGENT_BELOW,
        )
        for listener in self._listeners:
            try:
                listener(tick)
            except Exception as e:
                logger.error(f"Countdown listener failed: {e}", exc_info=True)

    async def _send_update(self, timer: _Timer) -> None:
        try:
            await self._publish(
                Envelope(
                    type=EventTypeEnum.COUNTDOWN_UPDATE,
                    payload={
                        "id": timer.order_id,
                        "order_id": timer.order_id,
                        "eta": timer.eta.isoformat(),
                        "courier_id": timer.courier_id,
                    },
                )
            )
        except Exception as e:
            logger.warning(f"Countdown sync for {timer.order_id} not sent: {e}")
