import logging

from courier_dispatch.client.api_client import DispatchApiClient, DispatchUnavailable
from courier_dispatch.client.board import OrderBoard
from courier_dispatch.client.connection import ConnectionManager
from courier_dispatch.client.countdown import CountdownEngine
from courier_dispatch.client.listener import ClientListener
from courier_dispatch.client.reconciler import Reconciler
from courier_dispatch.client.router import EventRouter
from courier_dispatch.client.state_store import JsonStateStore
from courier_dispatch.core.clock import Clock, utcnow
from courier_dispatch.core.errors import OrderActionError
from courier_dispatch.core.models import ClaimResult, Order, OrderPreview, Role

logger = logging.getLogger(__name__)


class DispatchClient:
    """One signed-in admin, courier or shop.

    Wires the push channel, event router, countdowns and resync together and
    exposes the order actions. Transport trouble and lost claim races are
    handled here and reported through the listener; permission and state
    failures of an action are raised to its caller.
    """

    def __init__(
        self,
        user_id: str,
        role: Role | str,
        connection: ConnectionManager,
        api: DispatchApiClient,
        store: JsonStateStore,
        listener: ClientListener | None = None,
        clock: Clock = utcnow,
        tick_interval: float = 1.0,
        sync_every: int = 30,
        resync_interval: float = 10.0,
        resync_min_interval: float = 2.0,
    ):
        parsed = Role.parse(role)
        if parsed is None:
            raise ValueError(f"Unknown role {role!r}")

        self.user_id = user_id
        self.role = parsed
        self._connection = connection
        self._api = api
        self._store = store
        self._listener = listener or ClientListener()

        self.board = OrderBoard(courier_id=user_id if parsed == Role.COURIER else None)
        self.countdown = CountdownEngine(
            on_expired=self._on_countdown_expired,
            clock=clock,
            tick_interval=tick_interval,
            publish=connection.send,
            sync_every=sync_every,
        )
        self.countdown.add_listener(self._listener.on_countdown_tick)
        self.reconciler = Reconciler(
            user_id=user_id,
            role=parsed,
            api=api,
            board=self.board,
            countdown=self.countdown,
            store=store,
            listener=self._listener,
            clock=clock,
            interval=resync_interval,
            min_interval=resync_min_interval,
        )
        self.router = EventRouter(
            user_id=user_id,
            role=parsed,
            board=self.board,
            countdown=self.countdown,
            listener=self._listener,
            request_resync=self.reconciler.resync,
            on_force_logout=self._on_force_logout,
        )

        connection.on("message", self.router.route)
        connection.on("open", self._on_open)
        connection.on("close", lambda: self._listener.on_connection_status("disconnected"))
        connection.on(
            "reconnect",
            lambda attempt: self._listener.on_connection_status("reconnecting", attempt),
        )
        connection.on("failed", lambda: self._listener.on_connection_status("failed"))

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    async def start(self) -> None:
        state = self._store.load()
        if state is not None and state.user_id == self.user_id and state.role == self.role:
            # show the cached list until the first resync lands
            for order in state.unclaimed:
                self.board.add_unclaimed(order)
        await self._connection.connect(self.user_id, self.role.value)
        await self.reconciler.resync()
        self.reconciler.start()

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.countdown.shutdown()
        await self._connection.close()

    async def logout(self) -> None:
        await self.stop()
        self._store.clear()
        await self._api.aclose()
        logger.info(f"{self.role} {self.user_id} logged out")

    async def refresh(self) -> bool:
        return await self.reconciler.resync(force=True)

    async def reconnect(self) -> None:
        await self._connection.connect()

    async def set_visible(self, visible: bool) -> None:
        await self.reconciler.set_visible(visible)

    async def accept(self, order_id: str) -> ClaimResult | None:
        generation = self.board.generation
        try:
            result, order = await self._api.claim(order_id, self.user_id)
        except DispatchUnavailable as e:
            logger.warning(f"Claim of {order_id} not sent: {e}")
            self._listener.on_unavailable("accept", e)
            return None

        if result == ClaimResult.CLAIMED:
            if order is not None:
                self.board.apply_claim(OrderPreview.from_order(order), generation)
            return result

        self.board.remove_unclaimed(order_id)
        self._listener.on_order_taken(order_id)
        self._listener.on_notification("Order is no longer available", "warning")
        await self.reconciler.resync(force=True)
        return result

    async def set_completion_time(self, order_id: str, minutes: int) -> Order | None:
        try:
            order = await self._api.set_completion_time(order_id, self.user_id, minutes)
        except DispatchUnavailable as e:
            logger.warning(f"ETA for {order_id} not sent: {e}")
            self._listener.on_unavailable("set_completion_time", e)
            return None

        self.board.upsert(OrderPreview.from_order(order))
        if order.eta is not None:
            await self.countdown.start(
                order.id, order.eta, self.user_id, publish=True, resume=True
            )
        return order

    async def complete(self, order_id: str) -> Order | None:
        try:
            order = await self._api.complete(order_id, self.user_id)
        except DispatchUnavailable as e:
            logger.warning(f"Completion of {order_id} not sent: {e}")
            self._listener.on_unavailable("complete", e)
            return None

        self.countdown.cancel(order_id)
        self.board.move_to_history(OrderPreview.from_order(order))
        return order

    async def transfer(self, order_id: str, to_courier_id: str) -> Order | None:
        try:
            order = await self._api.transfer(order_id, to_courier_id)
        except DispatchUnavailable as e:
            logger.warning(f"Transfer of {order_id} not sent: {e}")
            self._listener.on_unavailable("transfer", e)
            return None

        self.board.upsert(OrderPreview.from_order(order))
        return order

    async def _on_open(self) -> None:
        self._listener.on_connection_status("connected")
        # pushes may have been missed while the channel was down
        await self.reconciler.resync()

    async def _on_force_logout(self, reason: str) -> None:
        await self.logout()

    async def _on_countdown_expired(self, order_id: str, courier_id: str | None) -> None:
        if courier_id is None:
            order = self.board.get(order_id)
            courier_id = order.courier_id if order is not None else None
        if courier_id is None:
            logger.warning(f"Countdown for {order_id} expired with no known courier")
            return

        try:
            order = await self._api.complete(order_id, courier_id)
        except (DispatchUnavailable, OrderActionError) as e:
            # the overdue sweeper on the server completes it later
            logger.warning(f"Auto-completion of {order_id} failed: {e}")
            return

        self.board.move_to_history(OrderPreview.from_order(order))
        self._listener.on_countdown_expired(order_id)
