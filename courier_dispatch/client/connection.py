import asyncio
import inspect
import logging
from collections import deque
from enum import StrEnum
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from pydantic import BaseModel
from websockets.asyncio.client import connect

from courier_dispatch.core.models import Envelope, EventTypeEnum

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str]: ...


TransportFactory = Callable[[str], Awaitable[Transport]]
Sleep = Callable[[float], Awaitable[None]]


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


class ReconnectPolicy(BaseModel):
    base_delay: float = 2.0
    growth_factor: float = 1.5
    max_delay: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * self.growth_factor ** (attempt - 1))


class ConnectionManager:
    """One logical push-channel session that survives transport drops.

    Every open starts with IDENTIFY, then flushes messages queued while
    disconnected in enqueue order. Unexpected closes are retried with
    exponential backoff until ``max_attempts`` reconnects have failed, after
    which the manager stays in ``FAILED`` until ``connect()`` is called again.
    """

    EVENTS = ("open", "message", "close", "error", "reconnect", "failed")

    def __init__(
        self,
        url: str,
        policy: ReconnectPolicy | None = None,
        transport_factory: TransportFactory = connect,
        sleep: Sleep = asyncio.sleep,
    ):
        self._url = url
        self._policy = policy or ReconnectPolicy()
        self._transport_factory = transport_factory
        self._sleep = sleep
        self._handlers: dict[str, list[Callable[..., Any]]] = {e: [] for e in self.EVENTS}
        self._queue: deque[str] = deque()
        self._state = ConnectionState.IDLE
        self._transport: Transport | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._attempts = 0
        self._closing = False
        self._user_id: str | None = None
        self._role: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_task is not None

    @property
    def queued(self) -> tuple[str, ...]:
        return tuple(self._queue)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event not in self._handlers:
            logger.warning(f"Ignoring handler for unknown connection event {event!r}")
            return
        self._handlers[event].append(handler)

    async def connect(self, user_id: str | None = None, role: str | None = None) -> None:
        if user_id is not None:
            self._user_id, self._role = user_id, role
        if self._user_id is None or self._role is None:
            raise ValueError("connect() needs a user id and role")
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        # a manual connect starts a fresh retry budget, also the way out of FAILED
        self._closing = False
        self._cancel_reconnect()
        self._attempts = 0
        await self._open()

    async def send(self, message: Envelope | dict) -> None:
        frame = self._encode(message)
        transport = self._transport
        if self._state == ConnectionState.CONNECTED and transport is not None:
            try:
                await transport.send(frame)
                return
            except Exception as e:
                logger.warning(f"Send failed, keeping message for the next connection: {e}")
                self._queue.append(frame)
                await self._emit("error", e)
                await self._lost(transport)
                return

        self._queue.append(frame)
        logger.debug(f"Queued message while {self._state}, {len(self._queue)} pending")
        if (
            self._state in (ConnectionState.IDLE, ConnectionState.CLOSED)
            and self._reconnect_task is None
            and self._user_id is not None
            and not self._closing
        ):
            self._state = ConnectionState.CONNECTING
            self._connect_task = asyncio.create_task(self._open())

    async def subscribe(self, channel: str) -> None:
        await self.send(Envelope(type=EventTypeEnum.SUBSCRIBE, payload={"channel": channel}))

    async def close(self) -> None:
        self._closing = True
        self._cancel_reconnect()
        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        was_open = transport is not None
        self._state = ConnectionState.CLOSED

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if transport is not None:
            await self._close_transport(transport)
        if was_open:
            await self._emit("close")
        logger.info("Connection closed")

    @staticmethod
    def _encode(message: Envelope | dict) -> str:
        if isinstance(message, Envelope):
            return message.model_dump_json()
        return Envelope.model_validate(message).model_dump_json()

    async def _open(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            transport = await self._transport_factory(self._url)
        except Exception as e:
            logger.warning(f"Could not open channel to {self._url}: {e}")
            self._state = ConnectionState.CLOSED
            await self._emit("error", e)
            await self._schedule_reconnect()
            return

        if self._closing:
            await self._close_transport(transport)
            self._state = ConnectionState.CLOSED
            return

        self._transport = transport
        try:
            await transport.send(
                Envelope(
                    type=EventTypeEnum.IDENTIFY,
                    payload={"userId": self._user_id, "role": self._role},
                ).model_dump_json()
            )
            while self._queue:
                await transport.send(self._queue[0])
                self._queue.popleft()
        except Exception as e:
            logger.warning(f"Channel dropped during handshake: {e}")
            await self._emit("error", e)
            await self._lost(transport)
            return

        if self._transport is not transport:
            # closed while the handshake was in flight
            return

        self._state = ConnectionState.CONNECTED
        self._attempts = 0
        logger.info(f"Channel open as {self._role} {self._user_id}")
        self._reader_task = asyncio.create_task(self._read(transport))
        await self._emit("open")

    async def _read(self, transport: Transport) -> None:
        try:
            async for raw in transport:
                await self._emit("message", raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Channel read failed: {e}")
            await self._emit("error", e)

        if self._transport is transport:
            await self._lost(transport)

    async def _lost(self, transport: Transport) -> None:
        if self._transport is transport:
            self._transport = None
            self._reader_task = None
        self._state = ConnectionState.CLOSED
        await self._close_transport(transport)
        await self._emit("close")
        if not self._closing:
            await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        if self._closing or self._reconnect_task is not None:
            return
        if self._attempts >= self._policy.max_attempts:
            self._state = ConnectionState.FAILED
            logger.error(
                f"Giving up after {self._attempts} reconnect attempts, "
                f"waiting for a manual connect"
            )
            await self._emit("failed")
            return

        self._attempts += 1
        delay = self._policy.delay(self._attempts)
        logger.info(f"Reconnect attempt {self._attempts} in {delay:.2f}s")
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(self._attempts, delay)
        )

    async def _reconnect_after(self, attempt: int, delay: float) -> None:
        await self._sleep(delay)
        self._reconnect_task = None
        await self._emit("reconnect", attempt)
        await self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            if self._reconnect_task is not asyncio.current_task():
                self._reconnect_task.cancel()
            self._reconnect_task = None

    @staticmethod
    async def _close_transport(transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing transport: {e}")

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers[event]:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Connection {event} handler failed: {e}", exc_info=True)
