import inspect
import json
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from courier_dispatch.client.board import OrderBoard
from courier_dispatch.client.countdown import CountdownEngine
from courier_dispatch.client.listener import ClientListener
from courier_dispatch.core.models import (
    CountdownPayload,
    EventTypeEnum,
    OrderPreview,
    OrderStatusEnum,
    OrderUpdatePayload,
    Role,
)

logger = logging.getLogger(__name__)

# server -> client types of the flattened message shape
LEGACY_TYPES = {
    "identified": EventTypeEnum.IDENTIFIED,
    "force_logout": EventTypeEnum.FORCE_LOGOUT,
    "new_order_available": EventTypeEnum.NEW_ORDER_AVAILABLE,
    "order_update": EventTypeEnum.ORDER_UPDATED,
    "order_updated": EventTypeEnum.ORDER_UPDATED,
    "countdown_started": EventTypeEnum.COUNTDOWN_STARTED,
    "countdown_update": EventTypeEnum.COUNTDOWN_UPDATE,
    "notification": EventTypeEnum.NOTIFICATION,
}

INBOUND_TYPES = frozenset(LEGACY_TYPES.values())


class UndecodableMessage(ValueError):
    pass


class InboundEvent(BaseModel):
    type: EventTypeEnum
    payload: dict
    legacy: bool = False


class _CanonicalMessage(BaseModel):
    type: EventTypeEnum
    payload: dict


def decode_event(raw: Any) -> InboundEvent | None:
    """Normalise one pushed message.

    The nested ``{type, payload}`` shape is tried first, then the flattened
    ``{type, ...fields}`` shape. Returns None for a well-formed message of a
    type this client does not handle; raises UndecodableMessage otherwise.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise UndecodableMessage(f"not JSON: {e}") from e
    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        raise UndecodableMessage("message has no type discriminator")

    try:
        canonical = _CanonicalMessage.model_validate(raw)
        if canonical.type in INBOUND_TYPES:
            return InboundEvent(type=canonical.type, payload=canonical.payload)
    except ValidationError:
        pass

    event_type = LEGACY_TYPES.get(raw["type"])
    if event_type is None and raw["type"] in INBOUND_TYPES:
        event_type = EventTypeEnum(raw["type"])
    if event_type is None:
        return None

    payload = {key: value for key, value in raw.items() if key != "type"}
    # some legacy senders still nest the fields under "payload" or "data"
    for nested in ("payload", "data"):
        if isinstance(payload.get(nested), dict):
            payload = {**payload.pop(nested), **payload}
    return InboundEvent(type=event_type, payload=payload, legacy=True)


class EventRouter:
    def __init__(
        self,
        user_id: str,
        role: Role,
        board: OrderBoard,
        countdown: CountdownEngine,
        listener: ClientListener,
        request_resync: Callable[[], Awaitable[Any]],
        on_force_logout: Callable[[str], Awaitable[None]] | None = None,
    ):
        self._user_id = user_id
        self._role = role
        self._board = board
        self._countdown = countdown
        self._listener = listener
        self._request_resync = request_resync
        self._on_force_logout = on_force_logout
        self._handlers: dict[EventTypeEnum, Callable[[dict], Awaitable[None]]] = {
            EventTypeEnum.IDENTIFIED: self._identified,
            EventTypeEnum.FORCE_LOGOUT: self._force_logout,
            EventTypeEnum.NEW_ORDER_AVAILABLE: self._new_order,
            EventTypeEnum.ORDER_UPDATED: self._order_updated,
            EventTypeEnum.COUNTDOWN_STARTED: self._countdown_started,
            EventTypeEnum.COUNTDOWN_UPDATE: self._countdown_update,
            EventTypeEnum.NOTIFICATION: self._notification,
        }

    async def route(self, raw: Any) -> None:
        try:
            event = decode_event(raw)
        except UndecodableMessage as e:
            logger.warning(f"Dropping pushed message: {e}")
            return

        if event is None:
            logger.info(f"Ignoring message of unknown type: {str(raw)[:200]}")
            return

        try:
            await self._handlers[event.type](event.payload)
        except Exception as e:
            logger.error(f"Handler for {event.type} failed: {e}", exc_info=True)

    async def _identified(self, payload: dict) -> None:
        logger.info(f"Identified by hub as {payload.get('role')} {payload.get('userId')}")

    async def _force_logout(self, payload: dict) -> None:
        reason = payload.get("reason") or "Unknown reason"
        logger.warning(f"Forced logout: {reason}")
        self._listener.on_force_logout(reason)
        if self._on_force_logout is not None:
            await self._on_force_logout(reason)

    async def _new_order(self, payload: dict) -> None:
        if self._role not in (Role.COURIER, Role.ADMIN):
            return
        preview = OrderPreview.model_validate(payload).model_copy(
            update={"status": OrderStatusEnum.PENDING, "courier_id": None}
        )
        self._board.add_unclaimed(preview)
        self._listener.on_new_order(preview)
        # the push is a hint, the store is the truth
        await _maybe_await(self._request_resync())

    async def _order_updated(self, payload: dict) -> None:
        update = OrderUpdatePayload.model_validate(payload)
        preview = OrderPreview.model_validate(update.model_dump())

        if update.status == OrderStatusEnum.ACCEPTED:
            if update.courier_id == self._user_id:
                self._board.upsert(preview)
                self._listener.on_claim_confirmed(preview)
                return
            # a courier board drops it, including an active order transferred away
            self._board.upsert(preview)
            if self._role == Role.COURIER:
                self._listener.on_order_taken(update.id)
            self._listener.on_order_updated(preview)

        elif update.status == OrderStatusEnum.PROCESSING:
            if self._role == Role.COURIER and update.courier_id != self._user_id:
                self._countdown.cancel(update.id)
            self._board.upsert(preview)
            self._listener.on_order_updated(preview)
            await _maybe_await(self._request_resync())

        elif update.status == OrderStatusEnum.DELIVERED:
            self._countdown.cancel(update.id)
            self._board.move_to_history(preview)
            self._listener.on_order_updated(preview)

        elif update.status == OrderStatusEnum.CANCELLED:
            self._countdown.cancel(update.id)
            self._board.remove(update.id)
            self._listener.on_order_updated(preview)

        else:
            self._board.upsert(preview)
            self._listener.on_order_updated(preview)

    async def _countdown_started(self, payload: dict) -> None:
        countdown = CountdownPayload.model_validate(
            {"id": payload.get("id") or payload.get("order_id"), **_without_id(payload)}
        )
        await self._countdown.start(countdown.id, countdown.eta, countdown.courier_id)

    async def _countdown_update(self, payload: dict) -> None:
        countdown = CountdownPayload.model_validate(
            {"id": payload.get("id") or payload.get("order_id"), **_without_id(payload)}
        )
        await self._countdown.update(countdown.id, countdown.eta)

    async def _notification(self, payload: dict) -> None:
        message = payload.get("message") or ""
        self._listener.on_notification(message, payload.get("type") or "info")


def _without_id(payload: dict) -> dict:
    return {key: value for key, value in payload.items() if key not in ("id", "order_id")}


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result
