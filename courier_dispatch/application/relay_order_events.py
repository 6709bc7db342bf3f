import logging
from collections import OrderedDict

from pydantic import ValidationError

from courier_dispatch.core.models import Envelope, EventTypeEnum, Role
from courier_dispatch.infrastructure.channel_hub import ChannelHub

logger = logging.getLogger(__name__)

AUDIENCES: dict[str, tuple[Role, ...]] = {
    EventTypeEnum.NEW_ORDER_AVAILABLE: (Role.COURIER, Role.ADMIN),
    EventTypeEnum.ORDER_UPDATED: (Role.COURIER, Role.ADMIN),
    EventTypeEnum.COUNTDOWN_STARTED: (Role.SHOP, Role.COURIER, Role.ADMIN),
    EventTypeEnum.COUNTDOWN_UPDATE: (Role.SHOP, Role.COURIER, Role.ADMIN),
}


class RelayOrderEventsUseCase:
    """Fans published order events out to the connected sessions of this process."""

    def __init__(self, channel_hub: ChannelHub, remember: int = 1024):
        self._hub = channel_hub
        self._remember = remember
        self._seen: OrderedDict[str, None] = OrderedDict()

    def _already_relayed(self, message_id: str | None) -> bool:
        if message_id is None:
            return False
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        if len(self._seen) > self._remember:
            self._seen.popitem(last=False)
        return False

    async def __call__(self, event_data: dict, message_id: str | None = None) -> int:
        try:
            envelope = Envelope(
                type=event_data["type"], payload=event_data.get("payload") or {}
            )
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Skipping malformed event {message_id}: {e}")
            return 0

        if self._already_relayed(message_id):
            logger.debug(f"Event {message_id} already relayed")
            return 0

        if envelope.type == EventTypeEnum.NOTIFICATION:
            user_id = envelope.payload.get("user_id")
            if not user_id:
                logger.warning(f"Notification {message_id} has no target user")
                return 0
            return int(await self._hub.send_to_user(user_id, envelope))

        roles = AUDIENCES.get(envelope.type)
        if roles is None:
            logger.warning(f"No audience for event type {envelope.type}")
            return 0

        delivered = 0
        if envelope.type == EventTypeEnum.ORDER_UPDATED:
            shop_id = envelope.payload.get("shop_id")
            if shop_id and await self._hub.send_to_shop(shop_id, envelope):
                delivered += 1

        delivered += await self._hub.fan_out(envelope, roles)
        logger.info(f"Relayed {envelope.type} to {delivered} sessions")
        return delivered
