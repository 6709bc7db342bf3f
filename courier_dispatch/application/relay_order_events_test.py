from unittest.mock import AsyncMock

import pytest

from courier_dispatch.application.relay_order_events import RelayOrderEventsUseCase
from courier_dispatch.core.models import Envelope, EventTypeEnum, Role
from courier_dispatch.infrastructure.channel_hub import ChannelHub


@pytest.fixture
def channel_hub():
    hub = AsyncMock(spec=ChannelHub)
    hub.fan_out = AsyncMock(return_value=2)
    hub.send_to_shop = AsyncMock(return_value=True)
    hub.send_to_user = AsyncMock(return_value=True)
    return hub


@pytest.fixture
def relay(channel_hub) -> RelayOrderEventsUseCase:
    return RelayOrderEventsUseCase(channel_hub=channel_hub, remember=2)


class TestRelayOrderEventsUseCase:
    @pytest.mark.asyncio
    async def test_new_order_goes_to_couriers_and_admins(
        self, relay: RelayOrderEventsUseCase, channel_hub
    ):
        # Given
        event = {"type": "NEW_ORDER_AVAILABLE", "payload": {"id": "order-1"}}

        # When
        delivered = await relay(event, message_id="m-1")

        # Then
        assert delivered == 2
        channel_hub.fan_out.assert_awaited_once_with(
            Envelope(type="NEW_ORDER_AVAILABLE", payload={"id": "order-1"}),
            (Role.COURIER, Role.ADMIN),
        )
        channel_hub.send_to_shop.assert_not_called()

    @pytest.mark.asyncio
    async def test_order_update_reaches_owning_shop(
        self, relay: RelayOrderEventsUseCase, channel_hub
    ):
        # Given
        event = {
            "type": "ORDER_UPDATED",
            "payload": {"id": "order-1", "status": "accepted", "shop_id": "shop-3"},
        }

        # When
        delivered = await relay(event, message_id="m-1")

        # Then
        assert delivered == 3
        channel_hub.send_to_shop.assert_awaited_once()
        assert channel_hub.send_to_shop.call_args.args[0] == "shop-3"
        assert channel_hub.fan_out.call_args.args[1] == (Role.COURIER, Role.ADMIN)

    @pytest.mark.asyncio
    async def test_countdown_reaches_every_role(
        self, relay: RelayOrderEventsUseCase, channel_hub
    ):
        # When
        await relay(
            {"type": "COUNTDOWN_STARTED", "payload": {"id": "order-1"}}, message_id="m-1"
        )

        # Then
        assert set(channel_hub.fan_out.call_args.args[1]) == set(Role)

    @pytest.mark.asyncio
    async def test_notification_targets_one_user(
        self, relay: RelayOrderEventsUseCase, channel_hub
    ):
        # When
        delivered = await relay(
            {
                "type": "NOTIFICATION",
                "payload": {"user_id": "shop-3", "message": "hi", "type": "info"},
            },
            message_id="m-1",
        )
        missing_target = await relay(
            {"type": "NOTIFICATION", "payload": {"message": "hi"}}, message_id="m-2"
        )

        # Then
        assert delivered == 1
        assert missing_target == 0
        channel_hub.send_to_user.assert_awaited_once()
        assert channel_hub.send_to_user.call_args.args[0] == "shop-3"
        channel_hub.fan_out.assert_not_called()

    @pytest.mark.asyncio
    async def test_redelivered_message_is_relayed_once(
        self, relay: RelayOrderEventsUseCase, channel_hub
    ):
        # Given
        event = {"type": "NEW_ORDER_AVAILABLE", "payload": {"id": "order-1"}}

        # When
        await relay(event, message_id="m-1")
        await relay(event, message_id="m-1")

        # Then
        assert channel_hub.fan_out.await_count == 1

    @pytest.mark.asyncio
    async def test_forgets_oldest_ids_beyond_window(
        self, relay: RelayOrderEventsUseCase, channel_hub
    ):
        # Given
        event = {"type": "NEW_ORDER_AVAILABLE", "payload": {"id": "order-1"}}

        # When
        for message_id in ("m-1", "m-2", "m-3", "m-1"):
            await relay(event, message_id=message_id)

        # Then
        assert channel_hub.fan_out.await_count == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event",
        [
            {"payload": {"id": "order-1"}},
            {"type": "SOMETHING_ELSE", "payload": {}},
            {"type": "IDENTIFIED", "payload": {}},
        ],
    )
    async def test_unroutable_events_are_skipped(
        self, relay: RelayOrderEventsUseCase, channel_hub, event
    ):
        # When
        delivered = await relay(event, message_id="m-1")

        # Then
        assert delivered == 0
        channel_hub.fan_out.assert_not_called()

    @pytest.mark.asyncio
    async def test_relays_through_real_hub(self):
        # Given
        hub = ChannelHub()
        relay = RelayOrderEventsUseCase(channel_hub=hub)
        sent: list[dict] = []

        class Session:
            async def send_json(self, data):
                sent.append(data)

            async def close(self, code: int = 1000, reason: str | None = None):
                pass

        await hub.identify(Session(), "courier-a", "courier")
        sent.clear()

        # When
        delivered = await relay(
            {"type": EventTypeEnum.NEW_ORDER_AVAILABLE, "payload": {"id": "order-1"}}
        )

        # Then
        assert delivered == 1
        assert sent == [{"type": "NEW_ORDER_AVAILABLE", "payload": {"id": "order-1"}}]
