import json
from http import HTTPStatus

import pytest
from httpx import AsyncClient

from courier_dispatch.core.models import OrderStatusEnum, Role
from courier_dispatch.infrastructure.channel_hub import ChannelHub
from courier_dispatch.presentation.api import OrderCreateRequest, handle_client_message


def _order_request(**kwargs) -> dict:
    defaults = {
        "shop_id": "shop-1",
        "customer_name": "Ann",
        "customer_phone": "+10000000001",
        "delivery_address": "1 Main street",
        "amount": "19.99",
    }
    defaults.update(kwargs)
    return OrderCreateRequest(**defaults).model_dump(mode="json")


async def _create(client: AsyncClient, **kwargs) -> dict:
    response = await client.post("/orders", json=_order_request(**kwargs))
    assert response.status_code == HTTPStatus.CREATED
    return response.json()


class FakeWebSocket:
    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None):
        self.closed = True


@pytest.mark.asyncio
async def test_create_order(test_async_client: AsyncClient):
    # When
    response = await test_async_client.post("/orders", json=_order_request())

    # Then
    assert response.status_code == HTTPStatus.CREATED
    data = response.json()
    assert data["id"] is not None
    assert data["order_number"].startswith("ORD-")
    assert data["amount"] == "19.99"
    assert data["status"] == OrderStatusEnum.PENDING
    assert data["courier_id"] is None


@pytest.mark.asyncio
async def test_create_order_rejects_zero_amount(test_async_client: AsyncClient):
    # When
    response = await test_async_client.post(
        "/orders", json={**_order_request(), "amount": "0"}
    )

    # Then
    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_get_order(test_async_client: AsyncClient):
    # Given
    created = await _create(test_async_client)

    # When
    response = await test_async_client.get(f"/orders/{created['id']}")
    missing = await test_async_client.get("/orders/00000000-0000-0000-0000-000000000000")

    # Then
    assert response.status_code == HTTPStatus.OK
    assert response.json()["order_number"] == created["order_number"]
    assert missing.status_code == HTTPStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_claim_lifecycle(test_async_client: AsyncClient):
    # Given
    created = await _create(test_async_client)
    order_id = created["id"]

    # When
    claimed = await test_async_client.post(
        f"/orders/{order_id}/claim", json={"courier_id": "courier-a"}
    )
    lost = await test_async_client.post(
        f"/orders/{order_id}/claim", json={"courier_id": "courier-b"}
    )
    eta = await test_async_client.post(
        f"/orders/{order_id}/eta", json={"courier_id": "courier-a", "minutes": 20}
    )
    delivered = await test_async_client.post(
        f"/orders/{order_id}/complete", json={"courier_id": "courier-a"}
    )
    again = await test_async_client.post(
        f"/orders/{order_id}/complete", json={"courier_id": "courier-a"}
    )

    # Then
    assert claimed.status_code == HTTPStatus.OK
    assert claimed.json()["result"] == "claimed"
    assert claimed.json()["order"]["courier_id"] == "courier-a"
    assert lost.json() == {"result": "already_taken", "order": None}
    assert eta.json()["status"] == OrderStatusEnum.PROCESSING
    assert eta.json()["eta"] is not None
    assert delivered.json()["status"] == OrderStatusEnum.DELIVERED
    assert again.status_code == HTTPStatus.OK
    assert again.json()["delivered_at"] == delivered.json()["delivered_at"]


@pytest.mark.asyncio
async def test_action_errors_map_to_status_codes(test_async_client: AsyncClient):
    # Given
    created = await _create(test_async_client, shop_id="shop-2")
    order_id = created["id"]
    await test_async_client.post(
        f"/orders/{order_id}/claim", json={"courier_id": "courier-a"}
    )

    # When
    unknown = await test_async_client.post(
        "/orders/00000000-0000-0000-0000-000000000000/claim",
        json={"courier_id": "courier-a"},
    )
    not_owner = await test_async_client.post(
        f"/orders/{order_id}/eta", json={"courier_id": "courier-b", "minutes": 5}
    )
    bad_minutes = await test_async_client.post(
        f"/orders/{order_id}/eta", json={"courier_id": "courier-a", "minutes": 0}
    )
    wrong_shop = await test_async_client.post(
        f"/orders/{order_id}/cancel", json={"shop_id": "shop-1"}
    )
    await test_async_client.post(
        f"/orders/{order_id}/eta", json={"courier_id": "courier-a", "minutes": 5}
    )
    too_late = await test_async_client.post(
        f"/orders/{order_id}/cancel", json={"shop_id": "shop-2"}
    )

    # Then
    assert unknown.status_code == HTTPStatus.NOT_FOUND
    assert not_owner.status_code == HTTPStatus.FORBIDDEN
    assert bad_minutes.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert wrong_shop.status_code == HTTPStatus.FORBIDDEN
    assert too_late.status_code == HTTPStatus.CONFLICT


@pytest.mark.asyncio
async def test_listings(test_async_client: AsyncClient, container):
    # Given
    free = await _create(test_async_client, shop_id="shop-1")
    taken = await _create(test_async_client, shop_id="shop-2")
    await test_async_client.post(
        f"/orders/{taken['id']}/claim", json={"courier_id": "courier-a"}
    )

    # When
    available = await test_async_client.get("/orders/available")
    accepted = await test_async_client.get("/orders", params={"status": "accepted"})
    everything = await test_async_client.get("/orders")
    mine = await test_async_client.get(
        "/couriers/courier-a/orders", params=[("status", "accepted"), ("status", "processing")]
    )
    await container.order_claim_coordinator().drain()
    history = await test_async_client.get("/couriers/courier-a/history")
    shop = await test_async_client.get("/shops/shop-1/orders")

    # Then
    assert [o["id"] for o in available.json()] == [free["id"]]
    assert [o["id"] for o in accepted.json()] == [taken["id"]]
    assert {o["id"] for o in everything.json()} == {free["id"], taken["id"]}
    assert [o["id"] for o in mine.json()] == [taken["id"]]
    assert [h["order_id"] for h in history.json()] == [taken["id"]]
    assert history.json()[0]["status"] == "accepted"
    assert [o["id"] for o in shop.json()] == [free["id"]]


@pytest.mark.asyncio
async def test_admin_transfers_active_order(test_async_client: AsyncClient):
    # Given
    order = await _create(test_async_client)
    pending = await _create(test_async_client)
    await test_async_client.post(
        f"/orders/{order['id']}/claim", json={"courier_id": "courier-a"}
    )

    # When
    moved = await test_async_client.post(
        f"/orders/{order['id']}/transfer",
        json={"to_courier_id": "courier-b", "from_courier_id": "courier-a"},
    )
    stale = await test_async_client.post(
        f"/orders/{order['id']}/transfer",
        json={"to_courier_id": "courier-c", "from_courier_id": "courier-a"},
    )
    unclaimed = await test_async_client.post(
        f"/orders/{pending['id']}/transfer", json={"to_courier_id": "courier-b"}
    )
    old_owner = await test_async_client.post(
        f"/orders/{order['id']}/complete", json={"courier_id": "courier-a"}
    )

    # Then
    assert moved.status_code == HTTPStatus.OK
    assert moved.json()["courier_id"] == "courier-b"
    assert moved.json()["status"] == OrderStatusEnum.ACCEPTED
    assert stale.status_code == HTTPStatus.FORBIDDEN
    assert unclaimed.status_code == HTTPStatus.CONFLICT
    assert old_owner.status_code == HTTPStatus.FORBIDDEN

@pytest.mark.asyncio
async def test_health_reports_sessions(test_async_client: AsyncClient):
    # When
    response = await test_async_client.get("/health")

    # Then
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {
        "status": "ok",
        "sessions": {"admin": 0, "courier": 0, "shop": 0},
    }


class TestClientMessages:
    @pytest.mark.asyncio
    async def test_identify_with_legacy_keys(self):
        # Given
        hub, socket = ChannelHub(), FakeWebSocket()

        # When
        await handle_client_message(
            hub,
            socket,
            json.dumps({"type": "IDENTIFY", "payload": {"userId": "courier-a", "role": "driver"}}),
        )

        # Then
        assert hub.identity_of(socket) == (Role.COURIER, "courier-a")
        assert socket.sent[0]["type"] == "IDENTIFIED"

    @pytest.mark.asyncio
    async def test_subscribe(self):
        # Given
        hub, socket = ChannelHub(), FakeWebSocket()

        # When
        await handle_client_message(
            hub, socket, json.dumps({"type": "SUBSCRIBE", "payload": {"channel": "orders"}})
        )

        # Then
        assert hub.channel_of(socket) == "orders"

    @pytest.mark.asyncio
    async def test_countdown_from_courier_reaches_shops_and_admins(self):
        # Given
        hub = ChannelHub()
        courier, other_courier, shop, admin = (FakeWebSocket() for _ in range(4))
        await hub.identify(courier, "courier-a", "courier")
        await hub.identify(other_courier, "courier-b", "courier")
        await hub.identify(shop, "shop-1", "shop")
        await hub.identify(admin, "admin-1", "admin")
        message = {
            "type": "COUNTDOWN_UPDATE",
            "payload": {"id": "order-1", "eta": "2026-03-01T12:30:00+00:00"},
        }

        # When
        await handle_client_message(hub, courier, json.dumps(message))

        # Then
        assert shop.sent[-1] == message
        assert admin.sent[-1] == message
        assert [m["type"] for m in other_courier.sent] == ["IDENTIFIED"]
        assert [m["type"] for m in courier.sent] == ["IDENTIFIED"]

    @pytest.mark.asyncio
    async def test_countdown_from_unidentified_session_is_ignored(self):
        # Given
        hub, stranger, admin = ChannelHub(), FakeWebSocket(), FakeWebSocket()
        await hub.identify(admin, "admin-1", "admin")

        # When
        await handle_client_message(
            hub, stranger, json.dumps({"type": "COUNTDOWN_STARTED", "payload": {"id": "o"}})
        )

        # Then
        assert [m["type"] for m in admin.sent] == ["IDENTIFIED"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        ["not json", "[1, 2]", json.dumps({"type": "BOGUS"}), json.dumps({"type": "IDENTIFY"})],
    )
    async def test_bad_messages_are_dropped(self, raw):
        # Given
        hub, socket = ChannelHub(), FakeWebSocket()

        # When
        await handle_client_message(hub, socket, raw)

        # Then
        assert socket.sent == []
        assert hub.identity_of(socket) is None
