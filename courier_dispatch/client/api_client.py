import logging
from http import HTTPStatus

import httpx
from pydantic import TypeAdapter

from courier_dispatch.core.errors import (
    InvalidArgument,
    InvalidOrderState,
    OrderActionError,
    OrderNotFound,
    PermissionDenied,
)
from courier_dispatch.core.models import (
    ClaimResult,
    DeliveryHistory,
    Order,
    OrderStatusEnum,
)

logger = logging.getLogger(__name__)

_orders = TypeAdapter(list[Order])
_history = TypeAdapter(list[DeliveryHistory])

_ERRORS: dict[int, type[OrderActionError]] = {
    HTTPStatus.NOT_FOUND: OrderNotFound,
    HTTPStatus.FORBIDDEN: PermissionDenied,
    HTTPStatus.CONFLICT: InvalidOrderState,
    HTTPStatus.UNPROCESSABLE_ENTITY: InvalidArgument,
}


class DispatchUnavailable(Exception):
    """The dispatch API could not be reached or answered with a server error."""


class DispatchApiClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise DispatchUnavailable(f"{method} {url} failed: {e}") from e

        if response.is_success:
            return response

        detail = _detail(response)
        error = _ERRORS.get(response.status_code)
        if error is not None:
            raise error(detail)
        raise DispatchUnavailable(f"{method} {url} answered {response.status_code}: {detail}")

    async def list_orders(self, statuses: list[OrderStatusEnum] | None = None) -> list[Order]:
        response = await self._request("GET", "/orders", params=_status_params(statuses))
        return _orders.validate_python(response.json())

    async def list_available(self) -> list[Order]:
        response = await self._request("GET", "/orders/available")
        return _orders.validate_python(response.json())

    async def get_order(self, order_id: str) -> Order:
        response = await self._request("GET", f"/orders/{order_id}")
        return Order.model_validate(response.json())

    async def list_courier_orders(
        self, courier_id: str, statuses: list[OrderStatusEnum] | None = None
    ) -> list[Order]:
        response = await self._request(
            "GET", f"/couriers/{courier_id}/orders", params=_status_params(statuses)
        )
        return _orders.validate_python(response.json())

    async def list_courier_history(self, courier_id: str) -> list[DeliveryHistory]:
        response = await self._request("GET", f"/couriers/{courier_id}/history")
        return _history.validate_python(response.json())

    async def list_shop_orders(self, shop_id: str) -> list[Order]:
        response = await self._request("GET", f"/shops/{shop_id}/orders")
        return _orders.validate_python(response.json())

    async def create_order(self, order: dict) -> Order:
        response = await self._request("POST", "/orders", json=order)
        return Order.model_validate(response.json())

    async def claim(self, order_id: str, courier_id: str) -> tuple[ClaimResult, Order | None]:
        response = await self._request(
            "POST", f"/orders/{order_id}/claim", json={"courier_id": courier_id}
        )
        body = response.json()
        order = body.get("order")
        return ClaimResult(body["result"]), Order.model_validate(order) if order else None

    async def set_completion_time(self, order_id: str, courier_id: str, minutes: int) -> Order:
        response = await self._request(
            "POST",
            f"/orders/{order_id}/eta",
            json={"courier_id": courier_id, "minutes": minutes},
        )
        return Order.model_validate(response.json())

    async def complete(self, order_id: str, courier_id: str) -> Order:
        response = await self._request(
            "POST", f"/orders/{order_id}/complete", json={"courier_id": courier_id}
        )
        return Order.model_validate(response.json())

    async def cancel(self, order_id: str, shop_id: str | None = None) -> Order:
        response = await self._request(
            "POST", f"/orders/{order_id}/cancel", json={"shop_id": shop_id}
        )
        return Order.model_validate(response.json())

    async def transfer(
        self, order_id: str, to_courier_id: str, from_courier_id: str | None = None
    ) -> Order:
        response = await self._request(
            "POST",
            f"/orders/{order_id}/transfer",
            json={"to_courier_id": to_courier_id, "from_courier_id": from_courier_id},
        )
        return Order.model_validate(response.json())


def _status_params(statuses: list[OrderStatusEnum] | None) -> list[tuple[str, str]]:
    return [("status", str(status)) for status in statuses or []]


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)
