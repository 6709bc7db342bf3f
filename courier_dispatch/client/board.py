import logging
from typing import Iterable

from courier_dispatch.core.models import OrderPreview, OrderStatusEnum

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (OrderStatusEnum.ACCEPTED, OrderStatusEnum.PROCESSING)


class OrderBoard:
    """In-memory view of the orders one client shows.

    ``generation`` increases on every authoritative replace, so a claim
    result issued before a resync can tell it has been superseded.
    """

    def __init__(self, courier_id: str | None = None):
        # set for courier sessions: active and history only hold own orders
        self._courier_id = courier_id
        self._unclaimed: dict[str, OrderPreview] = {}
        self._active: dict[str, OrderPreview] = {}
        self._history: dict[str, OrderPreview] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def unclaimed(self) -> list[OrderPreview]:
        return list(self._unclaimed.values())

    @property
    def active(self) -> list[OrderPreview]:
        return list(self._active.values())

    @property
    def history(self) -> list[OrderPreview]:
        return list(self._history.values())

    def get(self, order_id: str) -> OrderPreview | None:
        return (
            self._active.get(order_id)
            or self._unclaimed.get(order_id)
            or self._history.get(order_id)
        )

    def replace(self, orders: Iterable[OrderPreview]) -> None:
        self._unclaimed.clear()
        self._active.clear()
        self._history.clear()
        for order in orders:
            self._place(order)
        self._generation += 1

    def upsert(self, order: OrderPreview) -> None:
        self._place(order)

    def remove(self, order_id: str) -> None:
        self._unclaimed.pop(order_id, None)
        self._active.pop(order_id, None)
        self._history.pop(order_id, None)

    def remove_unclaimed(self, order_id: str) -> None:
        self._unclaimed.pop(order_id, None)

    def add_unclaimed(self, order: OrderPreview) -> None:
        if order.id in self._active or order.id in self._history:
            return
        self._unclaimed[order.id] = order

    def move_to_history(self, order: OrderPreview) -> None:
        self.remove(order.id)
        if self._is_visible(order):
            self._history[order.id] = order

    def apply_claim(self, order: OrderPreview, issued_at_generation: int) -> bool:
        if issued_at_generation != self._generation:
            logger.debug(f"Claim result for {order.id} superseded by a resync")
            return False
        self._place(order)
        return True

    def _is_visible(self, order: OrderPreview) -> bool:
        return self._courier_id is None or order.courier_id == self._courier_id

    def _place(self, order: OrderPreview) -> None:
        self.remove(order.id)
        if order.status == OrderStatusEnum.PENDING and order.courier_id is None:
            self._unclaimed[order.id] = order
        elif order.status in ACTIVE_STATUSES and self._is_visible(order):
            self._active[order.id] = order
        elif order.status == OrderStatusEnum.DELIVERED and self._is_visible(order):
            self._history[order.id] = order
