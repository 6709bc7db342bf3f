import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from courier_dispatch.application.create_order import (
    CreateOrderUseCase,
    OrderDTO,
    generate_order_number,
)
from courier_dispatch.core.models import EventTypeEnum, Order, OrderStatusEnum
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
def create_order_use_case(unit_of_work: UnitOfWork, clock) -> CreateOrderUseCase:
    return CreateOrderUseCase(unit_of_work=unit_of_work, clock=clock)


def _order_dto(**kwargs) -> OrderDTO:
    defaults = {
        "shop_id": "shop-1",
        "customer_name": "Ann",
        "customer_phone": "+10000000001",
        "delivery_address": "1 Main street",
        "amount": Decimal("19.99"),
    }
    defaults.update(kwargs)
    return OrderDTO(**defaults)


def test_order_number_format():
    # Given
    clock = lambda: datetime(2026, 3, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)  # noqa: E731

    # When
    number = generate_order_number(clock)

    # Then
    millis = str(int(clock().timestamp() * 1000))
    assert re.fullmatch(r"ORD-\d{6}-[A-Z0-9]{4}", number)
    assert number[4:10] == millis[-6:]


class TestCreateOrderUseCase:
    @pytest.mark.asyncio
    async def test_create_order_success(self, create_order_use_case: CreateOrderUseCase):
        # When
        order = await create_order_use_case(_order_dto())

        # Then
        assert isinstance(order, Order)
        assert order.status == OrderStatusEnum.PENDING
        assert order.courier_id is None
        assert order.amount == Decimal("19.99")
        assert order.order_number.startswith("ORD-")

    @pytest.mark.asyncio
    async def test_create_order_announces_new_order(
        self, create_order_use_case: CreateOrderUseCase, unit_of_work: UnitOfWork
    ):
        # When
        order = await create_order_use_case(_order_dto(shop_id="shop-7"))

        # Then
        async with unit_of_work() as uow:
            events = await uow.outbox.get_pending_events()
        assert [e.event_type for e in events] == [EventTypeEnum.NEW_ORDER_AVAILABLE]
        payload = events[0].payload
        assert payload["id"] == order.id
        assert payload["order_number"] == order.order_number
        assert payload["shop_id"] == "shop-7"
        assert payload["status"] == "pending"
        assert payload["amount"] == "19.99"

    @pytest.mark.asyncio
    async def test_create_multiple_orders_have_distinct_numbers(
        self, create_order_use_case: CreateOrderUseCase
    ):
        # When
        orders = [await create_order_use_case(_order_dto()) for _ in range(3)]

        # Then
        assert len({o.order_number for o in orders}) == 3

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00")])
    def test_amount_must_be_positive(self, amount):
        with pytest.raises(ValidationError):
            _order_dto(amount=amount)
