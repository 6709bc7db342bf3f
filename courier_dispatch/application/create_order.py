import logging
import secrets
import string
from decimal import Decimal

from pydantic import BaseModel, Field

from courier_dispatch.core.clock import Clock, utcnow
from courier_dispatch.core.models import EventTypeEnum, Order, OrderPreview
from courier_dispatch.infrastructure.repositories import OrderRepository, OutboxRepository
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(clock: Clock = utcnow) -> str:
    """``ORD-<last 6 digits of the epoch millis>-<4 random alphanumerics>``."""
    millis = int(clock().timestamp() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"ORD-{str(millis)[-6:]}-{suffix}"


class OrderDTO(BaseModel):
    shop_id: str
    customer_name: str | None = None
    customer_phone: str
    delivery_address: str
    amount: Decimal = Field(gt=0, decimal_places=2)
    notes: str | None = None


class CreateOrderUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        clock: Clock = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._clock = clock

    async def __call__(self, order: OrderDTO) -> Order:
        async with self._unit_of_work() as uow:
            created = await uow.orders.create(
                order=OrderRepository.CreateDTO(
                    order_number=generate_order_number(self._clock),
                    **order.model_dump(),
                )
            )
            await uow.outbox.create(
                event=OutboxRepository.CreateDTO(
                    event_type=EventTypeEnum.NEW_ORDER_AVAILABLE,
                    payload=OrderPreview.from_order(created).model_dump(mode="json"),
                )
            )
            await uow.commit()

        logger.info(f"Shop {created.shop_id} created order {created.order_number}")
        return created
