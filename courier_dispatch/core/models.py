from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import AliasChoices, BaseModel, Field


class Role(StrEnum):
    ADMIN = "admin"
    COURIER = "courier"
    SHOP = "shop"

    @classmethod
    def parse(cls, value: str | None) -> "Role | None":
        """Accepts the canonical names plus the legacy ``driver`` alias."""
        if value is None:
            return None
        value = value.strip().lower()
        if value == "driver":
            return cls.COURIER
        try:
            return cls(value)
        except ValueError:
            return None


class OrderStatusEnum(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Order(BaseModel):
    id: str
    order_number: str
    shop_id: str
    customer_name: str | None = None
    customer_phone: str
    delivery_address: str
    amount: Decimal
    notes: str | None = None
    status: OrderStatusEnum
    courier_id: str | None = None
    eta: datetime | None = None
    assigned_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class HistoryStatusEnum(StrEnum):
    ACCEPTED = "accepted"
    COMPLETED = "completed"


class DeliveryHistory(BaseModel):
    id: str
    order_id: str
    order_number: str
    courier_id: str
    customer_name: str | None = None
    customer_phone: str | None = None
    delivery_address: str
    amount: Decimal
    status: HistoryStatusEnum
    notes: str | None = None
    accepted_at: datetime
    completed_at: datetime | None = None


class ClaimResult(StrEnum):
    CLAIMED = "claimed"
    ALREADY_TAKEN = "already_taken"


class EventTypeEnum(StrEnum):
    # client -> server
    IDENTIFY = "IDENTIFY"
    SUBSCRIBE = "SUBSCRIBE"
    # server -> client
    IDENTIFIED = "IDENTIFIED"
    FORCE_LOGOUT = "FORCE_LOGOUT"
    NEW_ORDER_AVAILABLE = "NEW_ORDER_AVAILABLE"
    ORDER_UPDATED = "ORDER_UPDATED"
    COUNTDOWN_STARTED = "COUNTDOWN_STARTED"
    COUNTDOWN_UPDATE = "COUNTDOWN_UPDATE"
    NOTIFICATION = "NOTIFICATION"


class OutboxEventStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"


class OutboxEvent(BaseModel):
    id: str
    event_type: EventTypeEnum
    payload: dict
    status: OutboxEventStatus
    created_at: datetime


class Envelope(BaseModel):
    type: str
    payload: dict = Field(default_factory=dict)


class OrderPreview(BaseModel):
    """Order as pushed to clients; every field but the id is optional."""

    id: str = Field(validation_alias=AliasChoices("id", "order_id"))
    order_number: str | None = None
    shop_id: str | None = None
    customer_name: str | None = None
    delivery_address: str | None = None
    amount: Decimal | None = None
    status: OrderStatusEnum = OrderStatusEnum.PENDING
    courier_id: str | None = Field(
        default=None, validation_alias=AliasChoices("courier_id", "driver_id")
    )
    eta: datetime | None = Field(
        default=None, validation_alias=AliasChoices("eta", "delivery_date")
    )

    @classmethod
    def from_order(cls, order: Order) -> "OrderPreview":
        return cls.model_validate(order.model_dump())


class OrderUpdatePayload(OrderPreview):
    previous_status: OrderStatusEnum | None = None


class CountdownPayload(BaseModel):
    id: str
    order_number: str | None = None
    eta: datetime = Field(validation_alias=AliasChoices("eta", "delivery_date"))
    courier_id: str | None = Field(
        default=None, validation_alias=AliasChoices("courier_id", "driver_id")
    )


class IdentifyPayload(BaseModel):
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"))
    role: str
