import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import Row, case, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.clock import ensure_utc
from courier_dispatch.core.models import (
    DeliveryHistory,
    EventTypeEnum,
    HistoryStatusEnum,
    Order,
    OrderStatusEnum,
    OutboxEvent,
    OutboxEventStatus,
)
from courier_dispatch.infrastructure.db_schema import (
    delivery_history_tbl,
    orders_tbl,
    outbox_tbl,
)


class DoesNotExist(Exception):
    pass


def _as_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise DoesNotExist(value)


class OrderRepository:
    class CreateDTO(BaseModel):
        order_number: str
        shop_id: str
        customer_name: str | None = None
        customer_phone: str
        delivery_address: str
        amount: Decimal
        notes: str | None = None

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> Order:
        if row is None:
            raise DoesNotExist

        return Order(
            id=str(row._mapping["id"]),
            order_number=row._mapping["order_number"],
            shop_id=row._mapping["shop_id"],
            customer_name=row._mapping["customer_name"],
            customer_phone=row._mapping["customer_phone"],
            delivery_address=row._mapping["delivery_address"],
            amount=row._mapping["amount"],
            notes=row._mapping["notes"],
            status=row._mapping["status"],
            courier_id=row._mapping["courier_id"],
            eta=ensure_utc(row._mapping["eta"]),
            assigned_at=ensure_utc(row._mapping["assigned_at"]),
            delivered_at=ensure_utc(row._mapping["delivered_at"]),
            created_at=ensure_utc(row._mapping["created_at"]),
            updated_at=ensure_utc(row._mapping["updated_at"]),
        )

    async def create(self, order: CreateDTO) -> Order:
        stmt = (
            insert(orders_tbl)
            .values(
                {
                    **order.model_dump(),
                    "status": OrderStatusEnum.PENDING,
                    "courier_id": None,
                }
            )
            .returning(orders_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_by_id(self, order_id: str) -> Order:
        stmt = select(orders_tbl).where(orders_tbl.c.id == _as_uuid(order_id))
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def list_all(self, statuses: list[OrderStatusEnum] | None = None) -> list[Order]:
        stmt = select(orders_tbl).order_by(orders_tbl.c.created_at.desc())
        if statuses:
            stmt = stmt.where(orders_tbl.c.status.in_(statuses))
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def list_available(self) -> list[Order]:
        stmt = (
            select(orders_tbl)
            .where(
                orders_tbl.c.courier_id.is_(None),
                orders_tbl.c.status == OrderStatusEnum.PENDING,
            )
            .order_by(orders_tbl.c.created_at.desc())
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def list_by_courier(
        self, courier_id: str, statuses: list[OrderStatusEnum] | None = None
    ) -> list[Order]:
        stmt = (
            select(orders_tbl)
            .where(orders_tbl.c.courier_id == courier_id)
            .order_by(orders_tbl.c.assigned_at)
        )
        if statuses:
            stmt = stmt.where(orders_tbl.c.status.in_(statuses))
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def list_by_shop(self, shop_id: str) -> list[Order]:
        stmt = (
            select(orders_tbl)
            .where(orders_tbl.c.shop_id == shop_id)
            .order_by(orders_tbl.c.created_at.desc())
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Order]:
        """Processing orders whose ETA has already passed."""
        stmt = (
            select(orders_tbl)
            .where(
                orders_tbl.c.status == OrderStatusEnum.PROCESSING,
                orders_tbl.c.eta.is_not(None),
                orders_tbl.c.eta <= now,
            )
            .order_by(orders_tbl.c.eta)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def _update_where(self, order_id: str, *conditions, **values) -> Order | None:
        """Conditional single-row update. Returns None when the predicate no longer holds."""
        stmt = (
            orders_tbl.update()
            .where(orders_tbl.c.id == _as_uuid(order_id), *conditions)
            .values(**values)
            .returning(orders_tbl)
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        if row is None:
            return None

        return self._construct(row)

    async def claim(self, order_id: str, courier_id: str, now: datetime) -> Order | None:
        return await self._update_where(
            order_id,
            orders_tbl.c.courier_id.is_(None),
            orders_tbl.c.status == OrderStatusEnum.PENDING,
            status=OrderStatusEnum.ACCEPTED,
            courier_id=courier_id,
            assigned_at=now,
            updated_at=now,
        )

    async def start_countdown(
        self, order_id: str, courier_id: str, eta: datetime, now: datetime
    ) -> Order | None:
        return await self._update_where(
            order_id,
            orders_tbl.c.courier_id == courier_id,
            orders_tbl.c.status == OrderStatusEnum.ACCEPTED,
            status=OrderStatusEnum.PROCESSING,
            eta=eta,
            updated_at=now,
        )

    async def mark_delivered(
        self, order_id: str, courier_id: str, now: datetime
    ) -> Order | None:
        return await self._update_where(
            order_id,
            orders_tbl.c.courier_id == courier_id,
            orders_tbl.c.status.in_(
                [OrderStatusEnum.ACCEPTED, OrderStatusEnum.PROCESSING]
            ),
            status=OrderStatusEnum.DELIVERED,
            eta=None,
            delivered_at=now,
            updated_at=now,
        )

    async def cancel(self, order_id: str, now: datetime) -> Order | None:
        return await self._update_where(
            order_id,
            orders_tbl.c.status.in_([OrderStatusEnum.PENDING, OrderStatusEnum.ACCEPTED]),
            status=OrderStatusEnum.CANCELLED,
            updated_at=now,
        )

    async def transfer(
        self, order_id: str, from_courier_id: str, to_courier_id: str, now: datetime
    ) -> Order | None:
        return await self._update_where(
            order_id,
            orders_tbl.c.courier_id == from_courier_id,
            orders_tbl.c.status.in_(
                [OrderStatusEnum.ACCEPTED, OrderStatusEnum.PROCESSING]
            ),
            courier_id=to_courier_id,
            assigned_at=now,
            updated_at=now,
        )


class HistoryRepository:
    class UpsertDTO(BaseModel):
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

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> DeliveryHistory:
        if row is None:
            raise DoesNotExist

        return DeliveryHistory(
            id=str(row._mapping["id"]),
            order_id=str(row._mapping["order_id"]),
            order_number=row._mapping["order_number"],
            courier_id=row._mapping["courier_id"],
            customer_name=row._mapping["customer_name"],
            customer_phone=row._mapping["customer_phone"],
            delivery_address=row._mapping["delivery_address"],
            amount=row._mapping["amount"],
            status=row._mapping["status"],
            notes=row._mapping["notes"],
            accepted_at=ensure_utc(row._mapping["accepted_at"]),
            completed_at=ensure_utc(row._mapping["completed_at"]),
        )

    def _dialect_insert(self):
        if self._session.bind.dialect.name == "sqlite":
            return sqlite.insert(delivery_history_tbl)
        return postgresql.insert(delivery_history_tbl)

    async def upsert(self, record: UpsertDTO) -> DeliveryHistory:
        """Insert or update the row for the (order, courier) pair.

        ``accepted_at`` keeps its first value; ``notes`` and ``completed_at``
        are only overwritten by non-null values.
        A completed row stays completed, whatever order the writes land in.
        """
        stmt = self._dialect_insert().values(
            {**record.model_dump(), "order_id": _as_uuid(record.order_id)}
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["order_id", "courier_id"],
            set_={
                "order_number": stmt.excluded.order_number,
                "customer_name": stmt.excluded.customer_name,
                "customer_phone": stmt.excluded.customer_phone,
                "delivery_address": stmt.excluded.delivery_address,
                "amount": stmt.excluded.amount,
                "status": case(
                    (
                        delivery_history_tbl.c.status == HistoryStatusEnum.COMPLETED,
                        HistoryStatusEnum.COMPLETED.value,
                    ),
                    else_=stmt.excluded.status,
                ),
                "notes": func.coalesce(
                    stmt.excluded.notes, delivery_history_tbl.c.notes
                ),
                "completed_at": func.coalesce(
                    stmt.excluded.completed_at, delivery_history_tbl.c.completed_at
                ),
            },
        ).returning(delivery_history_tbl)
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get(self, order_id: str, courier_id: str) -> DeliveryHistory | None:
        stmt = select(delivery_history_tbl).where(
            delivery_history_tbl.c.order_id == _as_uuid(order_id),
            delivery_history_tbl.c.courier_id == courier_id,
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        if row is None:
            return None

        return self._construct(row)

    async def list_by_courier(self, courier_id: str) -> list[DeliveryHistory]:
        stmt = (
            select(delivery_history_tbl)
            .where(delivery_history_tbl.c.courier_id == courier_id)
            .order_by(delivery_history_tbl.c.accepted_at.desc())
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]


class OutboxRepository:
    class CreateDTO(BaseModel):
        event_type: EventTypeEnum
        payload: dict

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> OutboxEvent:
        if row is None:
            raise DoesNotExist

        return OutboxEvent(
            id=str(row._mapping["id"]),
            event_type=row._mapping["event_type"],
            payload=row._mapping["payload"],
            status=row._mapping["status"],
            created_at=ensure_utc(row._mapping["created_at"]),
        )

    async def create(self, event: CreateDTO) -> OutboxEvent:
        stmt = (
            insert(outbox_tbl)
            .values(
                {
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "status": OutboxEventStatus.PENDING,
                }
            )
            .returning(outbox_tbl)
        )
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def get_pending_events(self, limit: int = 100) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.status == OutboxEventStatus.PENDING)
            .order_by(outbox_tbl.c.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)

        return [self._construct(row) for row in result.fetchall()]

    async def get_by_id(self, event_id: str) -> OutboxEvent:
        stmt = select(outbox_tbl).where(outbox_tbl.c.id == _as_uuid(event_id))
        result = await self._session.execute(stmt)

        return self._construct(result.fetchone())

    async def mark_as_sent(self, event_id: str) -> None:
        stmt = (
            outbox_tbl.update()
            .where(outbox_tbl.c.id == _as_uuid(event_id))
            .values(status=OutboxEventStatus.SENT)
        )
        await self._session.execute(stmt)
