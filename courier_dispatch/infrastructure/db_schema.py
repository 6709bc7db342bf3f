import uuid

from sqlalchemy import (
    DECIMAL,
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)

from courier_dispatch.core.clock import utcnow

metadata = MetaData()

orders_tbl = Table(
    "orders",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("order_number", Text, nullable=False, unique=True),
    Column("shop_id", Text, nullable=False, index=True),
    Column("customer_name", Text, nullable=True),
    Column("customer_phone", Text, nullable=False),
    Column("delivery_address", Text, nullable=False),
    Column("amount", DECIMAL(10, 2), nullable=False),
    Column("notes", Text, nullable=True),
    Column("status", Text, nullable=False),
    Column("courier_id", Text, nullable=True),
    Column("eta", DateTime(timezone=True), nullable=True),
    Column("assigned_at", DateTime(timezone=True), nullable=True),
    Column("delivered_at", DateTime(timezone=True), nullable=True),
    Column(
        "created_at", DateTime(timezone=True), default=utcnow, server_default=func.now()
    ),
    Column(
        "updated_at", DateTime(timezone=True), default=utcnow, server_default=func.now()
    ),
    Index("ix_orders_courier_status", "courier_id", "status"),
)

delivery_history_tbl = Table(
    "delivery_history",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("order_id", Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False),
    Column("order_number", Text, nullable=False),
    Column("courier_id", Text, nullable=False, index=True),
    Column("customer_name", Text, nullable=True),
    Column("customer_phone", Text, nullable=True),
    Column("delivery_address", Text, nullable=False),
    Column("amount", DECIMAL(10, 2), nullable=False),
    Column("status", Text, nullable=False),
    Column("notes", Text, nullable=True),
    Column("accepted_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("order_id", "courier_id", name="uq_history_order_courier"),
)

outbox_tbl = Table(
    "outbox",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Text, nullable=False),
    Column(
        "created_at", DateTime(timezone=True), default=utcnow, server_default=func.now()
    ),
)
