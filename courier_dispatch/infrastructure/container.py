from typing import Callable

from dependency_injector import containers, providers
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from courier_dispatch.infrastructure.channel_hub import ChannelHub
from courier_dispatch.infrastructure.kafka_producer import OrderEventPublisher
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork


def build_engine(dsn: str, pool_size: int = 5, pool_recycle: int = 3600) -> AsyncEngine:
    if dsn.startswith("sqlite"):
        return _sqlite_engine(dsn)
    return create_async_engine(dsn, pool_size=pool_size, pool_recycle=pool_recycle)


def _sqlite_engine(dsn: str) -> AsyncEngine:
    # single writer: take the lock at BEGIN so writers queue on the busy timeout
    engine = create_async_engine(dsn, connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class InfrastructureContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    async_engine = providers.Singleton[AsyncEngine](
        build_engine,
        config.db.dsn,
        pool_size=config.db.pool_size,
        pool_recycle=config.db.pool_recycle,
    )
    session_factory: Callable[..., AsyncSession] = providers.Factory(
        async_sessionmaker, async_engine, expire_on_commit=False, class_=AsyncSession
    )
    unit_of_work = providers.Singleton[UnitOfWork](
        UnitOfWork, session_factory=session_factory
    )
    event_publisher = providers.Singleton[OrderEventPublisher](
        OrderEventPublisher,
        bootstrap_servers=config.kafka.bootstrap_servers,
        topic=config.kafka.topic,
    )
    channel_hub = providers.Singleton[ChannelHub](ChannelHub)
