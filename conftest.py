import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.application.container import ApplicationContainer
from courier_dispatch.client.api_client import DispatchApiClient
from courier_dispatch.core.models import Order
from courier_dispatch.infrastructure.db_schema import metadata
from courier_dispatch.infrastructure.repositories import OrderRepository, OutboxRepository
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork
from courier_dispatch.presentation import api

CONFIG_PATH = "courier_dispatch/config.yaml"


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        # virtual time: every sleep moves the clock and yields once
        self.advance(seconds)
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
async def container(tmp_path) -> ApplicationContainer:
    container = ApplicationContainer()
    container.config.from_yaml(CONFIG_PATH, required=True)
    container.config.infrastructure.db.dsn.from_value(
        f"sqlite+aiosqlite:///{tmp_path}/dispatch.db"
    )
    return container


@pytest.fixture()
async def session_factory(
    container: ApplicationContainer,
) -> async_sessionmaker[AsyncSession]:
    return container.infrastructure_container.session_factory()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def unit_of_work(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWork:
    return UnitOfWork(session_factory)


@pytest.fixture()
def fast_api_app(container: ApplicationContainer):
    app = FastAPI()
    app.include_router(api.router)
    container.wire(modules=[api])
    app.container = container
    return app


@pytest_asyncio.fixture(autouse=True)
async def setup_database(container: ApplicationContainer):
    engine = container.infrastructure_container.async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield

    await container.order_claim_coordinator().drain()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def test_async_client(fast_api_app) -> AsyncClient:
    async with AsyncClient(
        transport=ASGITransport(app=fast_api_app),
        base_url="http://test.com",
    ) as client:
        client.app = fast_api_app
        yield client


@pytest.fixture
def order_factory(
    unit_of_work: UnitOfWork,
) -> Callable[..., Awaitable[Order]]:
    counter = iter(range(1, 10_000))

    async def _create_order(**kwargs) -> Order:
        number = next(counter)
        defaults = {
            "order_number": f"ORD-{number:06d}-TEST",
            "shop_id": "shop-1",
            "customer_name": "Test customer",
            "customer_phone": "+10000000000",
            "delivery_address": f"{number} Main street",
            "amount": Decimal("25.50"),
        }
        defaults.update(kwargs)
        async with unit_of_work() as uow:
            order = await uow.orders.create(OrderRepository.CreateDTO(**defaults))
            await uow.commit()
        return order

    return _create_order


@pytest.fixture
async def outbox_repo(session: AsyncSession) -> OutboxRepository:
    return OutboxRepository(session)


@pytest_asyncio.fixture()
async def dispatch_api(fast_api_app) -> DispatchApiClient:
    api = DispatchApiClient(
        base_url="http://test.com", transport=ASGITransport(app=fast_api_app)
    )
    yield api
    await api.aclose()
