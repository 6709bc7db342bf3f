from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.infrastructure.repositories import (
    HistoryRepository,
    OrderRepository,
    OutboxRepository,
)


class DispatchTransaction:
    """Order, history and outbox repositories sharing one session."""

    def __init__(self, session: AsyncSession):
        self._session = session
        self.orders = OrderRepository(session)
        self.history = HistoryRepository(session)
        self.outbox = OutboxRepository(session)

    async def commit(self):
        await self._session.commit()


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[DispatchTransaction]:
        async with self._session_factory() as session:
            transaction = DispatchTransaction(session)
            try:
                yield transaction
            finally:
                # anything written after the last commit is discarded
                if session.in_transaction():
                    await session.rollback()
