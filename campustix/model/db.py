# model/db.py
from __future__ import annotations
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import tigerbeetle as tb
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import make_async_engine, create_schema
from .inventory import InventoryLedger, new_ledger
from .orm import Base
from .stats_cache import MemoryStatsCache, StatsCache


@dataclass
class Tx:
    session: AsyncSession
    ledger: InventoryLedger


class Database:
    """Engine, DB gate, ledger backend and stats cache for one process."""

    def __init__(self, database_url: str, *, ledger_backend: str = "pg",
                 tb_client: Optional[tb.ClientAsync] = None,
                 cache: Optional[StatsCache] = None, **engine_kw) -> None:
        self.engine, self.SessionAsync, self.gate, self.gated = (
            make_async_engine(database_url, **engine_kw)
        )
        self.ledger_backend = ledger_backend
        self.tb_client = tb_client
        self.cache = cache or MemoryStatsCache()

    async def create_schema(self) -> None:
        await create_schema(self.engine, Base.metadata)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def ledger_for(self, session: AsyncSession) -> InventoryLedger:
        return new_ledger(session, backend=self.ledger_backend,
                          tb_client=self.tb_client)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Tx]:
        """
        One gated store transaction with the ledger bound to it.

        Stats of events the ledger touched are invalidated after commit.
        """
        async with self.gated():
            async with self.SessionAsync() as session:
                tx = Tx(session=session, ledger=self.ledger_for(session))
                try:
                    async with session.begin():
                        yield tx
                except BaseException:
                    await tx.ledger.rollback()
                    raise
                await tx.ledger.commit()

        for event_id in tx.ledger.touched:
            try:
                await self.cache.invalidate(event_id)
            except Exception as e:
                logger.warning("stats cache invalidation failed for {}: {}",
                               event_id, e)
