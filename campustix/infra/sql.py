# infra/sql.py
import asyncio
from contextlib import asynccontextmanager
from typing import Callable, NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)

_SQLITE = "sqlite+aiosqlite://"
_PG = "postgresql+asyncpg://"

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


class SqlEngine(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Callable


def async_url(url: str) -> str:
    for sync_prefix, driver in (("sqlite://", _SQLITE),
                                ("postgresql://", _PG),
                                ("postgres://", _PG)):
        if url.startswith(sync_prefix):
            return driver + url[len(sync_prefix):]
    return url


# DB-GATE!!!
# every store transaction holds one slot for its whole lifetime, ledger
# calls included
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str, *, pool_size: int = 10,
                      max_overflow: int = 10, pool_timeout: int = 30,
                      gate_limit: Optional[int] = None) -> SqlEngine:
    db_url = async_url(database_url)
    is_sqlite = db_url.startswith(_SQLITE)

    kw = dict(future=True, pool_pre_ping=True)
    if db_url.startswith(_PG):
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    engine = create_async_engine(db_url, **kw)

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in _SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    SessionAsync = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )

    # sqlite: a single writer at a time
    if gate_limit is None:
        gate_limit = 1 if is_sqlite else pool_size
    gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(gate)

    return SqlEngine(engine, SessionAsync, gate, gated)


async def create_schema(engine: AsyncEngine, metadata) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
