import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.pool import StaticPool


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Callable[[], AsyncContextManager[None]]
    gate_limit: int


def async_url(url: str) -> str:
    """Pick the async driver for a plain database URL."""
    for plain, driver in (
        ("sqlite://", "sqlite+aiosqlite://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
    ):
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://") and (
        url.rstrip("/") == "sqlite+aiosqlite:" or ":memory:" in url
    )


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def _gate(limit: int) -> Callable[[], AsyncContextManager[None]]:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        await sem.acquire()
        try:
            yield
        finally:
            sem.release()

    return gated


def open_database(database_url: str, gate_limit: int | None = None) -> Database:
    """Engine, session factory and the DB gate every store call goes
    through. The gate defaults to the pool size; a shared in-memory sqlite
    connection takes one transaction at a time."""
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
    elif is_memory_sqlite(url):
        # one shared connection, otherwise every session sees an empty db
        kw.update(poolclass=StaticPool)

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if gate_limit is None:
        if is_memory_sqlite(url):
            gate_limit = 1
        else:
            gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size or 10))

    return Database(engine, sessions, _gate(gate_limit), gate_limit)
