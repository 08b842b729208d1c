import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

# `async with gated(): ...` around every session
Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    # concurrent writers queue on the database lock instead of failing
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def to_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def make_gate(limit: int) -> Gated:
    """DB gate: never queue more coroutines on the pool than it has
    connections."""
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_async_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    """Engine, session factory and DB gate for `database_url`.

    Pool settings only apply to PostgreSQL. The gate defaults to the pool
    size."""
    url = to_async_url(database_url)
    is_sqlite = url.startswith("sqlite+aiosqlite://")

    kw = dict(future=True, pool_pre_ping=True)
    if not is_sqlite:
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )
    engine = create_async_engine(url, **kw)
    if is_sqlite:
        _install_sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gated = make_gate(gate_limit if gate_limit is not None else pool_size)
    return engine, sessions, gated
