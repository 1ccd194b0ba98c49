"""Async engine and session management for the metadata database."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import bittensor as bt
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .schema import Base


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


class Database:
    """Owns the async engine; hands out short-lived sessions."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs: dict = {"echo": echo}
        if _is_memory_sqlite(url):
            # One shared connection, otherwise every session sees an empty db.
            kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        elif url.startswith("sqlite"):
            db_file = make_url(url).database
            if db_file:
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_async_engine(url, **kwargs)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        bt.logging.info({"calibra_db": {"event": "schema_ready", "dialect": self.engine.dialect.name}})

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session wrapped in a transaction: commit on success, rollback on error."""
        async with self._sessions() as session:
            async with session.begin():
                yield session


__all__ = ["Database"]
