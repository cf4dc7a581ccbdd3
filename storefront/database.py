from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class Database:
    """Owns the engine (and its connection pool) for one process.

    Constructed once at startup and handed to whatever needs sessions, so
    nothing reaches for a module-level pool.
    """

    def __init__(self, url: str, **engine_kwargs):
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        # The connection goes back to the pool when the block exits, whatever the outcome
        async with self.session_factory() as session:
            yield session

    async def init_db(self):
        # Register every table on Base.metadata before creating them
        from storefront import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.db.session() as session:
        yield session
