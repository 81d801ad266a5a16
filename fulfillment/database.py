from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from fulfillment import config

Base = declarative_base()


def build_engine(database_url: str = config.DATABASE_URL) -> AsyncEngine:
    return create_async_engine(database_url, echo=config.SQL_ECHO, future=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine):
    # Import models so their tables are registered on Base.metadata
    from fulfillment import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Run a block inside one database transaction.

    Commits when the block exits normally. Any exception, including
    cancellation, rolls the whole unit back and is re-raised. The session
    is closed on every exit path.
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()
