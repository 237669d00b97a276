from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DATABASE_URL
from .models import Base


def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    return create_async_engine(url, pool_pre_ping=True)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine()
AsyncSessionLocal = make_session_factory(engine)


async def init_db(target: AsyncEngine) -> None:
    # development convenience; production runs database/schema.sql
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(session: AsyncSession) -> None:
    await session.execute(text("SELECT 1"))


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session
