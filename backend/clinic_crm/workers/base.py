"""Base worker utilities for RQ tasks."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis as redis_lib
from rq import Queue
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from clinic_crm.config import settings

import structlog

logger = structlog.get_logger()

_redis: redis_lib.Redis | None = None


def get_redis() -> redis_lib.Redis:
    global _redis
    if _redis is None:
        _redis = redis_lib.from_url(settings.redis_url)
    return _redis


def get_queue(name: str = "default") -> Queue:
    """Get an RQ queue."""
    return Queue(name, connection=get_redis())


def run_async(coro):
    """Run an async coroutine from sync RQ worker context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """A session on a throwaway engine; pooled connections cannot outlive the job's event loop."""
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        async with async_sessionmaker(engine, expire_on_commit=False)() as session:
            yield session
    finally:
        await engine.dispose()
