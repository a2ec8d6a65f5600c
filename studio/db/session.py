from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, IntegrityError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from studio.config import get_settings
from studio.errors import StoreUnavailable
from studio.utils.logging import get_logger


logger = get_logger('db')


def create_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(database_url or settings.database_url, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine or create_engine(), expire_on_commit=False)


@asynccontextmanager
async def store_errors(session: AsyncSession) -> AsyncIterator[None]:
    """Translate driver and pool failures into ``StoreUnavailable``."""
    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, PoolTimeoutError, OSError) as exc:
        logger.error('store_unavailable', error=str(exc))
        try:
            await session.rollback()
        except (DBAPIError, PoolTimeoutError, OSError) as rollback_exc:
            logger.error('store_rollback_failed', error=str(rollback_exc))
        raise StoreUnavailable(str(exc)) from exc
