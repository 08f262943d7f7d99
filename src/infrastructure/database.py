"""
Async SQLAlchemy engine, session factory and unit-of-work helper.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings
from src.domain.errors import DependencyFailure

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Commit everything done inside the block, or nothing.

    Domain errors roll back and propagate unchanged; driver / ORM errors roll
    back and surface as ``DependencyFailure`` so callers never see internals.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Persistence failure, transaction rolled back")
        raise DependencyFailure(str(exc)) from exc
    except BaseException:
        await session.rollback()
        raise
