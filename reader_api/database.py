"""
Async SQLAlchemy engine, declarative base and session helpers.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from reader_api.config import settings


def generate_uuid() -> str:
    """Generate a string UUID4 primary key."""
    return str(uuid.uuid4())


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": settings.db_echo}
    return {
        "echo": settings.db_echo,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
    }


def configure_sqlite_locking(async_engine: AsyncEngine):
    """
    SQLite only: start every transaction with BEGIN IMMEDIATE so conditional
    claims (UPDATE ... WHERE consumed = false) serialize instead of failing
    with "database is locked" when two writers race.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str) -> AsyncEngine:
    async_engine = create_async_engine(url, **_engine_kwargs(url))
    if url.startswith("sqlite"):
        configure_sqlite_locking(async_engine)
    return async_engine


engine = build_engine(settings.database_url)
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session scope: commits on success, rolls back on any error.
    """
    async with SessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create all tables (no migration history is kept for these tables)."""
    # Import models so they register on the metadata.
    import reader_api.oauth.schemas  # noqa: F401
    import reader_api.session.schemas  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")
