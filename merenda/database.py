import uuid as _uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
import structlog

from merenda.config import settings
from merenda.exceptions import TenantEngineError, TransactionFailure

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


def _get_db_url() -> str:
    """Strip sslmode from URL since asyncpg uses connect_args for SSL."""
    url = settings.DATABASE_URL
    url = url.replace("?sslmode=require", "").replace("&sslmode=require", "")
    return url


engine: AsyncEngine = create_async_engine(
    _get_db_url(),
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_timeout=30,
    pool_recycle=settings.DB_POOL_RECYCLE,
    pool_pre_ping=True,
    echo=settings.DEBUG,
    connect_args={"ssl": "require"} if settings.DB_SSL else {},
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def set_tenant_context(session: AsyncSession, tenant_id: str):
    # set_config() with is_local=true scopes the RLS setting to the current
    # transaction (SET LOCAL) and keeps the tenant id a bound parameter.
    _uuid.UUID(str(tenant_id))  # raises ValueError if not a valid UUID
    await session.execute(
        text("SELECT set_config('app.current_tenant_id', :tid, true)"),
        {"tid": str(tenant_id)},
    )


@asynccontextmanager
async def transaction(session: AsyncSession, operation: str = "transaction") -> AsyncIterator[AsyncSession]:
    """Run a block atomically on ``session``.

    Opens a transaction, or a SAVEPOINT when the caller already has one open,
    so the block either fully applies or leaves nothing behind. Database
    errors surface as TransactionFailure after the rollback; engine errors
    (ownership, stock) propagate unchanged.
    """
    ctx = session.begin_nested() if session.in_transaction() else session.begin()
    try:
        async with ctx:
            yield session
    except TenantEngineError:
        raise
    except SQLAlchemyError as e:
        logger.error("transaction_failed", operation=operation, error=str(e))
        raise TransactionFailure(operation, e) from e


async def advisory_xact_lock(session: AsyncSession, key: str):
    """Take a transaction-scoped advisory lock keyed by ``key`` (e.g. a table name)."""
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key}
    )


_preparer = postgresql.dialect().identifier_preparer


def quote_ident(name: str) -> str:
    """Quote an identifier for PostgreSQL.

    Only registry table names and validated backup names reach this point;
    values always go through bound parameters.
    """
    return _preparer.quote(name)


async def init_db():
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        logger.info("db_connected")


async def close_db():
    await engine.dispose()
    logger.info("db_disconnected")
