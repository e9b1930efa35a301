"""
Database engine configuration for the Paycycle orchestrator

Async SQLAlchemy 2.0 setup. PostgreSQL (asyncpg) is the production target;
aiosqlite is accepted for local runs, without the pool and server settings
that only apply to PostgreSQL.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

from config.config import DATABASE_URL, ENVIRONMENT
from paycycle.database.models import Base


# Global engine and session maker
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None

# Tables the ledger, monitoring and renewal paths write to
ORCHESTRATOR_TABLES = frozenset(Base.metadata.tables)


def engine_options(url: str, is_production: bool) -> Dict[str, Any]:
    """create_async_engine keyword arguments for the URL's dialect"""
    options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if make_url(url).get_backend_name() != "postgresql":
        return options

    options.update(
        poolclass=AsyncAdaptedQueuePool,
        pool_size=10 if is_production else 5,
        max_overflow=20 if is_production else 10,
        pool_recycle=3600,
        connect_args={
            # PgBouncer in transaction mode cannot keep prepared statements
            "statement_cache_size": 0,
            "server_settings": {
                "application_name": "paycycle",
                "jit": "off",
            },
        },
    )
    return options


def get_engine() -> AsyncEngine:
    """
    Create the process-wide async engine on first use

    Returns:
        Configured AsyncEngine instance
    """
    global engine

    if engine is None:
        engine = create_async_engine(
            DATABASE_URL, **engine_options(DATABASE_URL, ENVIRONMENT == "production")
        )
        logger.info(
            f"Database engine created - Environment: {ENVIRONMENT}, "
            f"Dialect: {engine.dialect.name}"
        )

    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Create async session maker

    Returns:
        Configured async_sessionmaker instance
    """
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,  # Important for async!
            autoflush=False,
        )

        logger.info("Session maker created")

    return AsyncSessionLocal


async def _table_names(conn: AsyncConnection) -> List[str]:
    return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def init_db(target: Optional[AsyncEngine] = None) -> List[str]:
    """
    Create the orchestrator tables that do not exist yet

    Existing tables are left as they are, including their indexes, so the
    one-open-task-per-entity index only appears on a fresh admin_tasks table.

    Returns:
        Names of the tables created by this call
    """
    async with (target or get_engine()).begin() as conn:
        before = set(await _table_names(conn))
        await conn.run_sync(Base.metadata.create_all)
        created = sorted(ORCHESTRATOR_TABLES - before)

    if created:
        logger.info(f"Database tables created: {', '.join(created)}")
    else:
        logger.info("Database schema already present")
    return created


async def dispose_engine() -> None:
    """
    Dispose database engine and close all connections

    Call this on application shutdown
    """
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
        engine = None
        AsyncSessionLocal = None


async def check_connection(target: Optional[AsyncEngine] = None) -> bool:
    """
    Check that the database answers and holds the orchestrator schema

    A reachable database without the ledger tables counts as down: the
    worker's init_db has not run against it yet.
    """
    try:
        async with (target or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
            missing = sorted(ORCHESTRATOR_TABLES - set(await _table_names(conn)))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection check failed: {e}")
        return False

    if missing:
        logger.error(f"Database reachable but tables missing: {', '.join(missing)}")
        return False
    logger.debug("Database connection check: OK")
    return True
