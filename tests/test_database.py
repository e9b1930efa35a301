"""
Tests for schema setup, the connection check and the payments audit log filter
"""

import pytest
from loguru import logger
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config.logging import is_payment_audit_record
from paycycle.database.engine import ORCHESTRATOR_TABLES, check_connection, engine_options, init_db


@pytest.fixture
async def empty_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    await engine.dispose()


@pytest.mark.asyncio
async def test_check_connection_requires_schema(empty_engine):
    """Reachable but uninitialized counts as down"""
    assert await check_connection(empty_engine) is False

    created = await init_db(empty_engine)

    assert created == sorted(ORCHESTRATOR_TABLES)
    assert "admin_tasks" in created
    assert await check_connection(empty_engine) is True


@pytest.mark.asyncio
async def test_init_db_is_repeatable(empty_engine):
    await init_db(empty_engine)
    assert await init_db(empty_engine) == []


def test_engine_options_per_dialect():
    sqlite = engine_options("sqlite+aiosqlite:///paycycle.db", is_production=True)
    assert "pool_size" not in sqlite
    assert "connect_args" not in sqlite

    dev = engine_options("postgresql+asyncpg://u:p@localhost/paycycle", is_production=False)
    prod = engine_options("postgresql+asyncpg://u:p@localhost/paycycle", is_production=True)
    assert (dev["pool_size"], prod["pool_size"]) == (5, 10)
    assert prod["connect_args"]["statement_cache_size"] == 0
    assert prod["connect_args"]["server_settings"]["application_name"] == "paycycle"


@pytest.mark.parametrize(
    "name, level, expected",
    [
        ("paycycle.services.credit_allocation_service", "INFO", True),
        ("paycycle.services.subscription_renewal_service", "WARNING", True),
        ("paycycle.services.credit_service", "DEBUG", False),
        ("paycycle.services.payment_monitoring_service", "INFO", False),
        ("paycycle.tasks.scheduler", "ERROR", False),
    ],
)
def test_payment_audit_filter(name, level, expected):
    record = {"name": name, "level": logger.level(level)}
    assert is_payment_audit_record(record) is expected
