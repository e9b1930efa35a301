"""
Paycycle background worker

Runs payment monitoring, subscription renewal and task reconciliation on
the job scheduler until SIGTERM/SIGINT.
"""

import asyncio
import signal
import sys

from loguru import logger

from config.config import validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from paycycle.database.engine import dispose_engine, init_db
from paycycle.orchestrator import get_orchestrator
from paycycle.tasks.jobs import register_jobs


async def on_startup(orchestrator) -> None:
    """Actions to perform on worker startup"""
    logger.info("Starting Paycycle worker...")

    await init_db()

    redis_available = await orchestrator.redis.initialize()
    if redis_available:
        logger.info("Redis initialized successfully")
    else:
        logger.warning("Redis unavailable - jobs will skip until the lock store is back")

    # Rebuild the pending payment queue from the ledger
    await orchestrator.monitoring.initialize()

    register_jobs(orchestrator.scheduler, orchestrator, config=orchestrator.config)
    orchestrator.scheduler.start()


async def on_shutdown(orchestrator) -> None:
    """Actions to perform on worker shutdown"""
    logger.info("Shutting down Paycycle worker...")

    # Let in-flight jobs finish (bounded by the shutdown timeout)
    await orchestrator.scheduler.stop()

    await orchestrator.redis.close()
    logger.info("Redis closed")

    await dispose_engine()
    logger.info("Database connections closed")


async def main() -> None:
    """Main worker function"""
    setup_logging()
    init_sentry()

    try:
        validate_config()
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info("Configuration validated successfully")

    orchestrator = get_orchestrator()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    await on_startup(orchestrator)
    try:
        await stop_event.wait()
    finally:
        await on_shutdown(orchestrator)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Worker stopped")
