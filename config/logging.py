# coding: utf-8
"""
Logging configuration with loguru for the Paycycle orchestrator

Besides the console and the general daily file, records from the modules
that move money (allocation, ledger, state machine, renewals) also go to a
payments audit file that is kept for 90 days.
"""
import sys
from pathlib import Path
from loguru import logger
import sentry_sdk

from config.config import LOG_LEVEL, ENVIRONMENT, SENTRY_DSN

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"

PAYMENT_AUDIT_MODULES = (
    "paycycle.services.credit_allocation_service",
    "paycycle.services.credit_service",
    "paycycle.services.payment_state",
    "paycycle.services.payment_events",
    "paycycle.services.subscription_renewal_service",
)


def is_payment_audit_record(record) -> bool:
    """Records written by one of the money-moving modules"""
    return record["name"] in PAYMENT_AUDIT_MODULES and record["level"].no >= logger.level("INFO").no


def setup_logging(logs_dir: Path | None = None) -> None:
    """
    Setup loguru sinks: console, daily files, payments audit and Sentry
    """
    logger.remove()

    logs_dir = logs_dir or Path(__file__).parent.parent / 'logs'
    logs_dir.mkdir(exist_ok=True)

    logger.add(
        sys.stdout,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=LOG_LEVEL,
        colorize=True,
    )

    logger.add(
        logs_dir / "paycycle_{time:YYYY-MM-DD}.log",
        format=LOG_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
        encoding="utf-8",
    )

    # Credits, debits, status transitions and renewals
    logger.add(
        logs_dir / "payments_{time:YYYY-MM-DD}.log",
        format=LOG_FORMAT,
        filter=is_payment_audit_record,
        rotation="00:00",
        retention="90 days",
        compression="zip",
        encoding="utf-8",
    )

    logger.add(
        logs_dir / "error_{time:YYYY-MM-DD}.log",
        format=LOG_FORMAT,
        level="ERROR",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    if SENTRY_DSN:
        logger.add(
            sentry_sink,
            level="ERROR",
            format="{message}",
        )

    import logging
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.ERROR)
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('stripe').setLevel(logging.WARNING)

    logger.info(f"Paycycle initialized | Environment: {ENVIRONMENT} | Log level: {LOG_LEVEL}")


def sentry_sink(message):
    """
    Custom sink to send ERROR and CRITICAL logs to Sentry
    """
    record = message.record
    level = record["level"].name

    extras = {
        "function": record["function"],
        "file": record["file"].path,
        "line": record["line"],
        **record["extra"],
    }

    if level == "ERROR":
        sentry_sdk.capture_message(record["message"], level="error", extras=extras)
    elif level == "CRITICAL":
        sentry_sdk.capture_message(record["message"], level="fatal", extras=extras)

    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"].value)
