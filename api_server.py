"""
FastAPI server for Paycycle
Receives provider webhooks and exposes the operational controls
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from config.config import JOBS_ENABLED, validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from paycycle import __version__
from paycycle.api.router import router as api_router
from paycycle.database.engine import check_connection, dispose_engine
from paycycle.orchestrator import get_orchestrator
from paycycle.tasks.jobs import register_jobs

# Setup logging at module level (must run before app creation)
# This ensures logging works when uvicorn imports the module
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events

    The API process handles webhooks and admin calls. Jobs are registered
    here only so /admin/jobs can run them on demand; the worker ticks them,
    and both take the same distributed lock per job.
    """
    logger.info("Starting Paycycle API Server...")
    init_sentry()

    orchestrator = get_orchestrator()
    await orchestrator.redis.initialize()
    if JOBS_ENABLED:
        register_jobs(orchestrator.scheduler, orchestrator, config=orchestrator.config)
    else:
        logger.info("JOBS_ENABLED=false: webhooks only, no background jobs anywhere")

    yield

    logger.info("Shutting down Paycycle API Server...")
    await orchestrator.redis.close()
    await dispose_engine()
    logger.info("Database connections closed")


app = FastAPI(
    title="Paycycle API",
    description="Payment lifecycle webhooks and operations",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "Paycycle API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """
    Health check endpoint (database + coordination store)
    """
    orchestrator = get_orchestrator()
    database_ok = await check_connection()
    redis_ok = orchestrator.redis.is_available()
    return {
        "status": "healthy" if database_ok and redis_ok else "degraded",
        "database": database_ok,
        "redis": redis_ok,
    }


# Error handler for HTTPException (must be before generic Exception handler)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Return the original status code and detail, logging 4xx as warning and 5xx as error
    """
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    logger.info("Configuration validated successfully")

    # Listen on localhost only; providers reach us through the reverse proxy
    uvicorn.run(
        "api_server:app",
        host="127.0.0.1",
        port=8003,
        log_level="info",
    )
