"""
Report engine API: report job triggers, webhook ingestion, integration
token maintenance and email logs.
"""

import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import (
    bind_request_context,
    get_logger,
    setup_logging,
)
from app.routes import email_logs, health, integrations, queue
from app.services.infrastructure.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.environment != "development")
logger = get_logger(__name__)

Resource = tuple[str, Callable[[], Awaitable[None]], Callable[[], Awaitable[None]]]


def _resources() -> list[Resource]:
    """(name, open, close) in startup order. Redis only when something uses it."""
    resources: list[Resource] = [("database_pool", db_pool.initialize, db_pool.close)]
    if fast_redis.configured:
        resources.append(("redis", fast_redis.initialize, fast_redis.close))
    return resources


async def _close_all(opened: list[Resource]) -> list[str]:
    errors = []
    # Database pool closes last, in-flight requests may still hold connections
    for name, _, close in reversed(opened):
        try:
            logger.info("Closing resource", resource=name)
            await close()
        except Exception as e:
            logger.error("Error closing resource", resource=name, error=str(e))
            errors.append(f"{name}: {e}")
    return errors


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        queue_backend=settings.QUEUE_BACKEND,
    )

    opened: list[Resource] = []
    try:
        for resource in _resources():
            logger.info("Initializing resource", resource=resource[0])
            await resource[1]()
            opened.append(resource)
    except Exception as e:
        logger.error(
            "Failed to initialize services",
            error=str(e),
            completed=[name for name, _, _ in opened],
        )
        await _close_all(opened)
        raise

    logger.info("All services initialized", services=[name for name, _, _ in opened])

    yield

    logger.info("Application shutting down")
    errors = await _close_all(opened)
    if errors:
        logger.warning("Some services had shutdown errors", errors=errors)


app = FastAPI(
    title="MetricLog Report Engine",
    description="Integration token lifecycle and idempotent report job queue",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(queue.router)
app.include_router(integrations.router)
app.include_router(email_logs.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag every log line of the request with a request id and log timing."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    bind_request_context(request_id)

    start_time = time.time()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.time() - start_time) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
