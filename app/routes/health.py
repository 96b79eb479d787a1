# app/routes/health.py
"""
Health check endpoints: liveness, and readiness across the database pool,
Redis (when configured) and required configuration.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.infrastructure.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "report-engine"}


@router.get("/readyz")
async def readyz():
    """Readiness check with all dependencies."""
    checks = {}
    overall_ok = True

    # 1) Redis, only when something depends on it
    if fast_redis.configured:
        t0 = time.time()
        redis_ok = await fast_redis.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["redis"] = {"ok": redis_ok, "latency_ms": latency_ms}
        log_health_check("redis", redis_ok, latency_ms)
        overall_ok = overall_ok and redis_ok
    else:
        checks["redis"] = {"ok": True, "configured": False}

    # 2) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)

        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if "warnings" in db_health:
            checks["database"]["warnings"] = db_health["warnings"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check("database", is_healthy, latency_ms, db_health.get("error"))
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 3) Configuration
    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    if not settings.CRON_SECRET:
        config_issues.append("CRON_SECRET not set")
    if not settings.SENDGRID_API_KEY:
        config_issues.append("SENDGRID_API_KEY not set")
    if settings.QUEUE_BACKEND == "qstash" and not (
        settings.QSTASH_TOKEN and settings.QSTASH_CURRENT_SIGNING_KEY
    ):
        config_issues.append("QStash backend selected without token or signing key")
    if settings.QUEUE_BACKEND != "inline" and not settings.REDIS_URL:
        config_issues.append(f"QUEUE_BACKEND={settings.QUEUE_BACKEND} requires REDIS_URL")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
        "queue_backend": settings.QUEUE_BACKEND,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
