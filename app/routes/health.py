"""
Health check endpoints: liveness, and readiness across the database, Redis
and the job dispatcher.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "shelfgraph"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check with all dependencies.

    Redis only counts toward readiness when it is configured; without it
    jobs run inline and responses are not cached.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy
    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Redis
    if fast_redis.configured:
        t0 = time.time()
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and redis_ok
    else:
        checks["redis"] = {"ok": True, "configured": False}

    # 3) Job dispatch
    dispatcher = getattr(request.app.state, "dispatcher", None)
    checks["jobs"] = {
        "ok": dispatcher is not None,
        "mode": dispatcher.mode if dispatcher is not None else None,
    }
    overall_ok = overall_ok and dispatcher is not None

    return {
        "overall_ok": overall_ok,
        "checks": checks,
        "environment": settings.environment,
        "timestamp": time.time(),
    }
