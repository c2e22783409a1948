"""
Health check and monitoring endpoints.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from logchain.config import settings
from logchain.database import Database, get_db
from logchain.models import HealthStatus

router = APIRouter(tags=["monitoring"])

# Track application start time
START_TIME = time.time()


@router.get("/health", response_model=HealthStatus)
async def health_check(db: Database = Depends(get_db)):
    """
    Health check endpoint.

    Reports database connectivity, whether the chain HMAC key is
    configured, uptime and version. Appends and verification fail
    without the key, so a missing key makes the service unhealthy.
    """
    db_healthy = await db.health_check()
    key_configured = bool(settings.log_hash_key)

    return HealthStatus(
        status="healthy" if db_healthy and key_configured else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        hash_key_configured=key_configured,
        uptime_seconds=time.time() - START_TIME,
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/health/live")
async def liveness_check():
    """Liveness probe. Does not check dependencies."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(db: Database = Depends(get_db)):
    """
    Readiness probe.

    Not ready while the database is unreachable or LOG_HASH_KEY is unset.
    """
    if not settings.log_hash_key:
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "reason": "LOG_HASH_KEY missing"}
        )

    if not await db.health_check():
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "reason": "database disconnected"}
        )

    return {"status": "ready"}


@router.get(settings.metrics_path)
async def metrics():
    """
    Prometheus metrics endpoint.

    Includes submission counts, append latency, append conflicts,
    queue job outcomes and chain verification results.
    """
    if not settings.enable_metrics:
        return Response(status_code=404)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@router.get("/info")
async def info():
    """Basic information about the running service."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "uptime_seconds": time.time() - START_TIME
    }
