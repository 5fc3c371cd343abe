"""Health check endpoint."""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from authledger.database import health_check as db_health_check

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness payload with uptime and storage status.

    Returns:
        Status, ISO8601 timestamp, uptime in seconds, environment and database state
    """
    settings = request.app.state.settings

    if settings.storage_backend == "memory":
        database = "memory"
    else:
        database = "connected" if await db_health_check() else "disconnected"

    return {
        "success": True,
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "environment": settings.environment,
        "database": database,
    }
