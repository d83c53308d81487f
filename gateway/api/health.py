"""Health check endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from gateway.db.pool import get_connection
from gateway.services.usage import get_usage_recorder

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Report process health, database reachability, and metering backlog.

    Stays HTTP 200 with ``"degraded"`` when the database is unreachable so
    liveness checks can tell a dead process from a sick dependency.
    """
    db_ok = False
    try:
        async with get_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                db_ok = True
    except Exception:
        logger.debug("Health check database query failed", exc_info=True)

    recorder = get_usage_recorder()
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "connected" if db_ok else "unreachable",
        "usage_queue": {
            "running": recorder is not None and recorder.running,
            "pending": recorder.pending if recorder is not None else 0,
            "dropped": recorder.dropped if recorder is not None else 0,
        },
    }
