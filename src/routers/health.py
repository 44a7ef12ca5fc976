"""Health check endpoint, public, no auth required."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from src.dependencies import AppSettings, Db
from src.wearables.base import utc_now

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthhub.health")


@router.get("/health")
async def health_check(settings: AppSettings, db: Db) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check.
    """
    db_ok = False
    try:
        await db.fetchval("SELECT 1")
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "timestamp": utc_now().isoformat(),
    }
