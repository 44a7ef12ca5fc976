"""HealthHub Sync API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.middleware.clerk_auth import ClerkAuthMiddleware
from src.routers import cron, fitbit, health
from src.services.database import Database
from src.wearables.accounts import AccountRepository
from src.wearables.adapters.fitbit import FitbitClient
from src.wearables.oauth import FitbitOAuthClient, FitbitOAuthConfig
from src.wearables.sync.batch import InactivityBatchScheduler
from src.wearables.sync.orchestrator import SyncOrchestrator
from src.wearables.sync.upsert import DailyMetricWriter

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthhub")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the shared services once and park them on ``app.state``."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )

    db = Database()
    await db.connect(settings)
    http_client = httpx.AsyncClient(timeout=settings.sync_fetch_timeout_seconds)

    accounts = AccountRepository(db)
    oauth = FitbitOAuthClient(
        FitbitOAuthConfig.from_settings(settings),
        http_client=http_client,
        timeout=settings.sync_fetch_timeout_seconds,
    )
    api = FitbitClient(
        http_client=http_client,
        timeout=settings.sync_fetch_timeout_seconds,
        retry_attempts=settings.sync_fetch_retry_attempts,
    )
    orchestrator = SyncOrchestrator(accounts, DailyMetricWriter(db), api, oauth, settings)

    app.state.db = db
    app.state.accounts = accounts
    app.state.oauth = oauth
    app.state.orchestrator = orchestrator
    app.state.batch_scheduler = InactivityBatchScheduler(accounts, orchestrator, settings)

    try:
        yield
    finally:
        await http_client.aclose()
        await db.close()
        logger.info("%s shut down", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="HealthHub Sync API",
        description="Fitbit account linking and incremental health-data sync.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (outermost first) ----------

    # Clerk JWT authentication
    app.add_middleware(ClerkAuthMiddleware, settings=settings)

    # CORS must be the innermost middleware so it can handle preflight
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(fitbit.router, prefix=v1_prefix)
    app.include_router(cron.router, prefix=v1_prefix)

    return app


app = create_app()
