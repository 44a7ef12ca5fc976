"""Cron endpoint: background sync for inactive Fitbit accounts.

Called by the platform scheduler (daily, 03:00) with
``Authorization: Bearer <CRON_SECRET>``.  Outside Clerk auth.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.dependencies import AppSettings, BatchScheduler
from src.models.fitbit import CronItemRead, CronResponse
from src.wearables.sync.batch import verify_cron_secret

router = APIRouter(prefix="/cron", tags=["cron"])
logger = logging.getLogger("healthhub.cron")


@router.get("/fitbit-sync", response_model=CronResponse, response_model_exclude_none=True)
async def fitbit_sync(
    request: Request, settings: AppSettings, scheduler: BatchScheduler
) -> Any:
    if not verify_cron_secret(request.headers.get("Authorization"), settings.cron_secret):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        batch = await scheduler.run()
    except Exception:
        logger.exception("Cron batch failed")
        return JSONResponse(status_code=500, content={"error": "Cron job failed"})

    return CronResponse(
        success=batch.success,
        processed=batch.processed,
        success_count=batch.success_count,
        fail_count=batch.fail_count,
        results=[
            CronItemRead(user_index=r.index, success=r.success, error=r.error)
            for r in batch.results
        ],
    )
