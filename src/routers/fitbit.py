"""Fitbit connection and sync endpoints.

    GET    /fitbit/auth         start the PKCE handshake (302 to Fitbit)
    GET    /fitbit/callback     finish it (302 to the status page)
    GET    /fitbit/status       connection + freshness summary
    POST   /fitbit/sync         manual sync, always runs
    POST   /fitbit/auto-sync    page-load sync, honours the recency threshold
    DELETE /fitbit/disconnect   revoke and forget the account
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, RedirectResponse

from src.dependencies import (
    Accounts,
    AppSettings,
    Callbacks,
    CurrentUserId,
    OptionalUser,
    Orchestrator,
)
from src.models.fitbit import (
    AutoSyncResponse,
    DisconnectResponse,
    ResourceErrorRead,
    StatusResponse,
    SyncRequest,
    SyncResponse,
)
from src.wearables.base import utc_now
from src.wearables.errors import NotConnectedError, SyncInProgressError
from src.wearables.oauth import FitbitOAuthConfig, build_authorization_url, generate_pkce
from src.wearables.sync.fetchers import parse_data_types
from src.wearables.sync.window import SyncWindow

router = APIRouter(prefix="/fitbit", tags=["fitbit"])
logger = logging.getLogger("healthhub.fitbit")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _status_redirect(base_url: str, **params: str) -> RedirectResponse:
    return RedirectResponse(f"{base_url}?{urlencode(params)}", status_code=302)


# ---------- OAuth ----------

@router.get("/auth")
async def start_auth(
    user_id: CurrentUserId, accounts: Accounts, settings: AppSettings
) -> RedirectResponse:
    pkce = generate_pkce()
    await accounts.save_pending(user_id, pkce.code_verifier, pkce.state)
    url = build_authorization_url(FitbitOAuthConfig.from_settings(settings), pkce)
    return RedirectResponse(url, status_code=302)


@router.get("/callback")
async def oauth_callback(
    user: OptionalUser,
    handler: Callbacks,
    settings: AppSettings,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> RedirectResponse:
    outcome = await handler.handle(
        user.healthhub_user_id if user else None,
        code,
        state,
        error=error,
        error_description=error_description,
    )
    if outcome.success:
        return _status_redirect(settings.fitbit_status_page_url, success="connected")
    return _status_redirect(settings.fitbit_status_page_url, error=outcome.error or "unknown")


# ---------- Status ----------

@router.get("/status", response_model=StatusResponse)
async def get_status(user_id: CurrentUserId, orchestrator: Orchestrator) -> Any:
    status = await orchestrator.status(user_id)
    return StatusResponse(
        connected=status.connected,
        last_synced_at=status.last_synced_at,
        initial_sync_completed=status.initial_sync_completed,
        needs_sync=status.needs_sync,
        provider_user_id=status.provider_user_id,
        scopes=status.scopes,
        expires_at=status.expires_at,
        is_expired=status.token_expired,
    )


# ---------- Sync ----------

@router.post("/sync", response_model=SyncResponse)
async def manual_sync(
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
    body: SyncRequest | None = None,
) -> Any:
    body = body or SyncRequest()

    data_types = parse_data_types(body.data_types)
    if body.data_types and not data_types:
        return _error(400, "No valid data types requested")

    window = None
    if body.start_date:
        end_date = body.end_date or utc_now().date()
        if body.start_date > end_date:
            return _error(400, "startDate must not be in the future")
        window = SyncWindow.from_dates(body.start_date, end_date)

    try:
        result = await orchestrator.forced(
            user_id, days=body.days, window=window, data_types=data_types
        )
    except NotConnectedError:
        return _error(400, "Fitbit not connected")
    except SyncInProgressError:
        return _error(409, "A sync is already in progress")
    except Exception:
        logger.exception("Manual sync failed")
        return _error(500, "Sync failed")

    return SyncResponse(
        success=result.success,
        synced_at=result.synced_at,
        rows_written=result.rows_written,
        errors=[ResourceErrorRead(**e.to_json()) for e in result.errors],
    )


@router.post("/auto-sync", response_model=AutoSyncResponse)
async def auto_sync(user_id: CurrentUserId, orchestrator: Orchestrator) -> Any:
    outcome = await orchestrator.auto(user_id)
    result = outcome.result
    return AutoSyncResponse(
        connected=outcome.connected,
        synced=outcome.synced,
        message=outcome.reason,
        last_synced_at=outcome.last_synced_at,
        next_sync_after=outcome.next_sync_after,
        success=result.success if result else None,
        errors=[ResourceErrorRead(**e.to_json()) for e in result.errors] if result else [],
    )


# ---------- Disconnect ----------

@router.delete("/disconnect", response_model=DisconnectResponse)
async def disconnect(user_id: CurrentUserId, orchestrator: Orchestrator) -> Any:
    try:
        removed = await orchestrator.disconnect(user_id)
    except Exception:
        logger.exception("Fitbit disconnect failed")
        return _error(500, "Failed to disconnect Fitbit")
    return DisconnectResponse(success=True, disconnected=removed)
