"""Shared FastAPI dependencies injected into route handlers.

Long-lived services (database, repository, Fitbit clients, orchestrator,
batch scheduler) are built once in the app lifespan and parked on
``app.state``; the providers below hand them to routes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.services.database import Database
from src.wearables.accounts import AccountRepository
from src.wearables.callback import CallbackHandler
from src.wearables.oauth import FitbitOAuthClient
from src.wearables.sync.batch import InactivityBatchScheduler
from src.wearables.sync.orchestrator import SyncOrchestrator


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from Clerk JWT."""

    user_id: str  # Clerk user ID (e.g. "user_2x...")
    healthhub_user_id: uuid.UUID | None = None  # Internal UUID from the session token template
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Clerk auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


async def get_optional_user(request: Request) -> AuthContext | None:
    """Like ``get_current_user`` but returns None for anonymous callers."""
    return getattr(request.state, "auth", None)


async def get_user_id(user: Annotated[AuthContext, Depends(get_current_user)]) -> uuid.UUID:
    """Internal user id of the caller; 403 until the account is provisioned."""
    if user.healthhub_user_id is None:
        raise HTTPException(status_code=403, detail="User not provisioned")
    return user.healthhub_user_id


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_accounts(request: Request) -> AccountRepository:
    return request.app.state.accounts


def get_oauth_client(request: Request) -> FitbitOAuthClient:
    return request.app.state.oauth


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_batch_scheduler(request: Request) -> InactivityBatchScheduler:
    return request.app.state.batch_scheduler


def get_callback_handler(
    accounts: Annotated[AccountRepository, Depends(get_accounts)],
    oauth: Annotated[FitbitOAuthClient, Depends(get_oauth_client)],
) -> CallbackHandler:
    return CallbackHandler(accounts, oauth)


# Annotated shortcuts for route signatures
OptionalUser = Annotated[AuthContext | None, Depends(get_optional_user)]
CurrentUserId = Annotated[uuid.UUID, Depends(get_user_id)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Db = Annotated[Database, Depends(get_database)]
Accounts = Annotated[AccountRepository, Depends(get_accounts)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
BatchScheduler = Annotated[InactivityBatchScheduler, Depends(get_batch_scheduler)]
Callbacks = Annotated[CallbackHandler, Depends(get_callback_handler)]
