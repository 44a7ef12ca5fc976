"""Sync orchestrator.

Coordinates one sync run for one user:
1. Take the per-user lease (overlapping runs are rejected, not raced)
2. Refresh the access token if it expires within the buffer
3. Fetch every requested resource concurrently (bounded by a semaphore)
4. On a 401, refresh once and re-fetch the unauthorized resources
5. Upsert each successful resource's readings
6. Record the run on the account in a single write

Entry points:
    auto(user_id)    page-load trigger, honours the recency threshold
    forced(user_id)  manual button and cron, always runs
    status(user_id)  connection + freshness summary
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncGenerator, Callable
from uuid import UUID

import httpx

from src.config import Settings
from src.wearables.accounts import AccountRepository
from src.wearables.adapters.fitbit import FitbitClient
from src.wearables.base import (
    FetchOutcome,
    FitbitAccount,
    ResourceError,
    ResourceType,
    SyncRunResult,
    utc_now,
)
from src.wearables.errors import (
    NotConnectedError,
    SyncInProgressError,
    TokenExchangeError,
    TokenRefreshError,
)
from src.wearables.oauth import FitbitOAuthClient
from src.wearables.sync.fetchers import DEFAULT_DATA_TYPES, get_fetcher
from src.wearables.sync.upsert import DailyMetricWriter
from src.wearables.sync.window import (
    SyncWindow,
    compute_window,
    needs_sync,
    next_sync_after,
)

logger = logging.getLogger("healthhub.wearables.sync.orchestrator")

TOKEN_REFRESH_FAILED = "token_refresh_failed"


@dataclass
class AutoSyncResult:
    """Outcome of a page-load trigger.

    Attributes:
        connected:       False when the user has no active account.
        synced:          True when a run actually happened.
        reason:          not_connected | recent_sync | initial_sync | synced
                         | in_progress | token_refresh_failed | error
        last_synced_at:  Account value after the call.
        next_sync_after: Earliest instant the next auto run will fire.
        result:          Run result when ``synced`` is True.
    """

    connected: bool
    synced: bool
    reason: str
    last_synced_at: datetime | None = None
    next_sync_after: datetime | None = None
    result: SyncRunResult | None = None


@dataclass
class SyncStatus:
    connected: bool
    last_synced_at: datetime | None = None
    initial_sync_completed: bool = False
    needs_sync: bool = False
    provider_user_id: str | None = None
    scopes: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    token_expired: bool = False


class SyncOrchestrator:
    """Run Fitbit syncs for individual users.

    Usage::

        orchestrator = SyncOrchestrator(accounts, writer, api, oauth, settings)
        outcome = await orchestrator.auto(user_id)
    """

    def __init__(
        self,
        accounts: AccountRepository,
        writer: DailyMetricWriter,
        api: FitbitClient,
        oauth: FitbitOAuthClient,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            accounts: Account persistence (tokens + sync bookkeeping).
            writer:   Daily-metric upsert writer.
            api:      Fitbit Web API client shared across users.
            oauth:    Token endpoint client used for refresh and revoke.
            settings: Sync tunables (lookback, interval, concurrency, buffer).
            clock:    Returns the current UTC instant; injectable for tests.
        """
        self._accounts = accounts
        self._writer = writer
        self._api = api
        self._oauth = oauth
        self._clock = clock
        self._lookback_days = settings.sync_default_lookback_days
        self._interval_hours = settings.sync_interval_hours
        self._max_concurrent = settings.sync_max_concurrent_fetches
        self._refresh_buffer = settings.token_refresh_buffer_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def status(self, user_id: UUID) -> SyncStatus:
        account = await self._accounts.get(user_id)
        if account is None or not account.is_connected:
            return SyncStatus(connected=False)
        now = self._clock()
        return SyncStatus(
            connected=True,
            last_synced_at=account.last_synced_at,
            initial_sync_completed=account.initial_sync_completed,
            needs_sync=needs_sync(
                account.last_synced_at,
                now,
                self._interval_hours,
                account.initial_sync_completed,
            ),
            provider_user_id=account.provider_user_id,
            scopes=account.scopes,
            expires_at=account.expires_at,
            token_expired=account.expires_at is not None and account.expires_at <= now,
        )

    async def auto(self, user_id: UUID) -> AutoSyncResult:
        """Sync if the account is due; the first call after connecting always runs."""
        now = self._clock()
        skipped = self._auto_skip(await self._accounts.get(user_id), now)
        if skipped:
            return skipped

        try:
            async with self._lease(user_id):
                # Re-read under the lease: another trigger may have just finished
                account = await self._accounts.get(user_id)
                skipped = self._auto_skip(account, now)
                if skipped:
                    return skipped

                initial = not account.initial_sync_completed
                window = compute_window(
                    None if initial else account.last_synced_at,
                    now,
                    lookback_days=self._lookback_days,
                )
                result = await self.run_sync(account, window)
                if result.credentials_rejected:
                    return AutoSyncResult(
                        connected=True,
                        synced=False,
                        reason=TOKEN_REFRESH_FAILED,
                        last_synced_at=account.last_synced_at,
                        result=result,
                    )
                await self._accounts.mark_synced(user_id, now, initial_completed=True)
        except SyncInProgressError:
            return AutoSyncResult(connected=True, synced=False, reason="in_progress")
        except Exception:
            logger.exception("Auto sync failed")
            return AutoSyncResult(connected=True, synced=False, reason="error")

        return AutoSyncResult(
            connected=True,
            synced=True,
            reason="initial_sync" if initial else "synced",
            last_synced_at=now,
            next_sync_after=next_sync_after(now, self._interval_hours),
            result=result,
        )

    async def forced(
        self,
        user_id: UUID,
        days: int | None = None,
        window: SyncWindow | None = None,
        data_types: list[ResourceType] | None = None,
    ) -> SyncRunResult:
        """Run regardless of recency and advance ``last_synced_at``.

        ``last_synced_at`` moves even when some resources failed, but not
        when Fitbit rejected the stored credentials outright.

        Raises:
            NotConnectedError:   No active account.
            SyncInProgressError: Another run holds the lease.
        """
        async with self._lease(user_id):
            account = await self._accounts.get(user_id)
            if account is None or not account.is_connected:
                raise NotConnectedError("Fitbit not connected")
            now = self._clock()
            if window is None:
                window = compute_window(
                    account.last_synced_at,
                    now,
                    lookback_days=self._lookback_days,
                    days=days,
                )
            result = await self.run_sync(account, window, data_types)
            if not result.credentials_rejected:
                await self._accounts.mark_synced(user_id, now)
        return result

    async def disconnect(self, user_id: UUID) -> bool:
        """Revoke tokens at Fitbit (best-effort) and delete the account.

        Returns:
            False if there was no account.
        """
        account = await self._accounts.get(user_id)
        if account is None:
            return False
        token = account.refresh_token or account.access_token
        if account.is_connected and token:
            try:
                await self._oauth.revoke(token)
            except (TokenExchangeError, httpx.HTTPError) as exc:
                logger.warning("Fitbit token revoke failed, deleting anyway: %s", exc)
        return await self._accounts.delete(user_id)

    async def run_sync(
        self,
        account: FitbitAccount,
        window: SyncWindow,
        data_types: list[ResourceType] | None = None,
    ) -> SyncRunResult:
        """Fetch and write every requested resource over ``window``.

        A failing resource is recorded in ``errors`` and does not stop the
        others from being written.
        """
        types = list(data_types or DEFAULT_DATA_TYPES)
        synced_at = self._clock()

        try:
            access_token = await self._ensure_fresh_token(account)
        except (TokenRefreshError, httpx.HTTPError) as exc:
            logger.warning("Token refresh before sync failed: %s", exc)
            return SyncRunResult(
                synced_at=synced_at,
                errors=[ResourceError(t, TOKEN_REFRESH_FAILED) for t in types],
                credentials_rejected=True,
            )

        outcomes = await self._fetch_all(types, access_token, window)

        unauthorized = [o.resource for o in outcomes if o.unauthorized]
        credentials_rejected = False
        if unauthorized:
            logger.info("Fitbit returned 401 for %d resources; refreshing token", len(unauthorized))
            try:
                access_token = await self._refresh(account)
            except (TokenRefreshError, httpx.HTTPError) as exc:
                logger.warning("Token refresh after 401 failed: %s", exc)
                credentials_rejected = True
                outcomes = [
                    FetchOutcome(o.resource, error=TOKEN_REFRESH_FAILED) if o.unauthorized else o
                    for o in outcomes
                ]
            else:
                retried = {o.resource: o for o in await self._fetch_all(unauthorized, access_token, window)}
                outcomes = [retried.get(o.resource, o) for o in outcomes]

        errors: list[ResourceError] = []
        rows_written = 0
        for outcome in outcomes:
            if not outcome.ok:
                errors.append(ResourceError(outcome.resource, outcome.error or "fetch_failed"))
                continue
            rows_written += await self._writer.upsert_many(
                account.user_id, outcome.readings or []
            )

        logger.info(
            "Sync run complete: %d/%d resources ok, %d rows written, window %s..%s",
            len(outcomes) - len(errors),
            len(outcomes),
            rows_written,
            window.start_date,
            window.end_date,
        )
        return SyncRunResult(
            synced_at=synced_at,
            errors=errors,
            rows_written=rows_written,
            credentials_rejected=credentials_rejected,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _auto_skip(self, account: FitbitAccount | None, now: datetime) -> AutoSyncResult | None:
        if account is None or not account.is_connected:
            return AutoSyncResult(connected=False, synced=False, reason="not_connected")
        if account.initial_sync_completed and not needs_sync(
            account.last_synced_at, now, self._interval_hours
        ):
            return AutoSyncResult(
                connected=True,
                synced=False,
                reason="recent_sync",
                last_synced_at=account.last_synced_at,
                next_sync_after=next_sync_after(account.last_synced_at, self._interval_hours),
            )
        return None

    @asynccontextmanager
    async def _lease(self, user_id: UUID) -> AsyncGenerator[None, None]:
        async with self._accounts.sync_lease(user_id) as acquired:
            if not acquired:
                raise SyncInProgressError("A sync is already running for this account")
            yield

    async def _fetch_all(
        self, types: list[ResourceType], access_token: str, window: SyncWindow
    ) -> list[FetchOutcome]:
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _one(resource: ResourceType) -> FetchOutcome:
            async with semaphore:
                return await get_fetcher(resource).fetch(self._api, access_token, window)

        return list(await asyncio.gather(*(_one(t) for t in types)))

    async def _ensure_fresh_token(self, account: FitbitAccount) -> str:
        if account.access_token and not account.token_expires_within(
            self._refresh_buffer, self._clock()
        ):
            return account.access_token
        return await self._refresh(account)

    async def _refresh(self, account: FitbitAccount) -> str:
        """Refresh and persist the token set; Fitbit rotates the refresh token."""
        if not account.refresh_token:
            raise TokenRefreshError("No refresh token stored")
        tokens = await self._oauth.refresh(account.refresh_token)
        await self._accounts.update_tokens(account.user_id, tokens)
        account.access_token = tokens.access_token
        account.refresh_token = tokens.refresh_token
        account.expires_at = tokens.expires_at
        logger.info("Refreshed Fitbit access token")
        return tokens.access_token

