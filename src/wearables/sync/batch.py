"""Inactivity batch scheduler.

Invoked by an external cron (``GET /api/v1/cron/fitbit-sync``).  Picks up
connected accounts nobody has opened the app for in a while, so their
history keeps flowing in without a page-load trigger:

- selection: ``initial_sync_completed`` and last sync missing or older than
  the inactivity threshold, oldest first, capped per run
- each account runs a forced sync over ``[last_synced_at − 1 day, now]``
- accounts are processed one at a time with a pause in between to stay
  under Fitbit's per-app rate limit
- a failure is recorded against the account's position and the batch moves on

User ids never appear in this module's logs or results; accounts are
referred to by their 1-based position in the batch.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import UUID

from src.config import Settings
from src.wearables.accounts import AccountRepository
from src.wearables.base import utc_now
from src.wearables.errors import NotConnectedError, SyncInProgressError
from src.wearables.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("healthhub.wearables.sync.batch")


def verify_cron_secret(authorization: str | None, secret: str | None) -> bool:
    """Check an ``Authorization: Bearer <secret>`` header.

    An unset secret rejects every caller.
    """
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


@dataclass
class BatchItemResult:
    """Outcome for one account, identified only by its batch position."""

    index: int
    success: bool
    error: str | None = None


@dataclass
class BatchRunResult:
    results: list[BatchItemResult] = field(default_factory=list)
    success: bool = True

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def fail_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


class InactivityBatchScheduler:
    """Sync accounts that have gone quiet.

    Usage::

        scheduler = InactivityBatchScheduler(accounts, orchestrator, settings)
        result = await scheduler.run()
    """

    def __init__(
        self,
        accounts: AccountRepository,
        orchestrator: SyncOrchestrator,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            accounts:     Source of inactive accounts.
            orchestrator: Runs the forced sync per account.
            settings:     Threshold, batch cap and pacing.
            clock:        Returns the current UTC instant.
            sleep:        Pause between accounts; replaced in tests.
        """
        self._accounts = accounts
        self._orchestrator = orchestrator
        self._clock = clock
        self._sleep = sleep
        self._threshold = timedelta(days=settings.cron_inactivity_threshold_days)
        self._max_batch = settings.cron_max_batch_size
        self._pacing = settings.cron_pacing_seconds

    async def run(self) -> BatchRunResult:
        cutoff = self._clock() - self._threshold
        candidates = await self._accounts.list_inactive(cutoff, self._max_batch)
        logger.info("Cron: %d inactive accounts to sync", len(candidates))

        batch = BatchRunResult()
        for position, account in enumerate(candidates, start=1):
            if position > 1 and self._pacing > 0:
                await self._sleep(self._pacing)
            batch.results.append(await self._sync_one(position, account.user_id))

        logger.info(
            "Cron: completed, %d success, %d failed",
            batch.success_count,
            batch.fail_count,
        )
        return batch

    async def _sync_one(self, position: int, user_id: UUID) -> BatchItemResult:
        logger.info("Cron: syncing account #%d", position)
        try:
            result = await self._orchestrator.forced(user_id)
        except SyncInProgressError:
            return BatchItemResult(index=position, success=False, error="sync_in_progress")
        except NotConnectedError:
            return BatchItemResult(index=position, success=False, error="not_connected")
        except Exception as exc:
            # Exception text can carry the user id; log the type only
            logger.error("Cron: account #%d failed (%s)", position, type(exc).__name__)
            return BatchItemResult(index=position, success=False, error="sync_failed")

        error = ", ".join(e.message for e in result.errors) if result.errors else None
        return BatchItemResult(index=position, success=result.success, error=error)
