"""Sync window calculator.

Decides which date range the next pull covers:

    never synced      → [now − lookback, now]          (initial sync)
    last synced at D  → [D − 1 day, now]               (incremental)
    forced, N days    → [min(now − N, D − 1 day), now]

The one-day backdate re-fetches the last synced day so late-arriving
provider data is picked up; the upsert writer makes the overlap idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

DEFAULT_LOOKBACK_DAYS = 14
OVERLAP = timedelta(days=1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive ``[start, end]`` range of instants to import."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Sync window start {self.start} is after end {self.end}")

    @classmethod
    def from_dates(cls, start: date, end: date) -> SyncWindow:
        """Build a window covering whole calendar days (UTC)."""
        return cls(
            start=datetime.combine(start, time.min, tzinfo=timezone.utc),
            end=datetime.combine(end, time.max, tzinfo=timezone.utc),
        )

    @property
    def start_date(self) -> date:
        return _as_utc(self.start).date()

    @property
    def end_date(self) -> date:
        return _as_utc(self.end).date()

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def days(self) -> Iterator[date]:
        current = self.start_date
        while current <= self.end_date:
            yield current
            current += timedelta(days=1)

    def chunks(self, max_days: int) -> Iterator[tuple[date, date]]:
        """Split the window into ``(start, end)`` date ranges of ≤ max_days.

        Fitbit range endpoints cap the span per request (e.g. 30 days for
        HRV, 31 for weight), so each fetcher walks these chunks.
        """
        if max_days < 1:
            raise ValueError("max_days must be >= 1")
        current = self.start_date
        while current <= self.end_date:
            chunk_end = min(current + timedelta(days=max_days - 1), self.end_date)
            yield current, chunk_end
            current = chunk_end + timedelta(days=1)


def compute_window(
    last_synced_at: datetime | None,
    now: datetime,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    days: int | None = None,
) -> SyncWindow:
    """Compute the next pull window.

    Args:
        last_synced_at: End of the previous successful run, if any.
        now:            Current instant (end of the window).
        lookback_days:  Span of the initial sync.
        days:           Explicit span for a forced sync; replaces
                        ``lookback_days`` and never narrows the backdated
                        incremental start.

    Returns:
        SyncWindow ending at ``now``.
    """
    if days is not None and days < 1:
        raise ValueError("days must be >= 1")

    span = timedelta(days=days if days is not None else lookback_days)

    if last_synced_at is None:
        return SyncWindow(start=now - span, end=now)

    incremental_start = min(last_synced_at - OVERLAP, now)
    if days is None:
        return SyncWindow(start=incremental_start, end=now)
    return SyncWindow(start=min(now - span, incremental_start), end=now)


def needs_sync(
    last_synced_at: datetime | None,
    now: datetime,
    interval_hours: int,
    initial_sync_completed: bool = True,
) -> bool:
    """Return True if the recency threshold says a sync is due."""
    if not initial_sync_completed or last_synced_at is None:
        return True
    return now - last_synced_at > timedelta(hours=interval_hours)


def next_sync_after(last_synced_at: datetime, interval_hours: int) -> datetime:
    return last_synced_at + timedelta(hours=interval_hours)
