"""Daily-metric upsert writer.

Every reading lands in ``daily_metrics`` through a single
``INSERT ... ON CONFLICT (user_id, date) DO UPDATE`` that only touches the
columns the reading provides, so repeated or overlapping syncs merge into
one row per user per day instead of duplicating it.  There is no
read-then-write anywhere in this module.

Column rules:
    - JSON columns are sent as text and cast to ``jsonb``.
    - ``vitals`` merges key-wise (``existing || new``) so SpO2 and breathing
      rate written on different runs both survive.
    - ``weight`` keeps a value written by a higher-priority source
      (``health_connect``); the check is a CASE inside the same statement.
    - ``source`` is set on insert only.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import date
from typing import Any, Iterable
from uuid import UUID

import asyncpg

from src.services.database import Database
from src.wearables.base import Reading

logger = logging.getLogger("healthhub.wearables.sync.upsert")

TABLE = "daily_metrics"
DEFAULT_SOURCE = "fitbit"

# Sources whose weight a Fitbit sync must not replace
PROTECTED_WEIGHT_SOURCES = ("health_connect",)

SCALAR_COLUMNS = frozenset(
    {"steps", "heart_rate", "weight", "distance", "calories", "sleep_minutes"}
)
JSON_COLUMNS = frozenset({"hrv", "sleep_data", "vitals", "workouts", "heart_rate_zones"})
WRITABLE_COLUMNS = SCALAR_COLUMNS | JSON_COLUMNS


def _update_expression(column: str) -> str:
    if column == "vitals":
        return f"vitals = COALESCE({TABLE}.vitals, '{{}}'::jsonb) || EXCLUDED.vitals"
    if column == "weight":
        protected = ", ".join(f"'{s}'" for s in PROTECTED_WEIGHT_SOURCES)
        return (
            f"weight = CASE WHEN {TABLE}.weight IS NOT NULL "
            f"AND {TABLE}.source IN ({protected}) "
            f"THEN {TABLE}.weight ELSE EXCLUDED.weight END"
        )
    return f"{column} = EXCLUDED.{column}"


def build_daily_upsert(columns: list[str]) -> str:
    """Build the parameterized upsert for a set of metric columns.

    Parameters are ordered ``user_id, date, source, *columns``.

    Args:
        columns: Metric columns to write, all from ``WRITABLE_COLUMNS``.

    Returns:
        SQL string.

    Raises:
        ValueError: On an unknown column (column names are interpolated).
    """
    unknown = [c for c in columns if c not in WRITABLE_COLUMNS]
    if unknown:
        raise ValueError(f"Unknown daily_metrics columns: {unknown}")

    insert_cols = ["user_id", "date", "source", *columns, "synced_at"]
    placeholders = ["$1", "$2", "$3"]
    for i, col in enumerate(columns, start=4):
        placeholders.append(f"${i}::jsonb" if col in JSON_COLUMNS else f"${i}")
    placeholders.append("NOW()")

    update_set = [_update_expression(c) for c in columns]
    update_set.append("synced_at = NOW()")

    return (
        f"INSERT INTO {TABLE} ({', '.join(insert_cols)}) "
        f"VALUES ({', '.join(placeholders)}) "
        f"ON CONFLICT (user_id, date) DO UPDATE SET {', '.join(update_set)}"
    )


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        return json.dumps(value, default=str)
    return value


def merge_fields(readings: Iterable[Reading]) -> dict[date, dict[str, Any]]:
    """Collapse readings into one field dict per day.

    Later readings win per column, except ``vitals`` which merges key-wise.
    Readings that write nothing (e.g. a nap) are dropped.
    """
    by_day: dict[date, dict[str, Any]] = defaultdict(dict)
    for reading in readings:
        fields = reading.fields()
        if not fields:
            continue
        day_fields = by_day[reading.day]
        for column, value in fields.items():
            if column == "vitals" and "vitals" in day_fields:
                day_fields["vitals"] = {**day_fields["vitals"], **value}
            else:
                day_fields[column] = value
    return dict(by_day)


class DailyMetricWriter:
    """Idempotent writer for ``daily_metrics``."""

    def __init__(self, db: Database, source: str = DEFAULT_SOURCE) -> None:
        self._db = db
        self._source = source

    async def upsert(
        self,
        user_id: UUID,
        day: date,
        fields: dict[str, Any],
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        """Merge ``fields`` into the row for ``(user_id, day)``.

        Returns:
            False if there was nothing to write.
        """
        if not fields:
            return False
        columns = sorted(fields)
        query = build_daily_upsert(columns)
        args = [user_id, day, self._source, *(_encode(c, fields[c]) for c in columns)]
        if conn is not None:
            await conn.execute(query, *args)
        else:
            await self._db.execute(query, *args)
        return True

    async def upsert_many(self, user_id: UUID, readings: Iterable[Reading]) -> int:
        """Write a batch of readings in one transaction.

        Returns:
            Number of day rows written.
        """
        per_day = merge_fields(readings)
        if not per_day:
            return 0
        written = 0
        async with self._db.transaction() as conn:
            for day in sorted(per_day):
                if await self.upsert(user_id, day, per_day[day], conn=conn):
                    written += 1
        logger.debug("Upserted %d daily_metrics rows", written)
        return written
