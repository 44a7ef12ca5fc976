"""Per-resource fetchers.

One ``ResourceFetcher`` per ``ResourceType``.  A fetcher walks the sync
window in chunks no wider than the endpoint allows, decodes each response
into typed readings and reports a ``FetchOutcome``.  It never raises: a
failed resource is recorded on the outcome so the rest of the run carries
on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable

import httpx

from src.wearables.adapters.fitbit import FitbitClient
from src.wearables.base import FetchOutcome, Reading, ResourceType
from src.wearables.errors import FitbitAPIError
from src.wearables.sync.window import SyncWindow

logger = logging.getLogger("healthhub.wearables.sync.fetchers")

RequestFn = Callable[[FitbitClient, str, date, date], Awaitable[Any]]
NormalizeFn = Callable[[Any], list[Reading]]

# Fitbit range limits per request, in days
ACTIVITY_MAX_DAYS = 1095
WEIGHT_MAX_DAYS = 31
SLEEP_MAX_DAYS = 100
INTRADAY_SUMMARY_MAX_DAYS = 30


@dataclass(frozen=True)
class ResourceFetcher:
    """Fetch and decode one resource category over a window.

    Attributes:
        resource:  Category this fetcher fills.
        max_days:  Widest date range a single request may cover.
        request:   Coroutine issuing the request for one chunk.
        normalize: Pure decoder from the chunk response to readings.
    """

    resource: ResourceType
    max_days: int
    request: RequestFn
    normalize: NormalizeFn

    async def fetch(
        self, client: FitbitClient, access_token: str, window: SyncWindow
    ) -> FetchOutcome:
        readings: list[Reading] = []
        try:
            for start, end in window.chunks(self.max_days):
                raw = await self.request(client, access_token, start, end)
                readings.extend(self.normalize(raw))
        except FitbitAPIError as exc:
            logger.warning(
                "Fetch failed for %s: status=%d %s",
                self.resource.value,
                exc.status_code,
                exc.message,
            )
            return FetchOutcome(
                resource=self.resource,
                error=exc.message,
                unauthorized=exc.unauthorized,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            logger.warning("Fetch timed out for %s", self.resource.value)
            return FetchOutcome(resource=self.resource, error="Request timed out")
        except httpx.HTTPError as exc:
            logger.warning("Network error fetching %s: %s", self.resource.value, exc)
            return FetchOutcome(resource=self.resource, error=f"Network error: {exc}")
        except Exception:
            logger.exception("Unexpected error fetching %s", self.resource.value)
            return FetchOutcome(resource=self.resource, error="Unexpected fetch error")

        in_window = [r for r in readings if window.contains(r.day)]
        logger.debug(
            "Fetched %s: %d readings over %d days",
            self.resource.value,
            len(in_window),
            window.day_count,
        )
        return FetchOutcome(resource=self.resource, readings=in_window)


async def _request_vitals(
    client: FitbitClient, access_token: str, start: date, end: date
) -> tuple[Any, Any, Any]:
    # All three share one range limit; any failure fails the whole category
    spo2 = await client.get_spo2(access_token, start, end)
    breathing = await client.get_breathing_rate(access_token, start, end)
    temperature = await client.get_skin_temperature(access_token, start, end)
    return spo2, breathing, temperature


FETCHERS: dict[ResourceType, ResourceFetcher] = {
    ResourceType.STEPS: ResourceFetcher(
        ResourceType.STEPS,
        ACTIVITY_MAX_DAYS,
        FitbitClient.get_steps,
        FitbitClient.normalize_steps,
    ),
    ResourceType.HEART_RATE: ResourceFetcher(
        ResourceType.HEART_RATE,
        ACTIVITY_MAX_DAYS,
        FitbitClient.get_heart_rate,
        FitbitClient.normalize_heart_rate,
    ),
    ResourceType.WEIGHT: ResourceFetcher(
        ResourceType.WEIGHT,
        WEIGHT_MAX_DAYS,
        FitbitClient.get_weight,
        FitbitClient.normalize_weight,
    ),
    ResourceType.DISTANCE: ResourceFetcher(
        ResourceType.DISTANCE,
        ACTIVITY_MAX_DAYS,
        FitbitClient.get_distance,
        FitbitClient.normalize_distance,
    ),
    ResourceType.CALORIES: ResourceFetcher(
        ResourceType.CALORIES,
        ACTIVITY_MAX_DAYS,
        FitbitClient.get_activity_calories,
        FitbitClient.normalize_calories,
    ),
    ResourceType.SLEEP: ResourceFetcher(
        ResourceType.SLEEP,
        SLEEP_MAX_DAYS,
        FitbitClient.get_sleep,
        FitbitClient.normalize_sleep,
    ),
    ResourceType.HRV: ResourceFetcher(
        ResourceType.HRV,
        INTRADAY_SUMMARY_MAX_DAYS,
        FitbitClient.get_hrv,
        FitbitClient.normalize_hrv,
    ),
    ResourceType.VITALS: ResourceFetcher(
        ResourceType.VITALS,
        INTRADAY_SUMMARY_MAX_DAYS,
        _request_vitals,
        lambda raw: FitbitClient.normalize_vitals(*raw),
    ),
    ResourceType.WORKOUTS: ResourceFetcher(
        ResourceType.WORKOUTS,
        ACTIVITY_MAX_DAYS,
        FitbitClient.get_activity_logs,
        FitbitClient.normalize_workouts,
    ),
}

DEFAULT_DATA_TYPES: tuple[ResourceType, ...] = tuple(FETCHERS)


def get_fetcher(resource: ResourceType) -> ResourceFetcher:
    """Return the fetcher for a resource category.

    Raises:
        KeyError: If no fetcher is registered for ``resource``.
    """
    return FETCHERS[resource]


def parse_data_types(values: list[str] | None) -> list[ResourceType]:
    """Map request-supplied names to resource types, ignoring unknown names.

    ``None`` or an empty list selects every category.
    """
    if not values:
        return list(DEFAULT_DATA_TYPES)
    selected: list[ResourceType] = []
    for value in values:
        try:
            resource = ResourceType(value)
        except ValueError:
            logger.warning("Ignoring unknown data type %r", value)
            continue
        if resource not in selected:
            selected.append(resource)
    return selected
