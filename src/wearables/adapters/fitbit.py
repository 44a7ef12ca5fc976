"""Fitbit Web API adapter.

Two halves:

- HTTP: authenticated GETs against the range endpoints, each with a
  timeout and bounded retry (tenacity) on transport errors, 5xx and short
  429s.
- Normalization: pure functions turning Fitbit JSON into the typed
  readings from ``src.wearables.base``.  No I/O, tolerant of missing or
  null fields.

API base: https://api.fitbit.com

Endpoints used (max span per request):
    /1/user/-/activities/steps/date/{start}/{end}.json           1095 d
    /1/user/-/activities/distance/date/{start}/{end}.json        1095 d
    /1/user/-/activities/activityCalories/date/{start}/{end}.json 1095 d
    /1/user/-/activities/heart/date/{start}/{end}.json           1095 d
    /1/user/-/body/log/weight/date/{start}/{end}.json              31 d
    /1.2/user/-/sleep/date/{start}/{end}.json                     100 d
    /1/user/-/hrv/date/{start}/{end}.json                          30 d
    /1/user/-/spo2/date/{start}/{end}.json                         30 d
    /1/user/-/br/date/{start}/{end}.json                           30 d
    /1/user/-/temp/skin/date/{start}/{end}.json                    30 d
    /1/user/-/activities/list.json?afterDate=...                 paged

Responses use metric units because no ``Accept-Language`` header is sent.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.wearables.base import (
    CaloriesReading,
    DistanceReading,
    HeartRateReading,
    HrvReading,
    SleepReading,
    SleepStages,
    StepsReading,
    VitalsReading,
    WeightReading,
    Workout,
    WorkoutsReading,
    parse_date,
    parse_iso_datetime,
    safe_float,
    safe_int,
)
from src.wearables.errors import FitbitAPIError

logger = logging.getLogger("healthhub.wearables.fitbit")

FITBIT_API_BASE = "https://api.fitbit.com"

# Longest Retry-After we are willing to sit through inside one run
_MAX_RETRY_AFTER_SECONDS = 10

_ACTIVITY_LIST_PAGE_SIZE = 100

# Fitbit heart-rate zone names → daily_metrics.heart_rate_zones keys
_ZONE_KEYS: dict[str, str] = {
    "Out of Range": "out_of_range",
    "Fat Burn": "fat_burn",
    "Cardio": "cardio",
    "Peak": "peak",
}


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, FitbitAPIError):
        if exc.status_code == 429:
            return exc.retry_after is None or exc.retry_after <= _MAX_RETRY_AFTER_SECONDS
        return exc.retryable
    return False


class FitbitClient:
    """Authenticated Fitbit Web API client.

    The access token is passed per call so one client (and one pooled
    ``httpx.AsyncClient``) can serve every user.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        base_url: str = FITBIT_API_BASE,
    ) -> None:
        """Initialize the client.

        Args:
            http_client:           Optional shared httpx client (for pooling/tests).
            timeout:               Per-request timeout in seconds.
            retry_attempts:        Total attempts per request, first try included.
            retry_backoff_seconds: Multiplier for exponential backoff between tries.
            base_url:              API root, overridable for tests.
        """
        self._http_client = http_client
        self._timeout = timeout
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff_seconds
        self._base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Range endpoints
    # ------------------------------------------------------------------

    async def get_steps(self, access_token: str, start: date, end: date) -> dict:
        return await self._get(
            f"/1/user/-/activities/steps/date/{start}/{end}.json", access_token
        )

    async def get_distance(self, access_token: str, start: date, end: date) -> dict:
        return await self._get(
            f"/1/user/-/activities/distance/date/{start}/{end}.json", access_token
        )

    async def get_activity_calories(
        self, access_token: str, start: date, end: date
    ) -> dict:
        return await self._get(
            f"/1/user/-/activities/activityCalories/date/{start}/{end}.json",
            access_token,
        )

    async def get_heart_rate(self, access_token: str, start: date, end: date) -> dict:
        return await self._get(
            f"/1/user/-/activities/heart/date/{start}/{end}.json", access_token
        )

    async def get_weight(self, access_token: str, start: date, end: date) -> dict:
        return await self._get(
            f"/1/user/-/body/log/weight/date/{start}/{end}.json", access_token
        )

    async def get_sleep(self, access_token: str, start: date, end: date) -> dict:
        return await self._get(
            f"/1.2/user/-/sleep/date/{start}/{end}.json", access_token
        )

    async def get_hrv(self, access_token: str, start: date, end: date) -> dict:
        return await self._get(f"/1/user/-/hrv/date/{start}/{end}.json", access_token)

    async def get_spo2(self, access_token: str, start: date, end: date) -> Any:
        # The range form returns a bare JSON list
        return await self._get(f"/1/user/-/spo2/date/{start}/{end}.json", access_token)

    async def get_breathing_rate(
        self, access_token: str, start: date, end: date
    ) -> dict:
        return await self._get(f"/1/user/-/br/date/{start}/{end}.json", access_token)

    async def get_skin_temperature(
        self, access_token: str, start: date, end: date
    ) -> dict:
        return await self._get(
            f"/1/user/-/temp/skin/date/{start}/{end}.json", access_token
        )

    async def get_activity_logs(
        self, access_token: str, start: date, end: date
    ) -> list[dict]:
        """Return every logged activity starting within ``[start, end]``.

        Follows ``pagination.next`` until a page runs past ``end``.
        """
        logs: list[dict] = []
        url: str | None = f"{self._base_url}/1/user/-/activities/list.json"
        params: dict[str, Any] | None = {
            "afterDate": start.isoformat(),
            "sort": "asc",
            "limit": _ACTIVITY_LIST_PAGE_SIZE,
            "offset": 0,
        }
        while url:
            page = await self._get(url, access_token, params=params)
            activities = page.get("activities") or []
            past_end = False
            for activity in activities:
                started = parse_date(activity.get("startTime") or activity.get("startDate"))
                if started is None or started < start:
                    continue
                if started > end:
                    past_end = True
                    break
                logs.append(activity)
            if past_end or not activities:
                break
            url = (page.get("pagination") or {}).get("next") or None
            params = None  # next already carries the query string
        return logs

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_steps(raw: dict) -> list[StepsReading]:
        return [
            StepsReading(day=day, steps=value)
            for day, value in _time_series(raw, "activities-steps", safe_int)
        ]

    @staticmethod
    def normalize_distance(raw: dict) -> list[DistanceReading]:
        return [
            DistanceReading(day=day, distance_km=value)
            for day, value in _time_series(raw, "activities-distance", safe_float)
        ]

    @staticmethod
    def normalize_calories(raw: dict) -> list[CaloriesReading]:
        return [
            CaloriesReading(day=day, activity_calories=value)
            for day, value in _time_series(raw, "activities-activityCalories", safe_int)
        ]

    @staticmethod
    def normalize_heart_rate(raw: dict) -> list[HeartRateReading]:
        readings = []
        for entry in raw.get("activities-heart") or []:
            day = parse_date(entry.get("dateTime"))
            if day is None:
                continue
            value = entry.get("value") or {}
            zones = {
                _ZONE_KEYS[z["name"]]: safe_int(z.get("minutes")) or 0
                for z in value.get("heartRateZones") or []
                if z.get("name") in _ZONE_KEYS
            }
            resting = safe_int(value.get("restingHeartRate"))
            if resting is None and not zones:
                continue
            readings.append(HeartRateReading(day=day, resting_heart_rate=resting, zones=zones))
        return readings

    @staticmethod
    def normalize_weight(raw: dict) -> list[WeightReading]:
        """One reading per day; the latest log of the day wins."""
        by_day: dict[date, WeightReading] = {}
        latest: dict[date, str] = {}
        for log in raw.get("weight") or []:
            day = parse_date(log.get("date"))
            weight = safe_float(log.get("weight"))
            if day is None or weight is None:
                continue
            logged_at = log.get("time") or ""
            if day in by_day and logged_at < latest[day]:
                continue
            latest[day] = logged_at
            by_day[day] = WeightReading(
                day=day,
                weight_kg=weight,
                bmi=safe_float(log.get("bmi")),
                fat_pct=safe_float(log.get("fat")),
            )
        return [by_day[d] for d in sorted(by_day)]

    @staticmethod
    def normalize_sleep(raw: dict) -> list[SleepReading]:
        readings = []
        for log in raw.get("sleep") or []:
            day = parse_date(log.get("dateOfSleep"))
            if day is None:
                continue
            levels = log.get("levels") or {}
            stages = None
            if log.get("type") == "stages":
                summary = levels.get("summary") or {}
                stages = SleepStages(
                    deep=safe_int((summary.get("deep") or {}).get("minutes")) or 0,
                    light=safe_int((summary.get("light") or {}).get("minutes")) or 0,
                    rem=safe_int((summary.get("rem") or {}).get("minutes")) or 0,
                    wake=safe_int((summary.get("wake") or {}).get("minutes")) or 0,
                )
            readings.append(
                SleepReading(
                    day=day,
                    log_id=str(log.get("logId", "")),
                    minutes_asleep=safe_int(log.get("minutesAsleep")) or 0,
                    minutes_awake=safe_int(log.get("minutesAwake")),
                    time_in_bed=safe_int(log.get("timeInBed")),
                    efficiency=safe_int(log.get("efficiency")),
                    start_time=parse_iso_datetime(log.get("startTime")),
                    end_time=parse_iso_datetime(log.get("endTime")),
                    is_main_sleep=bool(log.get("isMainSleep", False)),
                    stages=stages,
                    levels=levels.get("data") or [],
                )
            )
        return readings

    @staticmethod
    def normalize_hrv(raw: dict) -> list[HrvReading]:
        readings = []
        for entry in raw.get("hrv") or []:
            day = parse_date(entry.get("dateTime"))
            value = entry.get("value") or {}
            daily = safe_float(value.get("dailyRmssd"))
            if day is None or daily is None:
                continue
            readings.append(
                HrvReading(day=day, daily_rmssd=daily, deep_rmssd=safe_float(value.get("deepRmssd")))
            )
        return readings

    @staticmethod
    def normalize_vitals(
        spo2_raw: Any, breathing_raw: dict, temperature_raw: dict
    ) -> list[VitalsReading]:
        """Merge SpO2, breathing rate and skin temperature into one reading per day."""
        by_day: dict[date, VitalsReading] = {}

        def _reading(day: date) -> VitalsReading:
            if day not in by_day:
                by_day[day] = VitalsReading(day=day)
            return by_day[day]

        spo2_entries = spo2_raw if isinstance(spo2_raw, list) else [spo2_raw] if spo2_raw else []
        for entry in spo2_entries:
            day = parse_date((entry or {}).get("dateTime"))
            value = (entry or {}).get("value") or {}
            if day is None or not value:
                continue
            reading = _reading(day)
            reading.spo2_avg = safe_float(value.get("avg"))
            reading.spo2_min = safe_float(value.get("min"))
            reading.spo2_max = safe_float(value.get("max"))

        for entry in (breathing_raw or {}).get("br") or []:
            day = parse_date(entry.get("dateTime"))
            rate = safe_float((entry.get("value") or {}).get("breathingRate"))
            if day is None or rate is None:
                continue
            _reading(day).breathing_rate = rate

        for entry in (temperature_raw or {}).get("tempSkin") or []:
            day = parse_date(entry.get("dateTime"))
            delta = safe_float((entry.get("value") or {}).get("nightlyRelative"))
            if day is None or delta is None:
                continue
            _reading(day).skin_temp_deviation_c = delta

        return [by_day[d] for d in sorted(by_day)]

    @staticmethod
    def normalize_workouts(logs: list[dict]) -> list[WorkoutsReading]:
        by_day: dict[date, list[Workout]] = defaultdict(list)
        for log in logs:
            started = parse_iso_datetime(log.get("startTime"))
            day = started.date() if started else parse_date(log.get("startDate"))
            if day is None:
                continue
            duration_ms = safe_int(log.get("duration") or log.get("activeDuration"))
            by_day[day].append(
                Workout(
                    log_id=str(log.get("logId", "")),
                    name=log.get("activityName") or log.get("name") or "Workout",
                    start_time=started,
                    duration_minutes=duration_ms // 60000 if duration_ms else None,
                    calories=safe_int(log.get("calories")),
                    distance_km=safe_float(log.get("distance")),
                    steps=safe_int(log.get("steps")),
                    average_heart_rate=safe_int(log.get("averageHeartRate")),
                )
            )
        return [WorkoutsReading(day=d, workouts=by_day[d]) for d in sorted(by_day)]

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _get(
        self, path_or_url: str, access_token: str, params: dict | None = None
    ) -> Any:
        """GET with bounded retry.

        Raises:
            FitbitAPIError: On a non-2xx response after retries.
            httpx.TransportError: If the network keeps failing.
        """
        url = path_or_url if path_or_url.startswith("http") else f"{self._base_url}{path_or_url}"
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=8),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                response = await self._send(url, params, headers)
                if response.is_error:
                    raise self._api_error(response)
                return response.json()

    async def _send(
        self, url: str, params: dict | None, headers: dict[str, str]
    ) -> httpx.Response:
        if self._http_client:
            return await self._http_client.get(
                url, params=params, headers=headers, timeout=self._timeout
            )
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.get(url, params=params, headers=headers)

    @staticmethod
    def _api_error(response: httpx.Response) -> FitbitAPIError:
        message = f"Fitbit API error: {response.status_code}"
        try:
            body = response.json()
            errors = body.get("errors") if isinstance(body, dict) else None
            if errors and errors[0].get("message"):
                message = errors[0]["message"]
        except ValueError:
            pass

        retry_after = None
        if response.status_code == 429:
            retry_after = safe_int(response.headers.get("Retry-After"))
            message = f"Rate limited. Retry after {retry_after} seconds."
        logger.warning("Fitbit API %s -> %d: %s", response.request.url.path, response.status_code, message)
        return FitbitAPIError(message, status_code=response.status_code, retry_after=retry_after)


def _time_series(raw: dict, key: str, coerce) -> list[tuple[date, Any]]:
    """Decode a ``{key: [{dateTime, value}]}`` activity time series."""
    out = []
    for entry in raw.get(key) or []:
        day = parse_date(entry.get("dateTime"))
        value = coerce(entry.get("value"))
        if day is not None and value is not None:
            out.append((day, value))
    return out
