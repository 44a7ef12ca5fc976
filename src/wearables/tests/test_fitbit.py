"""Tests for the Fitbit adapter: normalization of realistic API responses and HTTP behaviour."""

from __future__ import annotations

from datetime import date, datetime

import httpx
import pytest

from src.wearables.adapters.fitbit import FitbitClient
from src.wearables.base import (
    HeartRateReading,
    SleepReading,
    StepsReading,
    WeightReading,
)
from src.wearables.errors import FitbitAPIError
from src.wearables.tests.conftest import load_fixture


def _client(handler, retry_attempts: int = 3) -> FitbitClient:
    return FitbitClient(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_attempts=retry_attempts,
        retry_backoff_seconds=0,
    )


# ---------------------------------------------------------------------------
# Activity time series
# ---------------------------------------------------------------------------


class TestActivityNormalization:
    def test_steps(self, steps_raw: dict) -> None:
        readings = FitbitClient.normalize_steps(steps_raw)
        assert readings[-1] == StepsReading(day=date(2026, 2, 23), steps=10241)
        assert readings[-1].fields() == {"steps": 10241}

    def test_non_numeric_values_are_skipped(self) -> None:
        raw = {"activities-steps": [{"dateTime": "2026-02-23", "value": "n/a"}]}
        assert FitbitClient.normalize_steps(raw) == []

    def test_distance_and_calories(self) -> None:
        distance = FitbitClient.normalize_distance(
            {"activities-distance": [{"dateTime": "2026-02-23", "value": "7.48"}]}
        )
        calories = FitbitClient.normalize_calories(
            {"activities-activityCalories": [{"dateTime": "2026-02-23", "value": "455"}]}
        )
        assert distance[0].fields() == {"distance": pytest.approx(7.48)}
        assert calories[0].fields() == {"calories": 455}

    def test_empty_payload(self) -> None:
        assert FitbitClient.normalize_steps({}) == []


class TestHeartRateNormalization:
    def test_resting_rate_and_zones(self, heart_raw: dict) -> None:
        readings = FitbitClient.normalize_heart_rate(heart_raw)
        first = readings[0]
        assert isinstance(first, HeartRateReading)
        assert first.resting_heart_rate == 58
        assert first.zones == {"out_of_range": 1302, "fat_burn": 95, "cardio": 21, "peak": 4}

    def test_day_without_resting_rate_writes_zones_only(self, heart_raw: dict) -> None:
        second = FitbitClient.normalize_heart_rate(heart_raw)[1]
        assert second.resting_heart_rate is None
        assert "heart_rate" not in second.fields()
        assert second.fields()["heart_rate_zones"]["out_of_range"] == 700


class TestSleepNormalization:
    def test_main_sleep_with_stages(self, sleep_raw: dict) -> None:
        main = FitbitClient.normalize_sleep(sleep_raw)[0]
        assert isinstance(main, SleepReading)
        assert main.day == date(2026, 2, 23)
        assert main.is_main_sleep
        assert main.minutes_asleep == 408
        assert main.stages is not None
        assert (main.stages.deep, main.stages.light, main.stages.rem, main.stages.wake) == (82, 231, 95, 51)
        # Fitbit sleep times are local wall-clock, kept naive
        assert main.start_time == datetime(2026, 2, 22, 23, 4, 30)

    def test_main_sleep_fields(self, sleep_raw: dict) -> None:
        fields = FitbitClient.normalize_sleep(sleep_raw)[0].fields()
        assert fields["sleep_minutes"] == 408
        assert fields["sleep_data"]["stages"] == {"deep": 82, "light": 231, "rem": 95, "wake": 51}
        assert fields["sleep_data"]["efficiency"] == 93
        assert len(fields["sleep_data"]["levels"]) == 3

    def test_nap_writes_nothing(self, sleep_raw: dict) -> None:
        nap = FitbitClient.normalize_sleep(sleep_raw)[1]
        assert nap.is_main_sleep is False
        assert nap.stages is None
        assert nap.fields() == {}


class TestWeightNormalization:
    def test_latest_log_of_day_wins(self, weight_raw: dict) -> None:
        readings = FitbitClient.normalize_weight(weight_raw)
        assert [r.day for r in readings] == [date(2026, 2, 22), date(2026, 2, 23)]
        assert readings[0] == WeightReading(day=date(2026, 2, 22), weight_kg=72.9, bmi=23.2, fat_pct=None)

    def test_fields(self, weight_raw: dict) -> None:
        assert FitbitClient.normalize_weight(weight_raw)[1].fields() == {"weight": 72.1}


class TestVitalsNormalization:
    def test_merges_three_endpoints_per_day(self) -> None:
        readings = FitbitClient.normalize_vitals(
            load_fixture("fitbit_spo2.json"),
            load_fixture("fitbit_br.json"),
            load_fixture("fitbit_temp.json"),
        )
        by_day = {r.day: r for r in readings}
        feb23 = by_day[date(2026, 2, 23)]
        assert feb23.spo2_avg == pytest.approx(95.9)
        assert feb23.breathing_rate == pytest.approx(15.2)
        assert feb23.skin_temp_deviation_c == pytest.approx(-0.3)
        # No temperature on the 22nd: key absent rather than null
        assert "skin_temp_deviation_c" not in by_day[date(2026, 2, 22)].fields()["vitals"]

    def test_single_day_spo2_object(self) -> None:
        spo2 = {"dateTime": "2026-02-23", "value": {"avg": 97.0, "min": 95.0, "max": 99.0}}
        readings = FitbitClient.normalize_vitals(spo2, {}, {})
        assert readings[0].spo2_max == pytest.approx(99.0)

    def test_hrv(self) -> None:
        readings = FitbitClient.normalize_hrv(load_fixture("fitbit_hrv.json"))
        assert readings[0].fields() == {"hrv": {"dailyRmssd": 41.2, "deepRmssd": 47.9}}


class TestWorkoutNormalization:
    def test_bucketed_per_day(self, activities_raw: dict) -> None:
        readings = FitbitClient.normalize_workouts(activities_raw["activities"])
        assert [r.day for r in readings] == [date(2026, 2, 22), date(2026, 2, 23)]
        assert [w.name for w in readings[0].workouts] == ["Run", "Weights"]

    def test_workout_json(self, activities_raw: dict) -> None:
        run = FitbitClient.normalize_workouts(activities_raw["activities"])[0].fields()["workouts"][0]
        assert run["name"] == "Run"
        assert run["duration_minutes"] == 40
        assert run["distance_km"] == pytest.approx(6.21)
        assert run["start_time"].startswith("2026-02-22T07:05:00")


# ---------------------------------------------------------------------------
# HTTP behaviour (mocked transport)
# ---------------------------------------------------------------------------


class TestFitbitHTTP:
    @pytest.mark.asyncio
    async def test_sends_bearer_token_and_range_path(self, steps_raw: dict) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=steps_raw)

        result = await _client(handler).get_steps("tok", date(2026, 2, 1), date(2026, 2, 23))
        assert result == steps_raw
        assert seen[0].url.path == "/1/user/-/activities/steps/date/2026-02-01/2026-02-23.json"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503, json={"errors": [{"message": "Service unavailable"}]})
            return httpx.Response(200, json={"hrv": []})

        result = await _client(handler).get_hrv("tok", date(2026, 2, 1), date(2026, 2, 2))
        assert result == {"hrv": []}
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_budget(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(500, json={"errors": [{"message": "Internal error"}]})

        with pytest.raises(FitbitAPIError) as exc_info:
            await _client(handler, retry_attempts=2).get_hrv("tok", date(2026, 2, 1), date(2026, 2, 2))
        assert exc_info.value.status_code == 500
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(
                403, json={"errors": [{"errorType": "insufficient_scope", "message": "Missing scope"}]}
            )

        with pytest.raises(FitbitAPIError) as exc_info:
            await _client(handler).get_spo2("tok", date(2026, 2, 1), date(2026, 2, 2))
        assert exc_info.value.message == "Missing scope"
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_long_rate_limit_is_not_waited_out(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(429, headers={"Retry-After": "1800"}, json={})

        with pytest.raises(FitbitAPIError) as exc_info:
            await _client(handler).get_steps("tok", date(2026, 2, 1), date(2026, 2, 2))
        assert exc_info.value.retry_after == 1800
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(200, json={"br": []})

        assert await _client(handler).get_breathing_rate(
            "tok", date(2026, 2, 1), date(2026, 2, 2)
        ) == {"br": []}
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_activity_log_follows_pagination_and_stops_past_end(
        self, activities_raw: dict
    ) -> None:
        first_page = {
            "activities": activities_raw["activities"][:2],
            "pagination": {"next": "https://api.fitbit.com/1/user/-/activities/list.json?offset=2"},
        }
        second_page = {
            "activities": activities_raw["activities"][2:],
            "pagination": {"next": "https://api.fitbit.com/1/user/-/activities/list.json?offset=3"},
        }
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json=second_page if "offset=2" in str(request.url) else first_page
            )

        logs = await _client(handler).get_activity_logs("tok", date(2026, 2, 20), date(2026, 2, 22))
        assert [log["activityName"] for log in logs] == ["Run", "Weights"]
        # Second page starts past the end date, so the walk stops there
        assert len(seen) == 2
        assert seen[0].url.params["afterDate"] == "2026-02-20"
        assert seen[0].url.params["sort"] == "asc"
