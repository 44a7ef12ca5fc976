"""Canonical data models for the Fitbit sync engine.

Every resource fetcher decodes Fitbit JSON into one of the typed reading
variants below.  These types are the single shape consumed by the upsert
writer, the orchestrator and the API layer; nothing downstream of the
fetch boundary inspects raw provider payloads.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

logger = logging.getLogger("healthhub.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE verifier/challenge pair plus the anti-CSRF state nonce.

    Attributes:
        code_verifier:  High-entropy secret kept server-side until the callback.
        code_challenge: base64url(sha256(code_verifier)), sent to Fitbit.
        state:          Opaque nonce round-tripped through the redirect.
    """

    code_verifier: str
    code_challenge: str
    state: str


@dataclass
class OAuthTokens:
    """OAuth token set returned after a code exchange or refresh.

    Attributes:
        access_token:     Bearer token for API calls.
        refresh_token:    Long-lived token used to obtain a new access_token.
        expires_at:       UTC datetime when the access_token expires.
        token_type:       Token type, typically "Bearer".
        scope:            Space-separated granted scopes.
        provider_user_id: Fitbit encoded user id.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    scope: str = ""
    provider_user_id: str | None = None


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


@dataclass
class FitbitAccount:
    """The single persisted Fitbit record for a user.

    While ``code_verifier`` is set the account is *pending*: an authorization
    handshake is in flight and the token columns hold nothing usable.
    """

    user_id: UUID
    provider_user_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    code_verifier: str | None = None
    pending_state: str | None = None
    last_synced_at: datetime | None = None
    initial_sync_completed: bool = False

    @property
    def is_pending(self) -> bool:
        return self.code_verifier is not None

    @property
    def is_connected(self) -> bool:
        return not self.is_pending and bool(self.access_token)

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    def token_expires_within(self, seconds: int, now: datetime | None = None) -> bool:
        """Return True if the access token expires within ``seconds``."""
        if self.expires_at is None:
            return True
        now = now or utc_now()
        return self.expires_at - now <= timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Resource readings (one variant per data category)
# ---------------------------------------------------------------------------


class ResourceType(str, Enum):
    """Data categories imported from Fitbit."""

    STEPS = "steps"
    HEART_RATE = "heart_rate"
    WEIGHT = "weight"
    DISTANCE = "distance"
    CALORIES = "calories"
    SLEEP = "sleep"
    HRV = "hrv"
    VITALS = "vitals"
    WORKOUTS = "workouts"


@dataclass
class Reading:
    """A normalized value for one user-day in one resource category."""

    day: date

    resource: ClassVar[ResourceType]

    def fields(self) -> dict[str, Any]:
        """Return the daily_metrics columns this reading writes."""
        raise NotImplementedError


@dataclass
class StepsReading(Reading):
    steps: int

    resource: ClassVar[ResourceType] = ResourceType.STEPS

    def fields(self) -> dict[str, Any]:
        return {"steps": self.steps}


@dataclass
class HeartRateReading(Reading):
    """Resting heart rate plus time-in-zone minutes for the day."""

    resting_heart_rate: int | None = None
    zones: dict[str, int] = field(default_factory=dict)

    resource: ClassVar[ResourceType] = ResourceType.HEART_RATE

    def fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.resting_heart_rate is not None:
            out["heart_rate"] = self.resting_heart_rate
        if self.zones:
            out["heart_rate_zones"] = self.zones
        return out


@dataclass
class WeightReading(Reading):
    weight_kg: float
    bmi: float | None = None
    fat_pct: float | None = None

    resource: ClassVar[ResourceType] = ResourceType.WEIGHT

    def fields(self) -> dict[str, Any]:
        return {"weight": self.weight_kg}


@dataclass
class DistanceReading(Reading):
    distance_km: float

    resource: ClassVar[ResourceType] = ResourceType.DISTANCE

    def fields(self) -> dict[str, Any]:
        return {"distance": self.distance_km}


@dataclass
class CaloriesReading(Reading):
    activity_calories: int

    resource: ClassVar[ResourceType] = ResourceType.CALORIES

    def fields(self) -> dict[str, Any]:
        return {"calories": self.activity_calories}


@dataclass
class SleepStages:
    """Minutes spent in each stage of a stages-type sleep log."""

    deep: int = 0
    light: int = 0
    rem: int = 0
    wake: int = 0


@dataclass
class SleepReading(Reading):
    """One sleep log.  Only the main sleep of a night lands in daily_metrics."""

    log_id: str
    minutes_asleep: int
    minutes_awake: int | None = None
    time_in_bed: int | None = None
    efficiency: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_main_sleep: bool = True
    stages: SleepStages | None = None
    levels: list[dict] = field(default_factory=list)

    resource: ClassVar[ResourceType] = ResourceType.SLEEP

    def fields(self) -> dict[str, Any]:
        if not self.is_main_sleep:
            return {}
        return {
            "sleep_minutes": self.minutes_asleep,
            "sleep_data": {
                "logId": self.log_id,
                "minutesAsleep": self.minutes_asleep,
                "minutesAwake": self.minutes_awake,
                "timeInBed": self.time_in_bed,
                "efficiency": self.efficiency,
                "startTime": self.start_time.isoformat() if self.start_time else None,
                "endTime": self.end_time.isoformat() if self.end_time else None,
                "stages": asdict(self.stages) if self.stages else None,
                "levels": self.levels,
            },
        }


@dataclass
class HrvReading(Reading):
    daily_rmssd: float
    deep_rmssd: float | None = None

    resource: ClassVar[ResourceType] = ResourceType.HRV

    def fields(self) -> dict[str, Any]:
        return {"hrv": {"dailyRmssd": self.daily_rmssd, "deepRmssd": self.deep_rmssd}}


@dataclass
class VitalsReading(Reading):
    """Spot vitals for a day.

    Fitbit has no blood-pressure endpoint, so the blood pressure fields stay
    empty for this source; they exist so other sources share the shape.
    """

    spo2_avg: float | None = None
    spo2_min: float | None = None
    spo2_max: float | None = None
    breathing_rate: float | None = None
    skin_temp_deviation_c: float | None = None
    systolic_mmhg: int | None = None
    diastolic_mmhg: int | None = None

    resource: ClassVar[ResourceType] = ResourceType.VITALS

    def fields(self) -> dict[str, Any]:
        vitals = {k: v for k, v in asdict(self).items() if k != "day" and v is not None}
        return {"vitals": vitals} if vitals else {}


@dataclass
class Workout:
    log_id: str
    name: str
    start_time: datetime | None = None
    duration_minutes: int | None = None
    calories: int | None = None
    distance_km: float | None = None
    steps: int | None = None
    average_heart_rate: int | None = None

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        return data


@dataclass
class WorkoutsReading(Reading):
    """All workouts logged on one day."""

    workouts: list[Workout] = field(default_factory=list)

    resource: ClassVar[ResourceType] = ResourceType.WORKOUTS

    def fields(self) -> dict[str, Any]:
        return {"workouts": [w.to_json() for w in self.workouts]}


# ---------------------------------------------------------------------------
# Fetch / run results
# ---------------------------------------------------------------------------


@dataclass
class FetchOutcome:
    """Result of one resource fetch: readings or an error, never an exception."""

    resource: ResourceType
    readings: list[Reading] | None = None
    error: str | None = None
    unauthorized: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ResourceError:
    resource_type: ResourceType
    message: str

    def to_json(self) -> dict[str, str]:
        return {"type": self.resource_type.value, "message": self.message}


@dataclass
class SyncRunResult:
    """Aggregate result of one ``run_sync``.

    ``success`` is False when any resource failed, but the readings of every
    resource that did succeed have already been committed.

    ``credentials_rejected`` is True when a token refresh failed during the
    run; callers must not advance the account's sync cursor.
    """

    synced_at: datetime
    errors: list[ResourceError] = field(default_factory=list)
    rows_written: int = 0
    credentials_rejected: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Shared coercion helpers
# ---------------------------------------------------------------------------


def safe_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from Fitbit.

    Fitbit returns local wall-clock times without an offset (e.g.
    ``2026-02-22T23:04:30.000``); those are kept naive.  Returns None if the
    value is missing or unparseable.
    """
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning("Could not parse date string: %r", value)
        return None
