from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class TimePeriod(str, Enum):
    MORNING = "MORNING"
    EVENING = "EVENING"
    MIDNIGHT = "MIDNIGHT"

    @property
    def target_time(self) -> str:
        return PERIOD_TARGET_TIMES[self]


PERIOD_TARGET_TIMES: dict[TimePeriod, str] = {
    TimePeriod.MORNING: "08:30:00",
    TimePeriod.EVENING: "17:30:00",
    TimePeriod.MIDNIGHT: "23:30:00",
}

ALL_PERIODS: tuple[TimePeriod, ...] = (TimePeriod.MORNING, TimePeriod.EVENING, TimePeriod.MIDNIGHT)


class TransportMode(str, Enum):
    WALK = "WALK"
    BICYCLE = "BICYCLE"


class RouteStatus(str, Enum):
    PENDING = "PENDING"
    OK = "OK"
    NO_ROUTE = "NO_ROUTE"
    ERROR = "ERROR"


PartitionKind = Literal["time_buckets", "deciles"]


class Zone(BaseModel):
    id: str = Field(..., min_length=1)
    group_key: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    routing_lat: float | None = Field(default=None, ge=-90, le=90)
    routing_lon: float | None = Field(default=None, ge=-180, le=180)
    name: str | None = None

    @property
    def query_point(self) -> tuple[float, float]:
        """Coordinates sent to the router; the routing point wins over the centroid."""
        lat = self.routing_lat if self.routing_lat is not None else self.lat
        lon = self.routing_lon if self.routing_lon is not None else self.lon
        return lat, lon


@dataclass(frozen=True)
class RoutePair:
    from_id: str
    to_id: str
    period: TimePeriod
    mode: TransportMode = TransportMode.WALK

    def __post_init__(self) -> None:
        if self.from_id == self.to_id:
            raise ValueError(f"self-pair is not a valid route: {self.from_id}")


class Leg(BaseModel):
    mode: str
    duration: float | None = None
    distance: float | None = None
    from_name: str | None = None
    to_name: str | None = None
    route_short_name: str | None = None
    geometry: str | None = None


class RouteRecord(BaseModel):
    from_id: str
    to_id: str
    period: TimePeriod
    mode: TransportMode = TransportMode.WALK
    status: RouteStatus = RouteStatus.PENDING
    duration: int | None = None
    transfers: int | None = None
    walk_distance: float | None = None
    legs: list[Leg] | None = None
    detail: str | None = None

    @model_validator(mode="after")
    def _outcome_fields_follow_status(self) -> RouteRecord:
        outcome = (self.duration, self.transfers, self.walk_distance, self.legs)
        if self.status is RouteStatus.OK:
            if any(v is None for v in outcome):
                raise ValueError("OK records require duration, transfers, walk_distance and legs")
            if self.detail is not None:
                raise ValueError("OK records cannot carry a diagnostic detail")
        elif any(v is not None for v in outcome):
            raise ValueError(f"{self.status.value} records cannot carry route outcome fields")
        if self.status is RouteStatus.PENDING and self.detail is not None:
            raise ValueError("PENDING records cannot carry a diagnostic detail")
        return self

    @property
    def pair(self) -> RoutePair:
        return RoutePair(self.from_id, self.to_id, self.period, self.mode)


class ProgressEntry(BaseModel):
    group_key: str
    period: TimePeriod
    mode: TransportMode = TransportMode.WALK
    completed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    last_update: str | None = None


class Partition(BaseModel):
    ordinal: int = Field(..., ge=1)
    min_seconds: int = Field(..., ge=0)
    # None is the open upper bound of the last partition.
    max_seconds: int | None = None
    color: str
    label: str

    @property
    def is_open(self) -> bool:
        return self.max_seconds is None


class ReachabilityScore(BaseModel):
    zone_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    rank: int = Field(..., ge=1)
    within15: int = Field(default=0, ge=0)
    within30: int = Field(default=0, ge=0)
    within45: int = Field(default=0, ge=0)
    median_duration: float = Field(default=0.0, ge=0.0)
    mean_duration: float = Field(default=0.0, ge=0.0)
    reachable_count: int = Field(default=0, ge=0)


class RunSummary(BaseModel):
    processed: int = 0
    ok: int = 0
    no_route: int = 0
    errors: int = 0
    rate_limited: int = 0
    elapsed_ms: float = 0.0
    cancelled: bool = False

    def merge(self, other: RunSummary) -> RunSummary:
        return RunSummary(
            processed=self.processed + other.processed,
            ok=self.ok + other.ok,
            no_route=self.no_route + other.no_route,
            errors=self.errors + other.errors,
            rate_limited=self.rate_limited + other.rate_limited,
            elapsed_ms=self.elapsed_ms + other.elapsed_ms,
            cancelled=self.cancelled or other.cancelled,
        )


class StatusCounts(BaseModel):
    total: int = 0
    pending: int = 0
    ok: int = 0
    no_route: int = 0
    error: int = 0

    @property
    def completed(self) -> int:
        return self.total - self.pending


# API payloads


class RunRoutesRequest(BaseModel):
    periods: list[TimePeriod] = Field(default_factory=lambda: list(ALL_PERIODS), min_length=1)
    mode: TransportMode = TransportMode.WALK
    resume: bool = False
    retry_failed: bool = False
    limit: int | None = Field(default=None, ge=1)
    origin_sample: int | None = Field(default=None, ge=1)
    seed: int | None = None


class RunRoutesResponse(BaseModel):
    run_id: str
    summary: RunSummary


class PartitionRequest(BaseModel):
    """Partitions pool OK durations across every transport mode."""

    period: TimePeriod | None = None
    force: bool = False


class ReachabilityRequest(BaseModel):
    period: TimePeriod = TimePeriod.MORNING
    mode: TransportMode = TransportMode.WALK
    force: bool = False


class ResetRequest(BaseModel):
    period: TimePeriod | None = None
    mode: TransportMode | None = None
    statuses: list[RouteStatus] | None = None


class PartitionsResponse(BaseModel):
    kind: PartitionKind
    period: str
    partitions: list[Partition]


class ReachabilityResponse(BaseModel):
    period: TimePeriod
    mode: TransportMode
    scores: list[ReachabilityScore]


class StatusResponse(BaseModel):
    zones: int
    routes: StatusCounts
    by_period: dict[str, StatusCounts]
    last_run: dict[str, Any] | None = None
