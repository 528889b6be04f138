from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

TransportMode = Literal[
    "metro",
    "bus",
    "auto",
    "train",
    "walk",
    "shared_auto",
    "cycle_rickshaw",
    "shared_tempo",
    "walking_shortcut",
]
INFORMAL_MODES: frozenset[str] = frozenset({"shared_auto", "cycle_rickshaw", "shared_tempo", "walking_shortcut"})
RouteLabel = Literal["fastest", "safest", "balanced", "alternative"]
SessionStateName = Literal["planned", "active", "rerouting", "completed", "abandoned"]

SECONDS_PER_DAY = 86_400


def ensure_utc(value: datetime) -> datetime:
    # Naive timestamps from collaborators are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_epoch_s(value: datetime) -> float:
    return ensure_utc(value).timestamp()


def from_epoch_s(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


# ---------------------------------------------------------------------------
# Collaborator feeds (normalized records)
# ---------------------------------------------------------------------------


class NodeRecord(BaseModel):
    id: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    name: str | None = None
    has_elevator: bool = False
    has_ramp: bool = False


class EdgeRecord(BaseModel):
    id: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    mode: TransportMode
    distance_m: float = Field(..., ge=0.0)
    fare: float = Field(default=0.0, ge=0.0)
    ride_s: float = Field(..., ge=0.0)
    # Explicit departures are seconds after service-day midnight.
    departures_s: list[int] = Field(default_factory=list)
    headway_s: int | None = Field(default=None, gt=0)
    service_start_s: int = Field(default=0, ge=0, lt=SECONDS_PER_DAY)
    service_end_s: int = Field(default=SECONDS_PER_DAY - 1, ge=0, lt=SECONDS_PER_DAY)
    board_wait_s: float = Field(default=0.0, ge=0.0)
    verification_count: int = Field(default=0, ge=0)

    @field_validator("departures_s")
    @classmethod
    def within_service_day(cls, v: list[int]) -> list[int]:
        for dep in v:
            if dep < 0 or dep >= SECONDS_PER_DAY:
                raise ValueError("departures must be seconds within one service day")
        return sorted(set(v))

    @model_validator(mode="after")
    def one_schedule_kind(self) -> "EdgeRecord":
        if self.departures_s and self.headway_s is not None:
            raise ValueError("edge schedule takes either departures_s or headway_s, not both")
        if self.source == self.target:
            raise ValueError("edge must connect two distinct nodes")
        if self.service_end_s < self.service_start_s:
            raise ValueError("service window must not wrap past midnight")
        return self


class NetworkFeed(BaseModel):
    version: str | None = None
    source: str = "feed"
    # Offset of the service-day clock (schedule seconds-of-day) from UTC.
    utc_offset_s: int = Field(default=0, ge=-14 * 3600, le=14 * 3600)
    nodes: list[NodeRecord] = Field(..., min_length=1)
    edges: list[EdgeRecord] = Field(default_factory=list)
    informal_edges: list[EdgeRecord] = Field(default_factory=list)

    @field_validator("informal_edges")
    @classmethod
    def informal_modes_only(cls, v: list[EdgeRecord]) -> list[EdgeRecord]:
        for edge in v:
            if edge.mode not in INFORMAL_MODES:
                raise ValueError(f"informal edge {edge.id} has non-informal mode {edge.mode}")
        return v


class SafetySubScores(BaseModel):
    """Sub-factor scores, each already normalized to [0, 100] by its supplier."""

    lighting: float | None = Field(default=None, ge=0.0, le=100.0)
    cctv: float | None = Field(default=None, ge=0.0, le=100.0)
    police_presence: float | None = Field(default=None, ge=0.0, le=100.0)
    incident_history: float | None = Field(default=None, ge=0.0, le=100.0)
    crime_rate: float | None = Field(default=None, ge=0.0, le=100.0)
    crowd_density: float | None = Field(default=None, ge=0.0, le=100.0)
    community_reports: float | None = Field(default=None, ge=0.0, le=100.0)
    time_of_day: float | None = Field(default=None, ge=0.0, le=100.0)


class OverlayRecord(BaseModel):
    edge_id: str = Field(..., min_length=1)
    as_of: datetime
    delay_s: float = 0.0
    crowd_level: float | None = Field(default=None, ge=0.0, le=1.0)
    safety: SafetySubScores | None = None


class EventRecord(BaseModel):
    event_id: str = Field(..., min_length=1)
    center: LatLng
    radius_m: float = Field(..., gt=0.0)
    starts_at: datetime
    ends_at: datetime
    delay_s: float = Field(default=0.0, ge=0.0)
    closes_edges: bool = False

    @model_validator(mode="after")
    def window_ordered(self) -> "EventRecord":
        if self.ends_at <= self.starts_at:
            raise ValueError("event window must end after it starts")
        return self


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class PreferenceWeights(BaseModel):
    """Weight vector of the cost formula. Coefficients need not sum to one."""

    time: float = Field(..., ge=0)
    distance: float = Field(..., ge=0)
    safety: float = Field(..., ge=0)
    fare: float = Field(..., ge=0)
    transfer: float = Field(..., ge=0)

    @model_validator(mode="before")
    @classmethod
    def accept_greek_aliases(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        for key, alias in (
            ("time", "alpha"),
            ("distance", "beta"),
            ("safety", "gamma"),
            ("fare", "delta"),
            ("transfer", "epsilon"),
        ):
            if key not in data and alias in data:
                data[key] = data[alias]
        return data

    @field_validator("time", "distance", "safety", "fare", "transfer")
    @classmethod
    def finite(cls, v: float) -> float:
        if v != v or v in (float("inf"), float("-inf")):
            raise ValueError("weight must be finite")
        return v


class HardConstraints(BaseModel):
    max_time_s: float | None = Field(default=None, gt=0.0)
    min_safety: float | None = Field(default=None, ge=0.0, le=100.0)
    max_budget: float | None = Field(default=None, ge=0.0)
    max_transfers: int | None = Field(default=None, ge=0)
    step_free: bool = False
    women_safe: bool = False


class PreferenceProfile(BaseModel):
    # None means the balanced preset.
    weights: PreferenceWeights | None = None
    constraints: HardConstraints = Field(default_factory=HardConstraints)
    max_routes: int | None = Field(default=None, ge=1, le=12)


class PlanRequest(BaseModel):
    origin: LatLng
    destination: LatLng
    departure_time: datetime | None = None
    profile: PreferenceProfile = Field(default_factory=PreferenceProfile)


class LegPayload(BaseModel):
    edge_id: str
    mode: TransportMode
    from_node: str
    to_node: str
    depart_at: datetime
    arrive_at: datetime
    wait_s: float
    ride_s: float
    delay_s: float
    distance_m: float
    fare: float
    safety_score: float
    transfer: bool
    crowd_level: float | None = None
    verification_count: int = 0


class RouteMetrics(BaseModel):
    total_time_s: float
    distance_km: float
    fare: float
    transfers: int
    safety_score: float
    weighted_cost: float


class RoutePayload(BaseModel):
    id: str
    rank: int | None = None
    label: RouteLabel
    score: float
    pareto_optimal: bool = False
    snapshot_version: str
    metrics: RouteMetrics
    segment_safety: list[float]
    polyline: list[tuple[float, float]] = Field(default_factory=list)
    legs: list[LegPayload]
    violations: list[str] = Field(default_factory=list)


class PlanResponse(BaseModel):
    status: Literal["ok", "no_qualifying_route"]
    request_id: str
    snapshot_version: str
    routes: list[RoutePayload] = Field(default_factory=list)
    candidates: list[RoutePayload] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


class TrackingStartRequest(BaseModel):
    route_id: str = Field(..., min_length=1)


class PositionUpdate(BaseModel):
    timestamp: datetime
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class DelayReport(BaseModel):
    timestamp: datetime
    edge_id: str = Field(..., min_length=1)
    delay_s: float = Field(..., ge=0.0)


class TrackingEventPayload(BaseModel):
    kind: str
    at: datetime
    detail: dict[str, str | float | int | bool | None] = Field(default_factory=dict)


class TrackingResponse(BaseModel):
    session_id: str
    state: SessionStateName
    route: RoutePayload
    events: list[TrackingEventPayload] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Feed acknowledgements
# ---------------------------------------------------------------------------


class SnapshotResponse(BaseModel):
    version: str
    generation: int
    node_count: int
    edge_count: int
    dropped_edges: int = 0


class OverlayIngestResponse(BaseModel):
    accepted: int
    ignored: int


class EventIngestResponse(BaseModel):
    active_events: int
