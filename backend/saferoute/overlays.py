from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from threading import Lock
from types import MappingProxyType

from .geo import haversine_m
from .models import EventRecord, OverlayRecord, ensure_utc, to_epoch_s
from .network import Subgraph
from .safety import composite_safety
from .settings import settings


@dataclass(frozen=True)
class EdgeOverlay:
    edge_id: str
    as_of_s: float
    delay_s: float = 0.0
    crowd_level: float | None = None
    sub_scores: Mapping[str, float] = field(default_factory=dict)

    @property
    def safety_score(self) -> float:
        return composite_safety(self.sub_scores)


def overlay_from_record(record: OverlayRecord) -> EdgeOverlay:
    sub_scores: dict[str, float] = {}
    if record.safety is not None:
        sub_scores = {key: float(value) for key, value in record.safety.model_dump().items() if value is not None}
    return EdgeOverlay(
        edge_id=record.edge_id,
        as_of_s=to_epoch_s(record.as_of),
        delay_s=float(record.delay_s),
        crowd_level=record.crowd_level,
        sub_scores=MappingProxyType(sub_scores),
    )


class OverlayStore:
    """Per-edge dynamic state. Each write replaces one edge's overlay atomically."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, EdgeOverlay] = {}

    def apply(self, record: OverlayRecord) -> bool:
        overlay = overlay_from_record(record)
        with self._lock:
            existing = self._entries.get(overlay.edge_id)
            if existing is not None and overlay.as_of_s < existing.as_of_s:
                return False
            self._entries[overlay.edge_id] = overlay
        return True

    def get(self, edge_id: str) -> EdgeOverlay | None:
        with self._lock:
            return self._entries.get(edge_id)

    def view(self, edge_ids: Iterable[str]) -> Mapping[str, EdgeOverlay]:
        wanted = tuple(edge_ids)
        with self._lock:
            picked = {edge_id: self._entries[edge_id] for edge_id in wanted if edge_id in self._entries}
        return MappingProxyType(picked)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(frozen=True)
class EventWindow:
    event_id: str
    center_lat: float
    center_lon: float
    radius_m: float
    starts_at_s: float
    ends_at_s: float
    delay_s: float = 0.0
    closes_edges: bool = False

    def active_at(self, at_s: float) -> bool:
        return self.starts_at_s <= at_s < self.ends_at_s

    def covers(self, lat: float, lon: float) -> bool:
        return haversine_m(self.center_lat, self.center_lon, lat, lon) <= self.radius_m


def event_from_record(record: EventRecord) -> EventWindow:
    return EventWindow(
        event_id=record.event_id,
        center_lat=float(record.center.lat),
        center_lon=float(record.center.lon),
        radius_m=float(record.radius_m),
        starts_at_s=ensure_utc(record.starts_at).timestamp(),
        ends_at_s=ensure_utc(record.ends_at).timestamp(),
        delay_s=float(record.delay_s),
        closes_edges=bool(record.closes_edges),
    )


class EventStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._events: tuple[EventWindow, ...] = ()

    def replace(self, records: Iterable[EventRecord]) -> int:
        events = tuple(sorted((event_from_record(r) for r in records), key=lambda e: e.event_id))
        with self._lock:
            self._events = events
        return len(events)

    def active_at(self, at_s: float) -> tuple[EventWindow, ...]:
        with self._lock:
            events = self._events
        return tuple(event for event in events if event.active_at(at_s))

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


@dataclass(frozen=True)
class EdgeConditions:
    """Dynamic inputs for one planning request, read once and then held fixed."""

    overlays: Mapping[str, EdgeOverlay] = field(default_factory=dict)
    event_delay_s: Mapping[str, float] = field(default_factory=dict)
    closed_edges: frozenset[str] = frozenset()
    event_ids: tuple[str, ...] = ()

    def overlay(self, edge_id: str) -> EdgeOverlay | None:
        return self.overlays.get(edge_id)

    def is_closed(self, edge_id: str) -> bool:
        return edge_id in self.closed_edges

    def extra_delay_s(self, edge_id: str) -> float:
        return float(self.event_delay_s.get(edge_id, 0.0))

    def safety_score(self, edge_id: str) -> float:
        overlay = self.overlays.get(edge_id)
        if overlay is None:
            return float(settings.neutral_safety_score)
        return overlay.safety_score

    def crowd_level(self, edge_id: str) -> float | None:
        overlay = self.overlays.get(edge_id)
        return None if overlay is None else overlay.crowd_level


EMPTY_CONDITIONS = EdgeConditions()


def conditions_for(
    subgraph: Subgraph,
    *,
    overlays: OverlayStore,
    events: EventStore,
    at_s: float,
) -> EdgeConditions:
    edge_ids = subgraph.edge_ids
    view = overlays.view(edge_ids)
    active = events.active_at(at_s)
    if not active:
        return EdgeConditions(overlays=view)

    delays: dict[str, float] = {}
    closed: set[str] = set()
    edge_index = subgraph.snapshot.edge_index
    for edge_id in edge_ids:
        edge = edge_index[edge_id]
        src = subgraph.node(edge.source)
        dst = subgraph.node(edge.target)
        for event in active:
            if not (event.covers(src.lat, src.lon) or event.covers(dst.lat, dst.lon)):
                continue
            if event.closes_edges:
                closed.add(edge_id)
            elif event.delay_s > 0.0:
                # Overlapping geofences do not stack; the largest estimate applies.
                delays[edge_id] = max(delays.get(edge_id, 0.0), event.delay_s)
    return EdgeConditions(
        overlays=view,
        event_delay_s=MappingProxyType(delays),
        closed_edges=frozenset(closed),
        event_ids=tuple(event.event_id for event in active),
    )
