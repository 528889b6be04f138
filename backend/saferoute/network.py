from __future__ import annotations

import bisect
import hashlib
import json
import math
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock

from .engine_errors import EndpointsCoincideError, NetworkUnavailableError, OutOfCoverageError
from .geo import grid_key, grid_ring_radius, haversine_m
from .logging_utils import log_event, log_warning
from .models import INFORMAL_MODES, SECONDS_PER_DAY, EdgeRecord, NetworkFeed, NodeRecord
from .settings import settings


@dataclass(frozen=True)
class Node:
    id: str
    lat: float
    lon: float
    name: str | None = None
    has_elevator: bool = False
    has_ramp: bool = False
    incident_edge_ids: frozenset[str] = frozenset()

    @property
    def step_free(self) -> bool:
        return self.has_elevator or self.has_ramp

    @property
    def coords(self) -> tuple[float, float]:
        return (self.lat, self.lon)


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    mode: str
    distance_m: float
    fare: float
    ride_s: float
    departures_s: tuple[int, ...] = ()
    headway_s: int | None = None
    service_start_s: int = 0
    service_end_s: int = SECONDS_PER_DAY - 1
    board_wait_s: float = 0.0
    verification_count: int = 0

    @property
    def informal(self) -> bool:
        return self.mode in INFORMAL_MODES

    @property
    def scheduled(self) -> bool:
        return bool(self.departures_s) or self.headway_s is not None

    def next_departure(self, ready_at: float, *, utc_offset_s: int = 0) -> float:
        """Earliest departure (epoch seconds) at or after ``ready_at``.

        Schedules repeat every service day; a departure after the last service of
        the day rolls over to the first service of the next day.
        """
        if not self.scheduled:
            return ready_at + self.board_wait_s
        local = ready_at + utc_offset_s
        day_start = math.floor(local / SECONDS_PER_DAY) * SECONDS_PER_DAY
        sod = local - day_start
        if self.departures_s:
            idx = bisect.bisect_left(self.departures_s, sod)
            if idx < len(self.departures_s):
                dep_local = day_start + self.departures_s[idx]
            else:
                dep_local = day_start + SECONDS_PER_DAY + self.departures_s[0]
            return dep_local - utc_offset_s
        headway = int(self.headway_s or 0)
        if sod <= self.service_start_s:
            dep_local = day_start + self.service_start_s
        else:
            steps = math.ceil((sod - self.service_start_s) / headway)
            offset = self.service_start_s + steps * headway
            if offset <= self.service_end_s:
                dep_local = day_start + offset
            else:
                dep_local = day_start + SECONDS_PER_DAY + self.service_start_s
        return dep_local - utc_offset_s


@dataclass(frozen=True)
class NetworkSnapshot:
    version: str
    source: str
    nodes: dict[str, Node]
    adjacency: dict[str, tuple[Edge, ...]]
    edge_index: dict[str, Edge]
    grid_index: dict[tuple[int, int], tuple[str, ...]]
    informal_by_node: dict[str, tuple[Edge, ...]]
    bucket_deg: float
    max_speed_mps: float
    utc_offset_s: int = 0
    dropped_edges: int = 0
    built_at_utc: str = ""
    generation: int = 0


@dataclass(frozen=True)
class Subgraph:
    """Read view over one snapshot restricted to the nodes around an OD pair."""

    snapshot: NetworkSnapshot
    node_ids: frozenset[str]
    origin_node: str
    destination_node: str
    origin_snap_m: float = 0.0
    destination_snap_m: float = 0.0
    _edge_ids: frozenset[str] = field(default=frozenset(), repr=False)

    @property
    def version(self) -> str:
        return self.snapshot.version

    @property
    def generation(self) -> int:
        return self.snapshot.generation

    def node(self, node_id: str) -> Node:
        return self.snapshot.nodes[node_id]

    def edges_from(self, node_id: str) -> tuple[Edge, ...]:
        if node_id not in self.node_ids:
            return ()
        return tuple(edge for edge in self.snapshot.adjacency.get(node_id, ()) if edge.target in self.node_ids)

    @property
    def edge_ids(self) -> frozenset[str]:
        return self._edge_ids


def _iso_utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _feed_version(feed: NetworkFeed) -> str:
    if feed.version:
        return feed.version
    digest = hashlib.sha1(feed.model_dump_json().encode("utf-8")).hexdigest()
    return f"feed-{digest[:12]}"


def _node_from_record(record: NodeRecord, incident: frozenset[str]) -> Node:
    return Node(
        id=record.id,
        lat=float(record.lat),
        lon=float(record.lon),
        name=record.name,
        has_elevator=bool(record.has_elevator),
        has_ramp=bool(record.has_ramp),
        incident_edge_ids=incident,
    )


def _edge_from_record(record: EdgeRecord) -> Edge:
    return Edge(
        id=record.id,
        source=record.source,
        target=record.target,
        mode=record.mode,
        distance_m=float(record.distance_m),
        fare=float(record.fare),
        ride_s=float(record.ride_s),
        departures_s=tuple(record.departures_s),
        headway_s=record.headway_s,
        service_start_s=int(record.service_start_s),
        service_end_s=int(record.service_end_s),
        board_wait_s=float(record.board_wait_s),
        verification_count=int(record.verification_count),
    )


def _max_speed_mps(nodes: dict[str, NodeRecord], edges: list[Edge]) -> float:
    fastest = 0.0
    for edge in edges:
        src = nodes[edge.source]
        dst = nodes[edge.target]
        gc_m = haversine_m(src.lat, src.lon, dst.lat, dst.lon)
        if gc_m <= 0.0:
            continue
        if edge.ride_s <= 0.0:
            # A zero-duration hop over real distance makes any time bound inadmissible.
            return math.inf
        fastest = max(fastest, gc_m / edge.ride_s)
    if fastest <= 0.0:
        return float(settings.fallback_max_speed_kph) / 3.6
    return fastest


def build_snapshot(feed: NetworkFeed, *, bucket_deg: float | None = None) -> NetworkSnapshot:
    bucket = float(bucket_deg or settings.grid_bucket_deg)
    node_records = {record.id: record for record in feed.nodes}

    kept: list[Edge] = []
    seen_ids: set[str] = set()
    dropped = 0
    for record in (*feed.edges, *feed.informal_edges):
        if record.source not in node_records or record.target not in node_records or record.id in seen_ids:
            dropped += 1
            continue
        seen_ids.add(record.id)
        kept.append(_edge_from_record(record))

    adjacency_mut: dict[str, list[Edge]] = {}
    informal_mut: dict[str, list[Edge]] = {}
    incident_mut: dict[str, set[str]] = {}
    for edge in kept:
        adjacency_mut.setdefault(edge.source, []).append(edge)
        incident_mut.setdefault(edge.source, set()).add(edge.id)
        incident_mut.setdefault(edge.target, set()).add(edge.id)
        if edge.informal:
            informal_mut.setdefault(edge.source, []).append(edge)
            informal_mut.setdefault(edge.target, []).append(edge)

    nodes = {
        node_id: _node_from_record(record, frozenset(incident_mut.get(node_id, ())))
        for node_id, record in node_records.items()
    }
    grid_mut: dict[tuple[int, int], list[str]] = {}
    for node_id in sorted(nodes):
        node = nodes[node_id]
        grid_mut.setdefault(grid_key(node.lat, node.lon, bucket), []).append(node_id)

    snapshot = NetworkSnapshot(
        version=_feed_version(feed),
        source=feed.source,
        nodes=nodes,
        # Sorted adjacency keeps search expansion order independent of feed order.
        adjacency={k: tuple(sorted(v, key=lambda e: e.id)) for k, v in adjacency_mut.items()},
        edge_index={edge.id: edge for edge in kept},
        grid_index={key: tuple(values) for key, values in grid_mut.items()},
        informal_by_node={k: tuple(sorted(v, key=lambda e: e.id)) for k, v in informal_mut.items()},
        bucket_deg=bucket,
        max_speed_mps=_max_speed_mps(node_records, kept),
        utc_offset_s=int(feed.utc_offset_s),
        dropped_edges=dropped,
        built_at_utc=_iso_utc_now(),
    )
    if dropped:
        log_warning("network_edges_dropped", version=snapshot.version, dropped_edges=dropped)
    return snapshot


def nodes_within(
    snapshot: NetworkSnapshot,
    *,
    lat: float,
    lon: float,
    radius_m: float,
) -> list[tuple[str, float]]:
    """Nodes within ``radius_m`` of a point, nearest first (ties by id)."""
    center = grid_key(lat, lon, snapshot.bucket_deg)
    rings = grid_ring_radius(radius_m, lat=lat, bucket_deg=snapshot.bucket_deg)
    span = 2 * rings + 1
    if span * span > len(snapshot.grid_index):
        # Wide radius: filter the occupied buckets instead of walking every ring.
        buckets = [
            ids
            for key, ids in snapshot.grid_index.items()
            if abs(key[0] - center[0]) <= rings and abs(key[1] - center[1]) <= rings
        ]
    else:
        buckets = [
            snapshot.grid_index.get((center[0] + dy, center[1] + dx), ())
            for dy in range(-rings, rings + 1)
            for dx in range(-rings, rings + 1)
        ]
    out: list[tuple[str, float]] = []
    for node_ids in buckets:
        for node_id in node_ids:
            node = snapshot.nodes[node_id]
            dist = haversine_m(lat, lon, node.lat, node.lon)
            if dist <= radius_m:
                out.append((node_id, dist))
    out.sort(key=lambda item: (item[1], item[0]))
    return out


def bounded_subgraph(
    snapshot: NetworkSnapshot,
    *,
    origin: tuple[float, float],
    destination: tuple[float, float],
    radius_m: float,
    snap_radius_m: float | None = None,
) -> Subgraph:
    snap_m = float(radius_m if snap_radius_m is None else min(snap_radius_m, radius_m))
    origin_near = nodes_within(snapshot, lat=origin[0], lon=origin[1], radius_m=radius_m)
    destination_near = nodes_within(snapshot, lat=destination[0], lon=destination[1], radius_m=radius_m)

    origin_snap = next(((nid, d) for nid, d in origin_near if d <= snap_m), None)
    destination_snap = next(((nid, d) for nid, d in destination_near if d <= snap_m), None)
    if origin_snap is None or destination_snap is None:
        raise OutOfCoverageError(
            "no network node within coverage radius of "
            + ("origin" if origin_snap is None else "destination"),
            details={
                "endpoint": "origin" if origin_snap is None else "destination",
                "snap_radius_m": snap_m,
                "snapshot_version": snapshot.version,
            },
        )
    if origin_snap[0] == destination_snap[0]:
        raise EndpointsCoincideError(
            origin_snap[0],
            origin_snap_m=origin_snap[1],
            destination_snap_m=destination_snap[1],
        )

    members: set[str] = {nid for nid, _ in origin_near}
    members.update(nid for nid, _ in destination_near)
    # Informal edges may reach outside the radius; keep both of their endpoints.
    for node_id in tuple(members):
        for edge in snapshot.informal_by_node.get(node_id, ()):
            members.add(edge.source)
            members.add(edge.target)

    member_set = frozenset(members)
    edge_ids = frozenset(
        edge.id
        for node_id in member_set
        for edge in snapshot.adjacency.get(node_id, ())
        if edge.target in member_set
    )
    return Subgraph(
        snapshot=snapshot,
        node_ids=member_set,
        origin_node=origin_snap[0],
        destination_node=destination_snap[0],
        origin_snap_m=origin_snap[1],
        destination_snap_m=destination_snap[1],
        _edge_ids=edge_ids,
    )


def search_radius_for(origin: tuple[float, float], destination: tuple[float, float]) -> float:
    od_m = haversine_m(origin[0], origin[1], destination[0], destination[1])
    return max(float(settings.search_radius_m), od_m * float(settings.search_radius_od_factor))


class NetworkStore:
    """Holds the current snapshot; a refresh swaps the whole reference at once."""

    def __init__(self, snapshot: NetworkSnapshot | None = None) -> None:
        self._lock = Lock()
        self._generation = 0
        self._snapshot: NetworkSnapshot | None = None
        if snapshot is not None:
            self.swap(snapshot)

    def current(self) -> NetworkSnapshot | None:
        return self._snapshot

    def require(self) -> NetworkSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise NetworkUnavailableError()
        return snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def swap(self, snapshot: NetworkSnapshot) -> NetworkSnapshot:
        with self._lock:
            self._generation += 1
            installed = replace(snapshot, generation=self._generation)
            self._snapshot = installed
        log_event(
            "network_snapshot_swapped",
            version=installed.version,
            generation=installed.generation,
            node_count=len(installed.nodes),
            edge_count=len(installed.edge_index),
        )
        return installed

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None


NETWORK_STORE = NetworkStore()


def _network_asset_path() -> Path | None:
    explicit = (settings.network_asset_path or "").strip()
    return Path(explicit) if explicit else None


def read_network_feed(path: Path) -> NetworkFeed:
    payload = json.loads(path.read_text(encoding="utf-8"))
    return NetworkFeed.model_validate(payload)


@lru_cache(maxsize=4)
def load_network_snapshot(asset_path: str | None = None) -> NetworkSnapshot | None:
    path = Path(asset_path) if asset_path else _network_asset_path()
    if path is None or not path.exists():
        return None
    snapshot = build_snapshot(read_network_feed(path))
    log_event(
        "network_asset_loaded",
        path=str(path),
        version=snapshot.version,
        node_count=len(snapshot.nodes),
        edge_count=len(snapshot.edge_index),
    )
    return snapshot
