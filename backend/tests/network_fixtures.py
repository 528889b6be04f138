from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from saferoute.models import (
    EdgeRecord,
    HardConstraints,
    LatLng,
    NetworkFeed,
    NodeRecord,
    OverlayRecord,
    PlanRequest,
    PreferenceProfile,
    SafetySubScores,
)
from saferoute.network import NetworkStore, build_snapshot
from saferoute.overlays import EventStore, OverlayStore
from saferoute.planner import RoutePlanner
from saferoute.route_store import PlannedRouteStore

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
T0_S = T0.timestamp()

# Four stops around central Delhi, each within a couple of km of the others.
COORDS: dict[str, tuple[float, float]] = {
    "A": (28.6000, 77.2000),
    "B": (28.6050, 77.2100),
    "C": (28.5950, 77.2100),
    "D": (28.6000, 77.2200),
}

SEGMENT_SAFETY: dict[str, float] = {"AB": 90.0, "BD": 40.0, "AC": 85.0, "CD": 85.0}


def node(node_id: str, **kwargs: Any) -> NodeRecord:
    lat, lon = COORDS[node_id]
    return NodeRecord(id=node_id, lat=lat, lon=lon, name=f"Stop {node_id}", **kwargs)


def edge(edge_id: str, source: str, target: str, mode: str, minutes: float, fare: float, **kwargs: Any) -> EdgeRecord:
    return EdgeRecord(
        id=edge_id,
        source=source,
        target=target,
        mode=mode,
        distance_m=kwargs.pop("distance_m", 1_100.0),
        fare=fare,
        ride_s=minutes * 60.0,
        **kwargs,
    )


def scenario_feed(*, version: str = "scenario-v1", step_free: bool = False) -> NetworkFeed:
    """Metro+bus A-B-D (25 min, fare 30) against walk+auto A-C-D (50 min, fare 15)."""
    return NetworkFeed(
        version=version,
        source="tests",
        nodes=[node(n, has_elevator=step_free) for n in ("A", "B", "C", "D")],
        edges=[
            edge("AB", "A", "B", "metro", 10, 20),
            edge("BD", "B", "D", "bus", 15, 10),
            edge("AC", "A", "C", "walk", 20, 0),
            edge("CD", "C", "D", "auto", 30, 15),
        ],
    )


def uniform_safety(score: float) -> SafetySubScores:
    return SafetySubScores(
        lighting=score,
        cctv=score,
        police_presence=score,
        incident_history=score,
        crime_rate=score,
        crowd_density=score,
        community_reports=score,
        time_of_day=score,
    )


def scenario_overlays(*, as_of: datetime = T0) -> list[OverlayRecord]:
    return [
        OverlayRecord(edge_id=edge_id, as_of=as_of, safety=uniform_safety(score))
        for edge_id, score in SEGMENT_SAFETY.items()
    ]


def scenario_stores(feed: NetworkFeed | None = None) -> tuple[NetworkStore, OverlayStore, EventStore]:
    network = NetworkStore(build_snapshot(feed or scenario_feed()))
    overlays = OverlayStore()
    for record in scenario_overlays():
        overlays.apply(record)
    return network, overlays, EventStore()


def scenario_planner(**kwargs: Any) -> RoutePlanner:
    network, overlays, events = scenario_stores()
    return RoutePlanner(
        network=kwargs.pop("network", network),
        overlays=kwargs.pop("overlays", overlays),
        events=kwargs.pop("events", events),
        route_store=kwargs.pop("route_store", PlannedRouteStore(ttl_s=600, max_entries=32)),
        **kwargs,
    )


def scenario_request(*, departure: datetime = T0, **constraints: Any) -> PlanRequest:
    if not constraints:
        constraints = {"min_safety": 70.0}
    return PlanRequest(
        origin=LatLng(lat=COORDS["A"][0], lon=COORDS["A"][1]),
        destination=LatLng(lat=COORDS["D"][0], lon=COORDS["D"][1]),
        departure_time=departure,
        profile=PreferenceProfile(constraints=HardConstraints(**constraints)),
    )


def install_scenario(main_module: Any) -> None:
    """Load the scenario network and overlays into the app singletons."""
    main_module.NETWORK_STORE.swap(build_snapshot(scenario_feed()))
    main_module.OVERLAYS.clear()
    for record in scenario_overlays():
        main_module.OVERLAYS.apply(record)
    main_module.EVENTS.replace([])
    main_module.ROUTE_STORE.clear()


def plan_payload(**constraints: Any) -> dict[str, Any]:
    return scenario_request(**constraints).model_dump(mode="json")
