from __future__ import annotations

import heapq
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from .engine_errors import NoPathFoundError, SearchCancelledError
from .geo import haversine_m
from .network import Edge, Subgraph
from .overlays import EMPTY_CONDITIONS, EdgeConditions
from .settings import settings
from .weights import (
    LABEL_PRIORITY,
    PRESET_ORDER,
    PRESET_WEIGHTS,
    WeightVector,
    edge_weight,
    is_transfer,
    predicted_delay_s,
)

CancelCheck = Callable[[], bool]

MAX_ALTERNATIVE_SEARCHES = 48


@dataclass(frozen=True)
class Leg:
    edge: Edge
    wait_s: float
    depart_at_s: float
    arrive_at_s: float
    delay_s: float
    safety_score: float
    transfer: bool
    crowd_level: float | None = None

    @property
    def mode(self) -> str:
        return self.edge.mode

    @property
    def from_node(self) -> str:
        return self.edge.source

    @property
    def to_node(self) -> str:
        return self.edge.target


@dataclass(frozen=True)
class Path:
    legs: tuple[Leg, ...]
    departure_at_s: float
    snapshot_version: str
    snapshot_generation: int
    weighted_cost: float
    label: str = "balanced"

    @property
    def edge_ids(self) -> tuple[str, ...]:
        return tuple(leg.edge.id for leg in self.legs)

    @property
    def node_ids(self) -> tuple[str, ...]:
        if not self.legs:
            return ()
        return (self.legs[0].from_node, *(leg.to_node for leg in self.legs))

    @property
    def arrival_at_s(self) -> float:
        return self.legs[-1].arrive_at_s if self.legs else self.departure_at_s

    @property
    def total_time_s(self) -> float:
        return self.arrival_at_s - self.departure_at_s

    @property
    def distance_m(self) -> float:
        return sum(leg.edge.distance_m for leg in self.legs)

    @property
    def fare(self) -> float:
        return sum(leg.edge.fare for leg in self.legs)

    @property
    def transfers(self) -> int:
        return sum(1 for leg in self.legs if leg.transfer)

    @property
    def segment_safety(self) -> tuple[float, ...]:
        return tuple(leg.safety_score for leg in self.legs)


@dataclass(frozen=True)
class SearchLimits:
    horizon_s: float
    max_states: int
    max_legs: int
    deadline_s: float

    @classmethod
    def from_settings(cls) -> SearchLimits:
        return cls(
            horizon_s=float(settings.search_horizon_s),
            max_states=int(settings.search_max_state_budget),
            max_legs=int(settings.search_max_legs),
            deadline_s=float(settings.search_deadline_s),
        )


def _heuristic_fn(subgraph: Subgraph, weights: WeightVector) -> Callable[[str], float]:
    max_speed = subgraph.snapshot.max_speed_mps
    if weights.time <= 0.0 or not math.isfinite(max_speed) or max_speed <= 0.0:
        return lambda _node_id: 0.0
    goal = subgraph.node(subgraph.destination_node)
    per_metre = weights.time / (max_speed * 60.0)
    cache: dict[str, float] = {}

    def h(node_id: str) -> float:
        value = cache.get(node_id)
        if value is None:
            node = subgraph.node(node_id)
            value = per_metre * haversine_m(node.lat, node.lon, goal.lat, goal.lon)
            cache[node_id] = value
        return value

    return h


def _dominated(labels: list[tuple[float, float]], arrive_s: float, cost: float, alpha: float) -> bool:
    # An earlier label can always wait out the difference, paying alpha per minute.
    for seen_arrive, seen_cost in labels:
        if seen_arrive <= arrive_s and seen_cost + alpha * (arrive_s - seen_arrive) / 60.0 <= cost + 1e-9:
            return True
    return False


def _insert_label(labels: list[tuple[float, float]], arrive_s: float, cost: float, alpha: float) -> None:
    labels[:] = [
        (seen_arrive, seen_cost)
        for seen_arrive, seen_cost in labels
        if not (arrive_s <= seen_arrive and cost + alpha * (seen_arrive - arrive_s) / 60.0 <= seen_cost + 1e-9)
    ]
    labels.append((arrive_s, cost))


def search_best_path(
    subgraph: Subgraph,
    *,
    departure_at_s: float,
    weights: WeightVector,
    conditions: EdgeConditions = EMPTY_CONDITIONS,
    banned_edges: frozenset[str] = frozenset(),
    limits: SearchLimits | None = None,
    deadline_monotonic_s: float | None = None,
    should_cancel: CancelCheck | None = None,
    explored_counter: list[int] | None = None,
    label: str = "balanced",
) -> Path:
    """Least-cost timed path from the subgraph origin to its destination.

    A* over ``(node, arrival, last mode)`` states. An edge can only be boarded at
    its next departure at or after the arrival at its source node.
    """
    limits = limits or SearchLimits.from_settings()
    if deadline_monotonic_s is None:
        deadline_monotonic_s = time.monotonic() + limits.deadline_s
    counter = explored_counter if explored_counter is not None else [0]
    snapshot = subgraph.snapshot
    start = subgraph.origin_node
    goal = subgraph.destination_node
    alpha = weights.time
    h = _heuristic_fn(subgraph, weights)

    seq = 0
    heap: list[tuple[float, float, int, str, float, str | None, tuple[Leg, ...], tuple[str, ...]]] = [
        (h(start), 0.0, seq, start, float(departure_at_s), None, (), (start,))
    ]
    labels: dict[tuple[str, str | None], list[tuple[float, float]]] = {(start, None): [(float(departure_at_s), 0.0)]}
    horizon_pruned = False

    while heap:
        if should_cancel is not None and should_cancel():
            raise SearchCancelledError()
        if time.monotonic() >= deadline_monotonic_s:
            raise NoPathFoundError(
                "search deadline exceeded",
                details={"explored_states": counter[0]},
                reason_code="search_deadline_exceeded",
            )
        if counter[0] >= limits.max_states:
            raise NoPathFoundError(
                "search state budget exceeded",
                details={"explored_states": counter[0]},
                reason_code="search_state_budget_exceeded",
            )

        _f, cost, _seq, node, arrive_s, last_mode, legs, visited = heapq.heappop(heap)
        if (arrive_s, cost) not in labels.get((node, last_mode), ()):
            continue
        counter[0] += 1
        if node == goal:
            return Path(
                legs=legs,
                departure_at_s=float(departure_at_s),
                snapshot_version=snapshot.version,
                snapshot_generation=snapshot.generation,
                weighted_cost=cost,
                label=label,
            )
        if len(legs) >= limits.max_legs:
            continue

        for edge in subgraph.edges_from(node):
            if edge.id in banned_edges or conditions.is_closed(edge.id):
                continue
            if edge.target in visited:
                continue
            depart_s = edge.next_departure(arrive_s, utc_offset_s=snapshot.utc_offset_s)
            overlay = conditions.overlay(edge.id)
            extra_delay = conditions.extra_delay_s(edge.id)
            delay_s = predicted_delay_s(overlay, extra_delay)
            next_arrive = depart_s + edge.ride_s + delay_s
            if next_arrive - departure_at_s > limits.horizon_s:
                horizon_pruned = True
                continue
            wait_s = depart_s - arrive_s
            next_cost = cost + edge_weight(
                edge,
                weights,
                overlay=overlay,
                prev_mode=last_mode,
                wait_s=wait_s,
                extra_delay_s=extra_delay,
            )
            key = (edge.target, edge.mode)
            bucket = labels.setdefault(key, [])
            if _dominated(bucket, next_arrive, next_cost, alpha):
                continue
            _insert_label(bucket, next_arrive, next_cost, alpha)
            leg = Leg(
                edge=edge,
                wait_s=wait_s,
                depart_at_s=depart_s,
                arrive_at_s=next_arrive,
                delay_s=delay_s,
                safety_score=conditions.safety_score(edge.id),
                transfer=is_transfer(last_mode, edge.mode),
                crowd_level=conditions.crowd_level(edge.id),
            )
            seq += 1
            heapq.heappush(
                heap,
                (
                    next_cost + h(edge.target),
                    next_cost,
                    seq,
                    edge.target,
                    next_arrive,
                    edge.mode,
                    (*legs, leg),
                    (*visited, edge.target),
                ),
            )

    details = {
        "origin_node": start,
        "destination_node": goal,
        "horizon_s": limits.horizon_s,
        "explored_states": counter[0],
    }
    if horizon_pruned:
        raise NoPathFoundError(
            "destination unreachable within search horizon",
            details=details,
            reason_code="search_horizon_exceeded",
        )
    raise NoPathFoundError("destination unreachable from origin", details=details)


def search_candidate_paths(
    subgraph: Subgraph,
    *,
    departure_at_s: float,
    k: int,
    conditions: EdgeConditions = EMPTY_CONDITIONS,
    limits: SearchLimits | None = None,
    should_cancel: CancelCheck | None = None,
    explored_counter: list[int] | None = None,
) -> tuple[Path, ...]:
    """Distinct candidate paths: one per preset, then edge-ban alternatives under the balanced preset."""
    limits = limits or SearchLimits.from_settings()
    deadline = time.monotonic() + limits.deadline_s
    counter = explored_counter if explored_counter is not None else [0]

    def run(weights: WeightVector, label: str, banned: frozenset[str] = frozenset()) -> Path:
        return search_best_path(
            subgraph,
            departure_at_s=departure_at_s,
            weights=weights,
            conditions=conditions,
            banned_edges=banned,
            limits=limits,
            deadline_monotonic_s=deadline,
            should_cancel=should_cancel,
            explored_counter=counter,
            label=label,
        )

    by_edges: dict[tuple[str, ...], Path] = {}
    first_error: NoPathFoundError | None = None
    for label in PRESET_ORDER:
        try:
            path = run(PRESET_WEIGHTS[label], label)
        except NoPathFoundError as exc:
            first_error = first_error or exc
            continue
        known = by_edges.get(path.edge_ids)
        if known is None or LABEL_PRIORITY.index(label) < LABEL_PRIORITY.index(known.label):
            by_edges[path.edge_ids] = path

    if not by_edges:
        raise first_error or NoPathFoundError("no path found")
    found = sorted(by_edges.values(), key=lambda p: LABEL_PRIORITY.index(p.label))
    seen = set(by_edges)

    # Alternatives: breadth-first over edge bans, growing a ban by one edge
    # whenever it still yields an already known path.
    frontier: deque[frozenset[str]] = deque(frozenset({leg.edge.id}) for path in found for leg in path.legs)
    tried: set[frozenset[str]] = set()
    searches = 0
    while len(found) < k and frontier and searches < MAX_ALTERNATIVE_SEARCHES:
        ban = frontier.popleft()
        if ban in tried:
            continue
        tried.add(ban)
        searches += 1
        try:
            alt = run(PRESET_WEIGHTS["balanced"], "alternative", ban)
        except NoPathFoundError:
            continue
        if alt.edge_ids in seen:
            frontier.extend(ban | {leg.edge.id} for leg in alt.legs)
            continue
        seen.add(alt.edge_ids)
        found.append(alt)
        frontier.extend(frozenset({leg.edge.id}) for leg in alt.legs)

    return tuple(found[:k])
