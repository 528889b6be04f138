from __future__ import annotations

import hashlib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from .models import HardConstraints, PreferenceProfile
from .network import NetworkSnapshot
from .pareto import pareto_filter
from .safety import route_safety
from .search import Path
from .settings import settings
from .weights import from_preferences, path_cost

MITIGATION_SUGGESTIONS: tuple[str, ...] = (
    "Try a different departure time; safety and schedules vary across the day.",
    "Relax the minimum safety score or turn off women-safe mode.",
    "Raise the budget or the maximum travel time.",
    "Allow more transfers, or routes that are not fully step-free.",
    "Start or end the trip at a nearby major station.",
)


@dataclass(frozen=True)
class Route:
    id: str
    path: Path
    label: str
    score: float
    weighted_cost: float
    safety_score: float
    pareto_optimal: bool = False
    rank: int | None = None
    violations: tuple[str, ...] = ()
    polyline: tuple[tuple[float, float], ...] = ()

    @property
    def total_time_s(self) -> float:
        return self.path.total_time_s

    @property
    def fare(self) -> float:
        return self.path.fare

    @property
    def arrival_at_s(self) -> float:
        return self.path.arrival_at_s

    @property
    def edge_ids(self) -> tuple[str, ...]:
        return self.path.edge_ids

    def objective_vector(self) -> tuple[float, float, float]:
        return (self.total_time_s, self.fare, 100.0 - self.safety_score)


@dataclass(frozen=True)
class RankedRoutes:
    routes: tuple[Route, ...]
    candidates: tuple[Route, ...]


@dataclass(frozen=True)
class NoQualifyingRoute:
    """Every candidate broke a hard constraint. A result, not a failure."""

    candidates: tuple[Route, ...]
    suggestions: tuple[str, ...] = MITIGATION_SUGGESTIONS

    @property
    def violations(self) -> dict[str, tuple[str, ...]]:
        return {route.id: route.violations for route in self.candidates}


def goodness_score(cost: float, *, scale: float | None = None) -> float:
    s = float(settings.goodness_scale if scale is None else scale)
    return round(100.0 * s / (s + max(0.0, float(cost))), 6)


def route_id_for(path: Path) -> str:
    raw = "|".join(
        (
            path.snapshot_version,
            str(path.snapshot_generation),
            f"{path.departure_at_s:.3f}",
            ",".join(path.edge_ids),
        )
    )
    return "rt_" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def constraint_violations(
    path: Path,
    *,
    safety_score: float,
    constraints: HardConstraints,
    snapshot: NetworkSnapshot,
) -> tuple[str, ...]:
    out: list[str] = []
    if constraints.max_time_s is not None and path.total_time_s > constraints.max_time_s:
        out.append("max_time")
    if constraints.max_budget is not None and path.fare > constraints.max_budget + 1e-9:
        out.append("max_budget")
    if constraints.min_safety is not None and safety_score < constraints.min_safety:
        out.append("min_safety")
    if constraints.women_safe and safety_score < settings.women_safe_min_safety:
        out.append("women_safe")
    if constraints.step_free and not all(snapshot.nodes[node_id].step_free for node_id in path.node_ids):
        out.append("step_free")
    if constraints.max_transfers is not None and path.transfers > constraints.max_transfers:
        out.append("max_transfers")
    return tuple(out)


def _tie_break_key(route: Route) -> tuple[float, float, float, tuple[str, ...]]:
    return (-route.score, route.total_time_s, route.fare, route.edge_ids)


def _flag_pareto(routes: Sequence[Route]) -> tuple[Route, ...]:
    front = {route.id for route in pareto_filter(routes, key=Route.objective_vector)}
    return tuple(replace(route, pareto_optimal=route.id in front) for route in routes)


def assemble_routes(
    paths: Iterable[Path],
    *,
    profile: PreferenceProfile,
    snapshot: NetworkSnapshot,
    k: int | None = None,
) -> RankedRoutes | NoQualifyingRoute:
    weights = from_preferences(profile.weights)
    limit = int(k or profile.max_routes or settings.k_paths)

    candidates: list[Route] = []
    for path in paths:
        safety = route_safety(path.segment_safety)
        cost = path_cost(path.legs, weights)
        candidates.append(
            Route(
                id=route_id_for(path),
                path=path,
                label=path.label,
                score=goodness_score(cost),
                weighted_cost=round(cost, 6),
                safety_score=safety,
                polyline=tuple(snapshot.nodes[node_id].coords for node_id in path.node_ids),
                violations=constraint_violations(
                    path,
                    safety_score=safety,
                    constraints=profile.constraints,
                    snapshot=snapshot,
                ),
            )
        )
    candidates.sort(key=_tie_break_key)

    qualifying = [route for route in candidates if not route.violations]
    if not qualifying:
        return NoQualifyingRoute(candidates=_flag_pareto(candidates))

    chosen = _flag_pareto(qualifying[:limit])
    ranked = tuple(replace(route, rank=idx) for idx, route in enumerate(chosen, start=1))
    return RankedRoutes(routes=ranked, candidates=tuple(candidates))
