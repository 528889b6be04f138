from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import PreferenceWeights
from .settings import settings

if TYPE_CHECKING:
    from .network import Edge
    from .overlays import EdgeOverlay
    from .search import Leg


@dataclass(frozen=True)
class WeightVector:
    """Coefficients of the edge cost: alpha time, beta distance, gamma safety, delta fare, epsilon transfer."""

    time: float
    distance: float
    safety: float
    fare: float
    transfer: float

    def as_tuple(self) -> tuple[float, float, float, float, float]:
        return (self.time, self.distance, self.safety, self.fare, self.transfer)


PRESET_WEIGHTS: dict[str, WeightVector] = {
    "fastest": WeightVector(time=0.5, distance=0.1, safety=0.2, fare=0.1, transfer=0.1),
    "safest": WeightVector(time=0.2, distance=0.1, safety=0.5, fare=0.1, transfer=0.1),
    "balanced": WeightVector(time=0.3, distance=0.1, safety=0.3, fare=0.2, transfer=0.1),
}
PRESET_ORDER: tuple[str, ...] = ("fastest", "safest", "balanced")
# Label kept when several presets return the same edge sequence; earlier wins.
LABEL_PRIORITY: tuple[str, ...] = ("fastest", "safest", "balanced", "alternative")


def from_preferences(weights: PreferenceWeights | None) -> WeightVector:
    if weights is None:
        return PRESET_WEIGHTS["balanced"]
    return WeightVector(
        time=float(weights.time),
        distance=float(weights.distance),
        safety=float(weights.safety),
        fare=float(weights.fare),
        transfer=float(weights.transfer),
    )


def predicted_delay_s(overlay: EdgeOverlay | None, extra_delay_s: float = 0.0) -> float:
    base = 0.0 if overlay is None else float(overlay.delay_s)
    return max(0.0, base + float(extra_delay_s))


def is_transfer(prev_mode: str | None, mode: str) -> bool:
    return prev_mode is not None and prev_mode != mode


def _cost_terms(
    weights: WeightVector,
    *,
    travel_s: float,
    delay_s: float,
    distance_m: float,
    safety_score: float,
    fare: float,
    transfer: bool,
) -> float:
    penalty = float(settings.transfer_penalty) if transfer else 0.0
    cost = (
        weights.time * ((max(0.0, travel_s) + max(0.0, delay_s)) / 60.0)
        + weights.distance * (max(0.0, distance_m) / 1000.0)
        + weights.safety * (100.0 - max(0.0, min(100.0, safety_score)))
        + weights.fare * max(0.0, fare)
        + weights.transfer * penalty
    )
    return max(0.0, cost)


def edge_weight(
    edge: Edge,
    weights: WeightVector,
    *,
    overlay: EdgeOverlay | None = None,
    prev_mode: str | None = None,
    wait_s: float = 0.0,
    extra_delay_s: float = 0.0,
) -> float:
    safety_score = float(settings.neutral_safety_score) if overlay is None else overlay.safety_score
    return _cost_terms(
        weights,
        travel_s=float(wait_s) + edge.ride_s,
        delay_s=predicted_delay_s(overlay, extra_delay_s),
        distance_m=edge.distance_m,
        safety_score=safety_score,
        fare=edge.fare,
        transfer=is_transfer(prev_mode, edge.mode),
    )


def path_cost(legs: Iterable[Leg], weights: WeightVector) -> float:
    """Cost of an already-timed path under another weight vector."""
    total = 0.0
    for leg in legs:
        total += _cost_terms(
            weights,
            travel_s=leg.wait_s + leg.edge.ride_s,
            delay_s=leg.delay_s,
            distance_m=leg.edge.distance_m,
            safety_score=leg.safety_score,
            fare=leg.edge.fare,
            transfer=leg.transfer,
        )
    return total
