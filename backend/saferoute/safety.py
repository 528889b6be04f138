from __future__ import annotations

from collections.abc import Iterable, Mapping

from .settings import settings

# Sub-factor weights of the composite segment score; they sum to 1.0.
SUB_FACTOR_WEIGHTS: dict[str, float] = {
    "lighting": 0.15,
    "cctv": 0.10,
    "police_presence": 0.15,
    "incident_history": 0.20,
    "crime_rate": 0.10,
    "crowd_density": 0.15,
    "community_reports": 0.05,
    "time_of_day": 0.10,
}


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def composite_safety(
    sub_scores: Mapping[str, float | None] | None,
    *,
    neutral: float | None = None,
) -> float:
    """Weighted composite of the segment sub-factor scores, in [0, 100].

    Each missing sub-factor contributes the neutral score, so a segment with no
    data at all scores exactly the neutral default.
    """
    default = float(settings.neutral_safety_score if neutral is None else neutral)
    if not sub_scores:
        return default
    total = 0.0
    for factor, weight in SUB_FACTOR_WEIGHTS.items():
        raw = sub_scores.get(factor)
        total += weight * (default if raw is None else _clamp_score(raw))
    return round(_clamp_score(total), 6)


def route_safety(segment_scores: Iterable[float], *, neutral: float | None = None) -> float:
    # A route is only as safe as its worst segment.
    scores = [float(score) for score in segment_scores]
    if not scores:
        return float(settings.neutral_safety_score if neutral is None else neutral)
    return min(scores)
