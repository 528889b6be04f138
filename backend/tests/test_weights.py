from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from saferoute.models import OverlayRecord, PreferenceWeights
from saferoute.network import Edge
from saferoute.overlays import overlay_from_record
from saferoute.search import Leg
from saferoute.weights import PRESET_WEIGHTS, WeightVector, edge_weight, from_preferences, path_cost, predicted_delay_s

from network_fixtures import uniform_safety


def _bus(**kwargs) -> Edge:
    base = {"id": "bus-1", "source": "A", "target": "B", "mode": "bus", "distance_m": 2_000.0, "fare": 15.0, "ride_s": 600.0}
    base.update(kwargs)
    return Edge(**base)


def _overlay(*, delay_s: float = 0.0, safety: float | None = None):
    return overlay_from_record(
        OverlayRecord(
            edge_id="bus-1",
            as_of=datetime(2026, 3, 2, 8, 0, tzinfo=UTC),
            delay_s=delay_s,
            safety=None if safety is None else uniform_safety(safety),
        )
    )


def test_presets_match_published_coefficients() -> None:
    assert PRESET_WEIGHTS["fastest"].as_tuple() == (0.5, 0.1, 0.2, 0.1, 0.1)
    assert PRESET_WEIGHTS["safest"].as_tuple() == (0.2, 0.1, 0.5, 0.1, 0.1)
    assert PRESET_WEIGHTS["balanced"].as_tuple() == (0.3, 0.1, 0.3, 0.2, 0.1)


def test_edge_weight_formula_units() -> None:
    w = WeightVector(time=1.0, distance=1.0, safety=1.0, fare=1.0, transfer=1.0)
    # 10 min ride + 2 min wait + 3 min delay, 2 km, safety 80, fare 15, transfer penalty 10
    cost = edge_weight(_bus(), w, overlay=_overlay(delay_s=180.0, safety=80.0), prev_mode="metro", wait_s=120.0)
    assert cost == pytest.approx(15.0 + 2.0 + 20.0 + 15.0 + 10.0)


def test_transfer_penalty_only_on_mode_change() -> None:
    w = WeightVector(time=0.0, distance=0.0, safety=0.0, fare=0.0, transfer=1.0)
    assert edge_weight(_bus(), w, prev_mode=None) == 0.0
    assert edge_weight(_bus(), w, prev_mode="bus") == 0.0
    assert edge_weight(_bus(), w, prev_mode="walk") == pytest.approx(10.0)


def test_missing_overlay_uses_neutral_safety() -> None:
    w = WeightVector(time=0.0, distance=0.0, safety=1.0, fare=0.0, transfer=0.0)
    assert edge_weight(_bus(), w) == pytest.approx(50.0)
    assert edge_weight(_bus(), w, overlay=_overlay()) == pytest.approx(50.0)


def test_negative_delay_is_clamped() -> None:
    assert predicted_delay_s(_overlay(delay_s=-300.0)) == 0.0
    assert predicted_delay_s(_overlay(delay_s=-300.0), 500.0) == 200.0
    w = WeightVector(time=1.0, distance=0.0, safety=0.0, fare=0.0, transfer=0.0)
    assert edge_weight(_bus(), w, overlay=_overlay(delay_s=-900.0)) == pytest.approx(10.0)


def test_edge_weight_is_never_negative() -> None:
    zero = WeightVector(time=0.0, distance=0.0, safety=0.0, fare=0.0, transfer=0.0)
    assert edge_weight(_bus(), zero, overlay=_overlay(safety=100.0)) == 0.0


def test_from_preferences_defaults_to_balanced_and_accepts_greek_names() -> None:
    assert from_preferences(None) == PRESET_WEIGHTS["balanced"]
    weights = PreferenceWeights.model_validate({"alpha": 2, "beta": 0, "gamma": 1, "delta": 0.5, "epsilon": 3})
    assert from_preferences(weights).as_tuple() == (2.0, 0.0, 1.0, 0.5, 3.0)


def test_negative_weights_are_rejected() -> None:
    with pytest.raises(ValidationError):
        PreferenceWeights(time=-1, distance=0, safety=0, fare=0, transfer=0)


def test_path_cost_reevaluates_legs_under_other_weights() -> None:
    bus = _bus()
    walk = _bus(id="walk-1", mode="walk", fare=0.0, ride_s=300.0, distance_m=400.0)
    legs = (
        Leg(edge=bus, wait_s=60.0, depart_at_s=60.0, arrive_at_s=660.0, delay_s=0.0, safety_score=70.0, transfer=False),
        Leg(edge=walk, wait_s=0.0, depart_at_s=660.0, arrive_at_s=960.0, delay_s=0.0, safety_score=90.0, transfer=True),
    )
    time_only = WeightVector(time=1.0, distance=0.0, safety=0.0, fare=0.0, transfer=0.0)
    safety_only = WeightVector(time=0.0, distance=0.0, safety=1.0, fare=0.0, transfer=0.0)

    assert path_cost(legs, time_only) == pytest.approx(16.0)
    assert path_cost(legs, safety_only) == pytest.approx(40.0)
