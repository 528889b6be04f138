from __future__ import annotations

import pytest

from saferoute.pareto import dominates, pareto_filter


def test_dominates_requires_strict_improvement_somewhere() -> None:
    assert dominates((1.0, 2.0, 3.0), (1.0, 2.0, 4.0))
    assert not dominates((1.0, 2.0, 3.0), (1.0, 2.0, 3.0))
    assert not dominates((1.0, 5.0), (2.0, 4.0))


def test_dominates_rejects_mismatched_dimensions() -> None:
    with pytest.raises(ValueError):
        dominates((1.0,), (1.0, 2.0))


def test_pareto_filter_keeps_non_dominated_in_input_order() -> None:
    routes = [
        {"id": "slow-cheap", "v": (50.0, 10.0, 15.0)},
        {"id": "fast-unsafe", "v": (25.0, 30.0, 60.0)},
        {"id": "worse", "v": (55.0, 12.0, 20.0)},
        {"id": "tie", "v": (50.0, 10.0, 15.0)},
    ]
    kept = pareto_filter(routes, key=lambda r: r["v"])
    assert [r["id"] for r in kept] == ["slow-cheap", "fast-unsafe", "tie"]
