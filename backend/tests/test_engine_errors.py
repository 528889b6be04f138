from __future__ import annotations

from saferoute.engine_errors import (
    FROZEN_REASON_CODES,
    EndpointsCoincideError,
    EngineError,
    NoPathFoundError,
    OutOfCoverageError,
    PlanningTimeoutError,
    RouteNotFoundError,
    SessionNotFoundError,
    StaleSnapshotError,
    normalize_reason_code,
)


def test_subclasses_carry_frozen_reason_codes() -> None:
    errors: list[EngineError] = [
        OutOfCoverageError("origin outside network"),
        EndpointsCoincideError("B", origin_snap_m=0.0, destination_snap_m=12.0),
        NoPathFoundError("horizon", reason_code="search_horizon_exceeded"),
        NoPathFoundError("unreachable"),
        NoPathFoundError("budget", reason_code="search_state_budget_exceeded"),
        StaleSnapshotError("changed"),
        PlanningTimeoutError(2.5),
        SessionNotFoundError("ts_1"),
        RouteNotFoundError("rt_1"),
    ]
    for err in errors:
        assert isinstance(err, ValueError)
        assert err.reason_code in FROZEN_REASON_CODES


def test_error_str_is_the_message() -> None:
    err = SessionNotFoundError("ts_abc")
    assert str(err) == "tracking session 'ts_abc' not found"
    assert err.details == {"session_id": "ts_abc"}


def test_normalize_reason_code_falls_back_for_unknown_codes() -> None:
    assert normalize_reason_code(" out_of_coverage ") == "out_of_coverage"
    assert normalize_reason_code("made_up") == "engine_fault"
    assert normalize_reason_code("", default="no_path_found") == "no_path_found"
