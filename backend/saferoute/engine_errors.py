from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "out_of_coverage",
        "endpoints_coincide",
        "no_path_found",
        "no_qualifying_route",
        "stale_snapshot",
        "session_timeout",
        "session_not_found",
        "invalid_session_state",
        "route_not_found",
        "search_cancelled",
        "search_state_budget_exceeded",
        "search_deadline_exceeded",
        "search_horizon_exceeded",
        "network_unavailable",
        "planning_timeout",
        "engine_fault",
    }
)


@dataclass
class EngineError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class OutOfCoverageError(EngineError):
    """No graph node within radius of an endpoint. Fatal to the request."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="out_of_coverage", message=message, details=details)


class EndpointsCoincideError(EngineError):
    """Origin and destination snap to the same network node, so there is nothing to route."""

    def __init__(self, node_id: str, *, origin_snap_m: float, destination_snap_m: float) -> None:
        super().__init__(
            reason_code="endpoints_coincide",
            message="origin and destination resolve to the same network node",
            details={
                "node_id": node_id,
                "origin_snap_m": round(origin_snap_m, 1),
                "destination_snap_m": round(destination_snap_m, 1),
            },
        )


class NoPathFoundError(EngineError):
    """Graph is present but the destination is unreachable within the search limits."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        reason_code: str = "no_path_found",
    ) -> None:
        super().__init__(reason_code=reason_code, message=message, details=details)


class StaleSnapshotError(EngineError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="stale_snapshot", message=message, details=details)


class SearchCancelledError(EngineError):
    def __init__(self, message: str = "search cancelled", details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="search_cancelled", message=message, details=details)


class NetworkUnavailableError(EngineError):
    def __init__(self, message: str = "network snapshot not loaded", details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="network_unavailable", message=message, details=details)


class PlanningTimeoutError(EngineError):
    def __init__(self, timeout_s: float) -> None:
        super().__init__(
            reason_code="planning_timeout",
            message=f"planning did not finish within {timeout_s:g}s",
            details={"timeout_s": timeout_s},
        )


class SessionNotFoundError(EngineError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            reason_code="session_not_found",
            message=f"tracking session {session_id!r} not found",
            details={"session_id": session_id},
        )


class InvalidSessionStateError(EngineError):
    def __init__(self, session_id: str, state: str, action: str) -> None:
        super().__init__(
            reason_code="invalid_session_state",
            message=f"cannot {action} tracking session in state {state!r}",
            details={"session_id": session_id, "state": state, "action": action},
        )


class RouteNotFoundError(EngineError):
    def __init__(self, route_id: str) -> None:
        super().__init__(
            reason_code="route_not_found",
            message=f"planned route {route_id!r} not found or expired",
            details={"route_id": route_id},
        )


def normalize_reason_code(reason_code: str, *, default: str = "engine_fault") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
