from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from .engine_errors import PlanningTimeoutError, SearchCancelledError, StaleSnapshotError
from .logging_utils import log_event, log_warning
from .metrics_store import increment_counter
from .models import (
    LegPayload,
    PlanRequest,
    PlanResponse,
    PreferenceProfile,
    RouteMetrics,
    RoutePayload,
    from_epoch_s,
    to_epoch_s,
)
from .network import NETWORK_STORE, NetworkSnapshot, NetworkStore, bounded_subgraph, search_radius_for
from .overlays import EventStore, OverlayStore, conditions_for
from .ranking import NoQualifyingRoute, RankedRoutes, Route, assemble_routes
from .route_store import ROUTE_STORE, PlannedRoute, PlannedRouteStore
from .search import SearchLimits, search_candidate_paths
from .settings import settings
from .weights import PRESET_ORDER

MAX_PLAN_ATTEMPTS = 2


@dataclass(frozen=True)
class PlanOutcome:
    request_id: str
    snapshot_version: str
    snapshot_generation: int
    result: RankedRoutes | NoQualifyingRoute
    profile: PreferenceProfile
    destination: tuple[float, float]
    explored_states: int = 0

    @property
    def qualified(self) -> bool:
        return isinstance(self.result, RankedRoutes)

    @property
    def best(self) -> Route | None:
        if isinstance(self.result, RankedRoutes) and self.result.routes:
            return self.result.routes[0]
        return None


class RoutePlanner:
    """Runs one planning request end to end against a single network snapshot."""

    def __init__(
        self,
        *,
        network: NetworkStore,
        overlays: OverlayStore,
        events: EventStore,
        route_store: PlannedRouteStore | None = None,
        limits: SearchLimits | None = None,
        clock: Callable[[], float] = time.time,
        concurrency: int | None = None,
    ) -> None:
        self._network = network
        self._overlays = overlays
        self._events = events
        self._route_store = route_store
        self._limits = limits
        self._clock = clock
        self._semaphore = asyncio.Semaphore(int(concurrency or settings.planning_concurrency))
        # Reroutes run on worker threads, outside the event loop's semaphore.
        self._slots = threading.BoundedSemaphore(int(concurrency or settings.planning_concurrency))

    def plan(
        self,
        request: PlanRequest,
        *,
        cancel_event: threading.Event | None = None,
        request_id: str | None = None,
    ) -> PlanOutcome:
        request_id = request_id or uuid.uuid4().hex
        departure_at_s = to_epoch_s(request.departure_time) if request.departure_time else self._clock()
        should_cancel = cancel_event.is_set if cancel_event is not None else None
        t0 = time.perf_counter()

        for attempt in range(1, MAX_PLAN_ATTEMPTS + 1):
            snapshot = self._network.require()
            outcome = self._plan_on(
                snapshot,
                request,
                departure_at_s=departure_at_s,
                request_id=request_id,
                should_cancel=should_cancel,
            )
            current = self._network.current()
            if current is not None and current.generation == snapshot.generation:
                self._remember(outcome)
                increment_counter("plans_total")
                if not outcome.qualified:
                    increment_counter("plans_no_qualifying_route")
                log_event(
                    "plan_completed",
                    request_id=request_id,
                    snapshot_version=outcome.snapshot_version,
                    status="ok" if outcome.qualified else "no_qualifying_route",
                    attempt=attempt,
                    explored_states=outcome.explored_states,
                    duration_ms=round((time.perf_counter() - t0) * 1000.0, 2),
                )
                return outcome
            log_warning(
                "plan_snapshot_changed",
                request_id=request_id,
                attempt=attempt,
                planned_generation=snapshot.generation,
                current_generation=None if current is None else current.generation,
            )

        raise StaleSnapshotError(
            "network snapshot changed while planning",
            details={"request_id": request_id, "attempts": MAX_PLAN_ATTEMPTS},
        )

    def _plan_on(
        self,
        snapshot: NetworkSnapshot,
        request: PlanRequest,
        *,
        departure_at_s: float,
        request_id: str,
        should_cancel: Callable[[], bool] | None,
    ) -> PlanOutcome:
        origin = (request.origin.lat, request.origin.lon)
        destination = (request.destination.lat, request.destination.lon)
        subgraph = bounded_subgraph(
            snapshot,
            origin=origin,
            destination=destination,
            radius_m=search_radius_for(origin, destination),
            snap_radius_m=settings.coverage_radius_m,
        )
        conditions = conditions_for(subgraph, overlays=self._overlays, events=self._events, at_s=departure_at_s)
        k = int(request.profile.max_routes or settings.k_paths)
        explored = [0]
        paths = search_candidate_paths(
            subgraph,
            departure_at_s=departure_at_s,
            # Every preset runs even for small K so ranking picks among all of them.
            k=max(k, len(PRESET_ORDER)),
            conditions=conditions,
            limits=self._limits,
            should_cancel=should_cancel,
            explored_counter=explored,
        )
        result = assemble_routes(paths, profile=request.profile, snapshot=snapshot, k=k)
        return PlanOutcome(
            request_id=request_id,
            snapshot_version=snapshot.version,
            snapshot_generation=snapshot.generation,
            result=result,
            profile=request.profile,
            destination=destination,
            explored_states=explored[0],
        )

    def _remember(self, outcome: PlanOutcome) -> None:
        if self._route_store is None or not isinstance(outcome.result, RankedRoutes):
            return
        for route in outcome.result.routes:
            self._route_store.put(
                PlannedRoute(
                    route=route,
                    profile=outcome.profile,
                    destination=outcome.destination,
                    request_id=outcome.request_id,
                )
            )

    async def plan_async(self, request: PlanRequest, *, timeout_s: float | None = None) -> PlanOutcome:
        timeout = float(timeout_s or settings.planning_timeout_s)
        cancel_event = threading.Event()
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self.plan, request, cancel_event=cancel_event),
                    timeout=timeout,
                )
            except TimeoutError as exc:
                cancel_event.set()
                increment_counter("plans_timed_out")
                raise PlanningTimeoutError(timeout) from exc
            except asyncio.CancelledError:
                cancel_event.set()
                raise

    def plan_blocking(self, request: PlanRequest, *, timeout_s: float | None = None) -> PlanOutcome:
        """Bounded planning for callers already on a worker thread, such as live reroutes.

        Waits at most ``timeout_s`` for a planning slot, then cancels the search
        once the same budget has elapsed.
        """
        timeout = float(timeout_s or settings.planning_timeout_s)
        if not self._slots.acquire(timeout=timeout):
            increment_counter("plans_timed_out")
            raise PlanningTimeoutError(timeout)
        cancel_event = threading.Event()
        timer = threading.Timer(timeout, cancel_event.set)
        timer.daemon = True
        timer.start()
        try:
            return self.plan(request, cancel_event=cancel_event)
        except SearchCancelledError as exc:
            if not cancel_event.is_set():
                raise
            increment_counter("plans_timed_out")
            raise PlanningTimeoutError(timeout) from exc
        finally:
            timer.cancel()
            self._slots.release()


def route_payload(route: Route) -> RoutePayload:
    path = route.path
    return RoutePayload(
        id=route.id,
        rank=route.rank,
        label=route.label,
        score=route.score,
        pareto_optimal=route.pareto_optimal,
        snapshot_version=path.snapshot_version,
        metrics=RouteMetrics(
            total_time_s=round(path.total_time_s, 3),
            distance_km=round(path.distance_m / 1000.0, 4),
            fare=round(path.fare, 2),
            transfers=path.transfers,
            safety_score=round(route.safety_score, 3),
            weighted_cost=route.weighted_cost,
        ),
        segment_safety=[round(score, 3) for score in path.segment_safety],
        polyline=list(route.polyline),
        legs=[
            LegPayload(
                edge_id=leg.edge.id,
                mode=leg.edge.mode,
                from_node=leg.from_node,
                to_node=leg.to_node,
                depart_at=from_epoch_s(leg.depart_at_s),
                arrive_at=from_epoch_s(leg.arrive_at_s),
                wait_s=round(leg.wait_s, 3),
                ride_s=leg.edge.ride_s,
                delay_s=round(leg.delay_s, 3),
                distance_m=leg.edge.distance_m,
                fare=leg.edge.fare,
                safety_score=round(leg.safety_score, 3),
                transfer=leg.transfer,
                crowd_level=leg.crowd_level,
                verification_count=leg.edge.verification_count,
            )
            for leg in path.legs
        ],
        violations=list(route.violations),
    )


def plan_response(outcome: PlanOutcome) -> PlanResponse:
    if isinstance(outcome.result, NoQualifyingRoute):
        return PlanResponse(
            status="no_qualifying_route",
            request_id=outcome.request_id,
            snapshot_version=outcome.snapshot_version,
            candidates=[route_payload(route) for route in outcome.result.candidates],
            suggestions=list(outcome.result.suggestions),
        )
    return PlanResponse(
        status="ok",
        request_id=outcome.request_id,
        snapshot_version=outcome.snapshot_version,
        routes=[route_payload(route) for route in outcome.result.routes],
    )


def default_planner(*, overlays: OverlayStore, events: EventStore) -> RoutePlanner:
    return RoutePlanner(
        network=NETWORK_STORE,
        overlays=overlays,
        events=events,
        route_store=ROUTE_STORE,
    )
