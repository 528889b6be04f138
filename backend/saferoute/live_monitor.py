from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from .engine_errors import EngineError, InvalidSessionStateError, SessionNotFoundError
from .geo import haversine_m, nearest_segment
from .logging_utils import log_event, log_warning
from .metrics_store import increment_counter
from .models import (
    EventRecord,
    LatLng,
    OverlayRecord,
    PlanRequest,
    PreferenceProfile,
    from_epoch_s,
)
from .overlays import EventStore, OverlayStore
from .planner import PlanOutcome
from .ranking import Route
from .route_store import PlannedRoute
from .settings import settings

Replanner = Callable[[PlanRequest], PlanOutcome]

OPEN_STATES = frozenset({"planned", "active", "rerouting"})
TERMINAL_STATES = frozenset({"completed", "abandoned"})


@dataclass(frozen=True)
class TrackingEvent:
    kind: str
    at_s: float
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingSession:
    id: str
    route: Route
    destination: tuple[float, float]
    profile: PreferenceProfile
    created_at_s: float
    last_update_s: float
    state: str = "planned"
    last_position: tuple[float, float] | None = None
    last_position_at_s: float | None = None
    last_reroute_attempt_s: float | None = None
    segment_delays: dict[str, float] = field(default_factory=dict)
    events: list[TrackingEvent] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)


@dataclass(frozen=True)
class SessionView:
    """Read-only copy of a session, safe to hand out after the lock is released."""

    session_id: str
    state: str
    route: Route
    events: tuple[TrackingEvent, ...]
    last_position: tuple[float, float] | None = None


@dataclass(frozen=True)
class _Assessment:
    deviation_m: float
    observed_delay_s: float
    reasons: tuple[str, ...]


class LiveMonitor:
    """Owns every tracking session and the only write path into edge overlays."""

    def __init__(
        self,
        *,
        replanner: Replanner,
        overlays: OverlayStore,
        events: EventStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._replanner = replanner
        self._overlays = overlays
        self._events = events
        self._clock = clock
        self._lock = Lock()
        self._sessions: dict[str, TrackingSession] = {}

    # -- session registry --------------------------------------------------

    def _session(self, session_id: str) -> TrackingSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def _view(session: TrackingSession) -> SessionView:
        return SessionView(
            session_id=session.id,
            state=session.state,
            route=session.route,
            events=tuple(session.events),
            last_position=session.last_position,
        )

    @staticmethod
    def _record(session: TrackingSession, kind: str, at_s: float, **detail: Any) -> None:
        session.events.append(TrackingEvent(kind=kind, at_s=at_s, detail=detail))

    def start_session(self, planned: PlannedRoute) -> SessionView:
        now = self._clock()
        session = TrackingSession(
            id="ts_" + uuid.uuid4().hex[:20],
            route=planned.route,
            destination=planned.destination,
            profile=planned.profile,
            created_at_s=now,
            last_update_s=now,
        )
        self._record(session, "committed", now, route_id=planned.route.id)
        with self._lock:
            self._sessions[session.id] = session
        increment_counter("sessions_started")
        log_event("session_started", session_id=session.id, route_id=planned.route.id)
        return self._view(session)

    def get(self, session_id: str) -> SessionView:
        session = self._session(session_id)
        with session.lock:
            return self._view(session)

    def active_count(self) -> int:
        with self._lock:
            sessions = tuple(self._sessions.values())
        return sum(1 for session in sessions if session.state in OPEN_STATES)

    # -- state transitions -------------------------------------------------

    def confirm_departure(self, session_id: str, *, at_s: float | None = None) -> SessionView:
        session = self._session(session_id)
        now = self._clock() if at_s is None else at_s
        with session.lock:
            if session.state != "planned":
                raise InvalidSessionStateError(session_id, session.state, "depart")
            session.state = "active"
            session.last_update_s = max(session.last_update_s, now)
            self._record(session, "departed", now)
            log_event("session_departed", session_id=session_id)
            return self._view(session)

    def cancel(self, session_id: str) -> SessionView:
        session = self._session(session_id)
        now = self._clock()
        with session.lock:
            if session.state == "completed":
                raise InvalidSessionStateError(session_id, session.state, "cancel")
            if session.state != "abandoned":
                session.state = "abandoned"
                self._record(session, "abandoned", now, reason="cancelled")
                log_event("session_abandoned", session_id=session_id, reason="cancelled")
            return self._view(session)

    def update_position(self, session_id: str, *, lat: float, lon: float, at_s: float) -> SessionView:
        session = self._session(session_id)
        with session.lock:
            if session.state in TERMINAL_STATES:
                return self._view(session)
            if session.last_position_at_s is not None and at_s < session.last_position_at_s:
                log_warning(
                    "position_out_of_order",
                    session_id=session_id,
                    at_s=at_s,
                    last_position_at_s=session.last_position_at_s,
                )
                return self._view(session)
            session.last_position = (lat, lon)
            session.last_position_at_s = at_s
            session.last_update_s = max(session.last_update_s, at_s)
            if session.state != "active":
                return self._view(session)

            destination = session.route.polyline[-1] if session.route.polyline else session.destination
            if haversine_m(lat, lon, destination[0], destination[1]) <= settings.arrival_tolerance_m:
                session.state = "completed"
                self._record(session, "arrived", at_s)
                increment_counter("sessions_completed")
                log_event("session_completed", session_id=session_id)
                return self._view(session)

            self._evaluate(session, at_s)
            return self._view(session)

    def report_delay(self, session_id: str, *, edge_id: str, delay_s: float, at_s: float) -> SessionView:
        session = self._session(session_id)
        with session.lock:
            if session.state in TERMINAL_STATES:
                return self._view(session)
            session.segment_delays[edge_id] = max(0.0, float(delay_s))
            if session.state == "active":
                self._evaluate(session, at_s)
            return self._view(session)

    def sweep_timeouts(self, now_s: float | None = None) -> list[str]:
        """Abandon sessions silent for longer than the session timeout; drop long-finished ones.

        A session whose lock is held, for example by a reroute in progress, is
        left for the next sweep.
        """
        now = self._clock() if now_s is None else now_s
        timeout = float(settings.session_timeout_s)
        with self._lock:
            sessions = tuple(self._sessions.values())
        abandoned: list[str] = []
        forget: list[str] = []
        for session in sessions:
            if not session.lock.acquire(blocking=False):
                continue
            try:
                idle = now - session.last_update_s
                if session.state in OPEN_STATES and idle > timeout:
                    session.state = "abandoned"
                    session.last_update_s = now
                    self._record(session, "abandoned", now, reason="session_timeout")
                    abandoned.append(session.id)
                    log_event("session_abandoned", session_id=session.id, reason="session_timeout", idle_s=idle)
                elif session.state in TERMINAL_STATES and idle > timeout:
                    forget.append(session.id)
            finally:
                session.lock.release()
        if forget:
            with self._lock:
                for session_id in forget:
                    self._sessions.pop(session_id, None)
        if abandoned:
            increment_counter("sessions_timed_out", len(abandoned))
        return abandoned

    # -- rerouting ---------------------------------------------------------

    def _assess(self, session: TrackingSession, at_s: float) -> _Assessment:
        route = session.route
        legs = route.path.legs
        if session.last_position is not None and len(route.polyline) >= 2:
            seg_idx, deviation_m = nearest_segment(
                lat=session.last_position[0],
                lon=session.last_position[1],
                polyline=route.polyline,
            )
        else:
            seg_idx, deviation_m = 0, 0.0
        seg_idx = max(0, min(seg_idx, len(legs) - 1)) if legs else 0

        reported = max((session.segment_delays.get(leg.edge.id, 0.0) for leg in legs[seg_idx:]), default=0.0)
        lateness = at_s - legs[seg_idx].arrive_at_s if legs else 0.0
        observed = max(0.0, reported, lateness)

        reasons: list[str] = []
        if observed > settings.reroute_delay_threshold_s:
            reasons.append("delay")
        if deviation_m > settings.reroute_deviation_m:
            reasons.append("deviation")
        return _Assessment(deviation_m=deviation_m, observed_delay_s=observed, reasons=tuple(reasons))

    def _evaluate(self, session: TrackingSession, at_s: float) -> None:
        assessment = self._assess(session, at_s)
        if not assessment.reasons:
            return
        reason = "+".join(assessment.reasons)
        last_attempt = session.last_reroute_attempt_s
        if last_attempt is not None and at_s - last_attempt < settings.reroute_cooldown_s:
            self._record(
                session,
                "delay_notice",
                at_s,
                reason="cooldown",
                trigger=reason,
                observed_delay_s=round(assessment.observed_delay_s, 1),
            )
            return
        self._reroute(session, at_s, assessment, reason)

    def _reroute(self, session: TrackingSession, at_s: float, assessment: _Assessment, trigger: str) -> None:
        session.last_reroute_attempt_s = at_s
        session.state = "rerouting"
        self._record(session, "reroute_started", at_s, trigger=trigger)
        increment_counter("reroute_attempts")

        origin = session.last_position
        if origin is None:
            origin = session.route.polyline[0] if session.route.polyline else session.destination
        projected_arrival_s = session.route.arrival_at_s + assessment.observed_delay_s
        request = PlanRequest(
            origin=LatLng(lat=origin[0], lon=origin[1]),
            destination=LatLng(lat=session.destination[0], lon=session.destination[1]),
            departure_time=from_epoch_s(at_s),
            profile=session.profile,
        )
        try:
            try:
                outcome = self._replanner(request)
            except EngineError as exc:
                self._record(session, "delay_notice", at_s, reason=exc.reason_code, trigger=trigger)
                log_warning("reroute_failed", session_id=session.id, reason_code=exc.reason_code, trigger=trigger)
                return
            best = outcome.best
            if best is None:
                self._record(session, "delay_notice", at_s, reason="no_qualifying_route", trigger=trigger)
                return
            if best.arrival_at_s <= projected_arrival_s:
                previous = session.route.id
                session.route = best
                session.segment_delays.clear()
                self._record(
                    session,
                    "rerouted",
                    at_s,
                    trigger=trigger,
                    previous_route_id=previous,
                    route_id=best.id,
                    saved_s=round(projected_arrival_s - best.arrival_at_s, 1),
                )
                increment_counter("reroutes_applied")
                log_event("session_rerouted", session_id=session.id, route_id=best.id, trigger=trigger)
            else:
                self._record(
                    session,
                    "delay_notice",
                    at_s,
                    reason="no_faster_route",
                    trigger=trigger,
                    projected_arrival_at=from_epoch_s(projected_arrival_s).isoformat(),
                )
        finally:
            session.state = "active"

    # -- collaborator feeds ------------------------------------------------

    def ingest_overlay(self, records: Iterable[OverlayRecord]) -> tuple[int, int]:
        accepted = 0
        ignored = 0
        for record in records:
            if self._overlays.apply(record):
                accepted += 1
            else:
                ignored += 1
        if ignored:
            log_warning("overlay_updates_ignored", ignored=ignored, accepted=accepted)
        return accepted, ignored

    def ingest_events(self, records: Iterable[EventRecord]) -> int:
        count = self._events.replace(records)
        log_event("event_windows_replaced", count=count)
        return count

