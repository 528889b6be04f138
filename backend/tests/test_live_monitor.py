from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from network_fixtures import COORDS, T0, T0_S, scenario_planner, scenario_request
from saferoute.engine_errors import InvalidSessionStateError, NoPathFoundError, SessionNotFoundError
from saferoute.live_monitor import LiveMonitor
from saferoute.models import EventRecord, LatLng, OverlayRecord, PlanRequest
from saferoute.overlays import EventStore, OverlayStore
from saferoute.planner import RoutePlanner
from saferoute.route_store import PlannedRoute

# About 600 m north of A, well off the A-C-D polyline but still inside coverage.
OFF_ROUTE = (28.6054, 77.2000)


def _planned(planner: RoutePlanner | None = None) -> PlannedRoute:
    outcome = (planner or scenario_planner()).plan(scenario_request())
    assert outcome.best is not None
    return PlannedRoute(
        route=outcome.best,
        profile=outcome.profile,
        destination=outcome.destination,
        request_id=outcome.request_id,
    )


def _failing_replanner(calls: list[PlanRequest]):
    def replan(request: PlanRequest):
        calls.append(request)
        raise NoPathFoundError("nothing better")

    return replan


def _active_session(monitor: LiveMonitor, planned: PlannedRoute | None = None) -> str:
    view = monitor.start_session(planned or _planned())
    assert view.state == "planned"
    view = monitor.confirm_departure(view.session_id, at_s=T0_S)
    assert view.state == "active"
    return view.session_id


def _monitor(replanner, **kwargs) -> LiveMonitor:
    return LiveMonitor(
        replanner=replanner,
        overlays=kwargs.pop("overlays", OverlayStore()),
        events=kwargs.pop("events", EventStore()),
        clock=lambda: T0_S,
    )


def test_start_session_records_commit() -> None:
    monitor = _monitor(_failing_replanner([]))
    planned = _planned()
    view = monitor.start_session(planned)

    assert view.session_id.startswith("ts_")
    assert view.route == planned.route
    assert [e.kind for e in view.events] == ["committed"]
    assert monitor.active_count() == 1


def test_unknown_session_raises() -> None:
    monitor = _monitor(_failing_replanner([]))
    with pytest.raises(SessionNotFoundError):
        monitor.get("ts_missing")


def test_departing_twice_is_an_invalid_transition() -> None:
    monitor = _monitor(_failing_replanner([]))
    session_id = _active_session(monitor)

    with pytest.raises(InvalidSessionStateError) as excinfo:
        monitor.confirm_departure(session_id, at_s=T0_S + 10)
    assert excinfo.value.reason_code == "invalid_session_state"
    assert excinfo.value.details["state"] == "active"


def test_deviation_triggers_reroute_from_current_position() -> None:
    calls: list[PlanRequest] = []
    states: list[str] = []
    holder: dict[str, LiveMonitor] = {}

    def replan(request: PlanRequest):
        calls.append(request)
        monitor = holder["monitor"]
        states.extend(s.state for s in monitor._sessions.values())
        raise NoPathFoundError("nothing better")

    monitor = _monitor(replan)
    holder["monitor"] = monitor
    session_id = _active_session(monitor)

    view = monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + 60)

    assert len(calls) == 1
    assert (calls[0].origin.lat, calls[0].origin.lon) == OFF_ROUTE
    assert (calls[0].destination.lat, calls[0].destination.lon) == COORDS["D"]
    assert calls[0].departure_time == T0 + timedelta(seconds=60)
    assert states == ["rerouting"]
    assert view.state == "active"
    kinds = [e.kind for e in view.events]
    assert kinds[-2:] == ["reroute_started", "delay_notice"]
    assert view.events[-2].detail["trigger"] == "deviation"
    assert view.events[-1].detail["reason"] == "no_path_found"


def test_reroute_cooldown_limits_attempts() -> None:
    calls: list[PlanRequest] = []
    monitor = _monitor(_failing_replanner(calls))
    session_id = _active_session(monitor)

    for offset in (60, 90, 120):
        monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + offset)
    assert len(calls) == 1
    cooldowns = [e for e in monitor.get(session_id).events if e.detail.get("reason") == "cooldown"]
    assert len(cooldowns) == 2

    monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + 200)
    assert len(calls) == 2


def test_on_route_position_does_not_reroute() -> None:
    calls: list[PlanRequest] = []
    monitor = _monitor(_failing_replanner(calls))
    session_id = _active_session(monitor)

    view = monitor.update_position(session_id, lat=COORDS["A"][0], lon=COORDS["A"][1], at_s=T0_S + 30)

    assert calls == []
    assert view.last_position == COORDS["A"]
    assert [e.kind for e in view.events] == ["committed", "departed"]


def test_reported_delay_reroutes_to_earlier_arrival() -> None:
    planner = scenario_planner()
    monitor = _monitor(planner.plan)
    planned = _planned(planner)
    session_id = _active_session(monitor, planned)

    view = monitor.report_delay(session_id, edge_id="CD", delay_s=600.0, at_s=T0_S + 60)

    assert view.state == "active"
    rerouted = view.events[-1]
    assert rerouted.kind == "rerouted"
    assert rerouted.detail["trigger"] == "delay"
    assert rerouted.detail["previous_route_id"] == planned.route.id
    assert rerouted.detail["saved_s"] == pytest.approx(540.0)
    assert view.route.id != planned.route.id
    assert view.route.arrival_at_s == pytest.approx(T0_S + 60 + 3_000)


def test_reroute_without_improvement_keeps_route() -> None:
    planner = scenario_planner()
    monitor = _monitor(planner.plan)
    planned = _planned(planner)
    session_id = _active_session(monitor, planned)

    view = monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + 60)

    assert view.route == planned.route
    notice = view.events[-1]
    assert notice.kind == "delay_notice"
    assert notice.detail["reason"] == "no_faster_route"


def test_reaching_destination_completes_session() -> None:
    calls: list[PlanRequest] = []
    monitor = _monitor(_failing_replanner(calls))
    session_id = _active_session(monitor)

    view = monitor.update_position(session_id, lat=COORDS["D"][0], lon=COORDS["D"][1] - 0.0005, at_s=T0_S + 2_900)

    assert view.state == "completed"
    assert view.events[-1].kind == "arrived"
    assert monitor.active_count() == 0
    # Terminal sessions ignore further input.
    after = monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + 3_000)
    assert after.state == "completed"
    assert calls == []
    with pytest.raises(InvalidSessionStateError):
        monitor.cancel(session_id)


def test_out_of_order_positions_are_ignored() -> None:
    calls: list[PlanRequest] = []
    monitor = _monitor(_failing_replanner(calls))
    session_id = _active_session(monitor)

    monitor.update_position(session_id, lat=COORDS["A"][0], lon=COORDS["A"][1], at_s=T0_S + 100)
    view = monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + 50)

    assert view.last_position == COORDS["A"]
    assert calls == []


def test_cancel_abandons_session() -> None:
    monitor = _monitor(_failing_replanner([]))
    session_id = _active_session(monitor)

    view = monitor.cancel(session_id)
    assert view.state == "abandoned"
    assert view.events[-1].detail == {"reason": "cancelled"}
    # Cancelling again is a no-op.
    assert monitor.cancel(session_id).events == view.events


def test_sweep_abandons_silent_sessions_then_forgets_them() -> None:
    monitor = _monitor(_failing_replanner([]))
    session_id = _active_session(monitor)

    assert monitor.sweep_timeouts(now_s=T0_S + 600) == []
    assert monitor.sweep_timeouts(now_s=T0_S + 901) == [session_id]
    view = monitor.get(session_id)
    assert view.state == "abandoned"
    assert view.events[-1].detail == {"reason": "session_timeout"}

    monitor.sweep_timeouts(now_s=T0_S + 2_000)
    with pytest.raises(SessionNotFoundError):
        monitor.get(session_id)


def test_sweep_does_not_wait_for_a_reroute_in_progress() -> None:
    entered = threading.Event()
    release = threading.Event()

    def stuck_replan(request: PlanRequest):
        entered.set()
        release.wait(timeout=5.0)
        raise NoPathFoundError("nothing better")

    monitor = _monitor(stuck_replan)
    session_id = _active_session(monitor)
    worker = threading.Thread(
        target=monitor.update_position,
        args=(session_id,),
        kwargs={"lat": OFF_ROUTE[0], "lon": OFF_ROUTE[1], "at_s": T0_S + 60},
    )
    worker.start()
    try:
        assert entered.wait(timeout=5.0)
        started = time.monotonic()
        # Long past the timeout, but the rerouting session is left for the next sweep.
        assert monitor.sweep_timeouts(now_s=T0_S + 5_000) == []
        assert time.monotonic() - started < 0.5
    finally:
        release.set()
        worker.join(timeout=5.0)

    assert not worker.is_alive()
    assert monitor.sweep_timeouts(now_s=T0_S + 5_000) == [session_id]


def test_concurrent_position_updates_are_serialized_per_session() -> None:
    calls: list[PlanRequest] = []
    guard = threading.Lock()
    in_flight = [0]
    overlapped = [False]

    def slow_replan(request: PlanRequest):
        with guard:
            calls.append(request)
            in_flight[0] += 1
            overlapped[0] = overlapped[0] or in_flight[0] > 1
        time.sleep(0.05)
        with guard:
            in_flight[0] -= 1
        raise NoPathFoundError("nothing better")

    monitor = _monitor(slow_replan)
    session_id = _active_session(monitor)
    barrier = threading.Barrier(8)

    def send(offset: int) -> None:
        barrier.wait(timeout=5.0)
        monitor.update_position(session_id, lat=OFF_ROUTE[0], lon=OFF_ROUTE[1], at_s=T0_S + 60 + offset)

    workers = [threading.Thread(target=send, args=(i,)) for i in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10.0)

    assert not any(worker.is_alive() for worker in workers)
    # Every update lands inside one cooldown window, so only one replan runs.
    assert len(calls) == 1
    assert not overlapped[0]
    session = monitor._sessions[session_id]
    assert session.last_position_at_s == T0_S + 67
    assert session.state == "active"
    times = [e.at_s for e in monitor.get(session_id).events]
    assert times == sorted(times)
    assert [e.kind for e in session.events].count("reroute_started") == 1


def test_ingest_overlay_ignores_older_updates() -> None:
    overlays = OverlayStore()
    monitor = _monitor(_failing_replanner([]), overlays=overlays)

    accepted, ignored = monitor.ingest_overlay(
        [
            OverlayRecord(edge_id="BD", as_of=T0 + timedelta(minutes=5), delay_s=300.0),
            OverlayRecord(edge_id="BD", as_of=T0, delay_s=900.0),
        ]
    )

    assert (accepted, ignored) == (1, 1)
    overlay = overlays.get("BD")
    assert overlay is not None
    assert overlay.delay_s == 300.0


def test_ingest_events_replaces_the_active_set() -> None:
    events = EventStore()
    monitor = _monitor(_failing_replanner([]), events=events)
    record = EventRecord(
        event_id="match-day",
        center=LatLng(lat=COORDS["B"][0], lon=COORDS["B"][1]),
        radius_m=300.0,
        starts_at=T0,
        ends_at=T0 + timedelta(hours=4),
        delay_s=600.0,
    )

    assert monitor.ingest_events([record]) == 1
    assert [e.event_id for e in events.active_at(T0_S + 60)] == ["match-day"]
    assert monitor.ingest_events([]) == 0
    assert len(events) == 0
