from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .engine_errors import EngineError, normalize_reason_code
from .live_monitor import LiveMonitor, SessionView
from .logging_utils import log_event, log_warning
from .metrics_store import metrics_snapshot, record_request
from .models import (
    DelayReport,
    EventIngestResponse,
    EventRecord,
    NetworkFeed,
    OverlayIngestResponse,
    OverlayRecord,
    PlanRequest,
    PlanResponse,
    PositionUpdate,
    SnapshotResponse,
    TrackingEventPayload,
    TrackingResponse,
    TrackingStartRequest,
    from_epoch_s,
    to_epoch_s,
)
from .network import NETWORK_STORE, build_snapshot, load_network_snapshot
from .overlays import EventStore, OverlayStore
from .planner import default_planner, plan_response, route_payload
from .route_store import ROUTE_STORE
from .settings import settings

OVERLAYS = OverlayStore()
EVENTS = EventStore()
PLANNER = default_planner(overlays=OVERLAYS, events=EVENTS)
MONITOR = LiveMonitor(replanner=PLANNER.plan_blocking, overlays=OVERLAYS, events=EVENTS)

_STATUS_BY_REASON: dict[str, int] = {
    "out_of_coverage": 422,
    "endpoints_coincide": 422,
    "no_path_found": 404,
    "search_state_budget_exceeded": 404,
    "search_deadline_exceeded": 404,
    "search_horizon_exceeded": 404,
    "session_not_found": 404,
    "route_not_found": 404,
    "invalid_session_state": 409,
    "stale_snapshot": 503,
    "network_unavailable": 503,
    "search_cancelled": 503,
    "planning_timeout": 504,
}


async def _sweep_sessions_forever() -> None:
    while True:
        await asyncio.sleep(settings.session_sweep_interval_s)
        await asyncio.to_thread(MONITOR.sweep_timeouts)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if NETWORK_STORE.current() is None:
        snapshot = load_network_snapshot()
        if snapshot is not None:
            NETWORK_STORE.swap(snapshot)
        else:
            log_warning("network_asset_missing", path=settings.network_asset_path)
    sweeper = asyncio.create_task(_sweep_sessions_forever())
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(title="SafeRoute planning engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: EngineError) -> HTTPException:
    reason_code = normalize_reason_code(exc.reason_code)
    return HTTPException(
        status_code=_STATUS_BY_REASON.get(reason_code, 500),
        detail={"reason_code": reason_code, "message": exc.message, "details": exc.details or {}},
    )


def _tracking_response(view: SessionView) -> TrackingResponse:
    return TrackingResponse(
        session_id=view.session_id,
        state=view.state,  # type: ignore[arg-type]
        route=route_payload(view.route),
        events=[
            TrackingEventPayload(kind=event.kind, at=from_epoch_s(event.at_s), detail=dict(event.detail))
            for event in view.events
        ],
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok" if NETWORK_STORE.current() is not None else "degraded"}


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return {
        **metrics_snapshot(),
        "route_store": ROUTE_STORE.snapshot(),
        "open_sessions": MONITOR.active_count(),
    }


@app.get("/network/status")
async def network_status() -> dict[str, object]:
    snapshot = NETWORK_STORE.current()
    if snapshot is None:
        return {"loaded": False, "overlay_count": len(OVERLAYS), "event_count": len(EVENTS)}
    return {
        "loaded": True,
        "version": snapshot.version,
        "generation": snapshot.generation,
        "source": snapshot.source,
        "built_at_utc": snapshot.built_at_utc,
        "node_count": len(snapshot.nodes),
        "edge_count": len(snapshot.edge_index),
        "overlay_count": len(OVERLAYS),
        "event_count": len(EVENTS),
    }


@app.post("/network/snapshot", response_model=SnapshotResponse)
async def publish_snapshot(feed: NetworkFeed) -> SnapshotResponse:
    t0 = time.perf_counter()
    snapshot = NETWORK_STORE.swap(await asyncio.to_thread(build_snapshot, feed))
    record_request("network_snapshot", duration_ms=(time.perf_counter() - t0) * 1000.0)
    return SnapshotResponse(
        version=snapshot.version,
        generation=snapshot.generation,
        node_count=len(snapshot.nodes),
        edge_count=len(snapshot.edge_index),
        dropped_edges=snapshot.dropped_edges,
    )


@app.post("/network/overlays", response_model=OverlayIngestResponse)
async def publish_overlays(records: list[OverlayRecord]) -> OverlayIngestResponse:
    accepted, ignored = MONITOR.ingest_overlay(records)
    return OverlayIngestResponse(accepted=accepted, ignored=ignored)


@app.post("/network/events", response_model=EventIngestResponse)
async def publish_events(records: list[EventRecord]) -> EventIngestResponse:
    return EventIngestResponse(active_events=MONITOR.ingest_events(records))


@app.post("/plan", response_model=PlanResponse)
async def plan(req: PlanRequest) -> PlanResponse:
    t0 = time.perf_counter()
    error = False
    try:
        outcome = await PLANNER.plan_async(req)
    except EngineError as e:
        error = True
        log_event("plan_failed", reason_code=e.reason_code, error_message=e.message)
        raise _http_error(e) from e
    finally:
        record_request("plan", duration_ms=(time.perf_counter() - t0) * 1000.0, error=error)
    return plan_response(outcome)


@app.post("/tracking", response_model=TrackingResponse)
async def start_tracking(req: TrackingStartRequest) -> TrackingResponse:
    try:
        planned = ROUTE_STORE.require(req.route_id)
    except EngineError as e:
        raise _http_error(e) from e
    return _tracking_response(MONITOR.start_session(planned))


@app.get("/tracking/{session_id}", response_model=TrackingResponse)
async def get_tracking(session_id: str) -> TrackingResponse:
    try:
        return _tracking_response(await asyncio.to_thread(MONITOR.get, session_id))
    except EngineError as e:
        raise _http_error(e) from e


@app.post("/tracking/{session_id}/depart", response_model=TrackingResponse)
async def confirm_departure(session_id: str) -> TrackingResponse:
    try:
        return _tracking_response(await asyncio.to_thread(MONITOR.confirm_departure, session_id))
    except EngineError as e:
        raise _http_error(e) from e


@app.post("/tracking/{session_id}/position", response_model=TrackingResponse)
async def post_position(session_id: str, update: PositionUpdate) -> TrackingResponse:
    t0 = time.perf_counter()
    try:
        # A reroute may run a full planning pass; keep it off the event loop.
        view = await asyncio.to_thread(
            MONITOR.update_position,
            session_id,
            lat=update.lat,
            lon=update.lon,
            at_s=to_epoch_s(update.timestamp),
        )
    except EngineError as e:
        raise _http_error(e) from e
    finally:
        record_request("tracking_position", duration_ms=(time.perf_counter() - t0) * 1000.0)
    return _tracking_response(view)


@app.post("/tracking/{session_id}/delay", response_model=TrackingResponse)
async def post_delay(session_id: str, report: DelayReport) -> TrackingResponse:
    try:
        view = await asyncio.to_thread(
            MONITOR.report_delay,
            session_id,
            edge_id=report.edge_id,
            delay_s=report.delay_s,
            at_s=to_epoch_s(report.timestamp),
        )
    except EngineError as e:
        raise _http_error(e) from e
    return _tracking_response(view)


@app.delete("/tracking/{session_id}", response_model=TrackingResponse)
async def cancel_tracking(session_id: str) -> TrackingResponse:
    try:
        return _tracking_response(await asyncio.to_thread(MONITOR.cancel, session_id))
    except EngineError as e:
        raise _http_error(e) from e
