"""
Transit Live Tracking Service (FastAPI)

Purpose
=======
Simulate bus positions along fixed routes and serve them to riders and
operators. Riders present a ticket ID and only see their assigned bus;
operators present the admin code and see the whole fleet.

Key features
------------
- Route catalog loaded once at startup from config/routes.json.
- Fleet simulator advanced by a single background ticker.
- Ticket / admin-code access gate producing per-session capabilities.
- REST endpoints + Server-Sent Events (SSE) stream per tracking session.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import asyncio, os, json, time

from fastapi import Body, FastAPI, HTTPException, Request, Query
from fastapi.responses import JSONResponse, StreamingResponse

from access_gate import AccessGate, AllBuses
from fleet_config import (
    load_fleet,
    load_route_catalog,
    load_simulation_config,
    load_ticket_assignments,
)
from fleet_simulator import FleetSimulator, SimulationConfig
from route_catalog import RouteCatalog
from sim_ticker import SimulationTicker
from tracking_errors import Forbidden, TrackingError
from tracking_session import TrackingHub, TrackingSession, encode_view

# ---------------------------
# Config
# ---------------------------
DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
ROUTES_CONFIG_PATH = Path(os.getenv("ROUTES_CONFIG_PATH", "config/routes.json"))
FLEET_CONFIG_PATH = Path(os.getenv("FLEET_CONFIG_PATH", "config/fleet.json"))
TICKETS_CONFIG_PATH = Path(os.getenv("TICKETS_CONFIG_PATH", "config/tickets.json"))
SSE_KEEPALIVE_S = float(os.getenv("SSE_KEEPALIVE_S", "15"))
SESSION_IDLE_TTL_S = float(os.getenv("SESSION_IDLE_TTL_S", "900"))


@dataclass
class TrackingEngine:
    """Everything the endpoints need, built once per process."""
    config: SimulationConfig
    catalog: RouteCatalog
    simulator: FleetSimulator
    gate: AccessGate
    hub: TrackingHub
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_tick_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def on_tick(self, now: datetime) -> None:
        arrivals = self.simulator.tick(now)
        self.last_tick_at = now
        for event in arrivals:
            if event.direction_flipped:
                print(
                    f"[fleet] {event.bus_id} reached terminus {event.waypoint_name} "
                    f"on {event.route_id}, reversing"
                )
        self.hub.publish()
        self.hub.purge_idle(now)


def build_engine(
    config: Optional[SimulationConfig] = None,
    *,
    data_dirs: Optional[List[Path]] = None,
) -> TrackingEngine:
    config = config or load_simulation_config()
    dirs = data_dirs if data_dirs is not None else DATA_DIRS
    catalog = load_route_catalog(ROUTES_CONFIG_PATH, data_dirs=dirs)
    buses = load_fleet(catalog, FLEET_CONFIG_PATH, data_dirs=dirs)
    assignments = load_ticket_assignments(TICKETS_CONFIG_PATH, data_dirs=dirs)
    simulator = FleetSimulator(catalog, buses, config)
    gate = AccessGate(config.admin_code, assignments)
    hub = TrackingHub(gate, simulator, idle_ttl_s=SESSION_IDLE_TTL_S)
    print(
        f"[app] engine ready routes={len(catalog)} buses={len(simulator)} "
        f"tickets={assignments.describe()}"
    )
    return TrackingEngine(config=config, catalog=catalog, simulator=simulator, gate=gate, hub=hub)


engine = build_engine()

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Transit Live Tracking")


@app.on_event("startup")
async def start_ticker() -> None:
    current = engine

    def tick(now: datetime) -> None:
        try:
            current.on_tick(now)
            current.last_error = None
        except Exception as exc:
            current.last_error = str(exc)
            raise

    ticker = SimulationTicker(current.config.tick_interval_s, [tick])
    ticker.start()
    app.state.ticker = ticker


@app.on_event("shutdown")
async def stop_ticker() -> None:
    ticker = getattr(app.state, "ticker", None)
    if ticker is not None:
        await ticker.stop()
        app.state.ticker = None


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError):
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


def _session_payload(session_id: str, session: TrackingSession) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "capability": session.capability.to_dict(),
        "opened_at": session.opened_at.isoformat().replace("+00:00", "Z"),
        "snapshot_version": session.last_snapshot_version,
    }


def _require_admin_session(session_id: Optional[str]) -> TrackingSession:
    if not session_id:
        raise HTTPException(status_code=401, detail="tracking session required")
    session = engine.hub.get(session_id)
    if not isinstance(session.capability, AllBuses):
        raise Forbidden("admin access required")
    return session


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    last_tick = engine.last_tick_at
    return {
        "ok": not bool(engine.last_error),
        "last_error": engine.last_error,
        "last_tick": last_tick.isoformat().replace("+00:00", "Z") if last_tick else None,
        "fleet_version": engine.simulator.version,
        "buses": len(engine.simulator),
        "sessions": len(engine.hub.sessions()),
        "simulation": engine.config.to_dict(),
    }


# ---------------------------
# REST: Routes
# ---------------------------
@app.get("/v1/routes")
async def list_routes():
    snapshot = engine.simulator.snapshot()
    items = []
    for route in engine.catalog.list_routes():
        item = route.to_dict()
        item["active_buses"] = sum(1 for s in snapshot if s.route_id == route.id)
        items.append(item)
    return {"coordinate_order": engine.catalog.coordinate_order, "routes": items}


@app.get("/v1/routes/{route_id}")
async def route_info(route_id: str):
    route = engine.catalog.get_route(route_id)
    return route.to_dict()


# ---------------------------
# REST: Tracking sessions
# ---------------------------
@app.post("/api/tracking/sessions")
async def open_tracking_session(payload: dict[str, Any] = Body(...)):
    credential = payload.get("credential")
    if credential is None:
        credential = payload.get("ticket_id")
    session_id, session = engine.hub.open_session(credential)
    return {"ok": True, **_session_payload(session_id, session)}


@app.get("/api/tracking/sessions/{session_id}")
async def tracking_session_info(session_id: str):
    session = engine.hub.get(session_id)
    return _session_payload(session_id, session)


@app.get("/api/tracking/sessions/{session_id}/buses")
async def tracking_session_view(session_id: str, route_id: Optional[str] = Query(None)):
    session = engine.hub.get(session_id)
    states = session.view(route_id)
    return {
        "snapshot_version": session.last_snapshot_version,
        "bus_missing": session.bus_missing,
        "buses": [s.to_dict() for s in states],
    }


@app.get("/api/tracking/sessions/{session_id}/buses/{bus_id}")
async def tracking_session_select(session_id: str, bus_id: str):
    session = engine.hub.get(session_id)
    return {"bus": session.select_bus(bus_id).to_dict()}


@app.delete("/api/tracking/sessions/{session_id}")
async def close_tracking_session(session_id: str):
    engine.hub.close_session(session_id)
    return {"ok": True}


# ---------------------------
# REST: Operations dashboard
# ---------------------------
@app.get("/api/admin/fleet/summary")
async def fleet_summary(session_id: Optional[str] = Query(None)):
    _require_admin_session(session_id)
    return engine.simulator.fleet_summary()


@app.get("/api/dispatch/fleet/diagnostics")
async def fleet_diagnostics(session_id: Optional[str] = Query(None)):
    _require_admin_session(session_id)
    simulator = engine.simulator
    return {
        "fleet_version": simulator.version,
        "recent_arrivals": [e.to_dict() for e in simulator.recent_arrivals],
        "recent_faults": list(simulator.recent_faults),
        "subscribers": engine.hub.subscriber_count(),
    }


# ---------------------------
# SSE: Tracking feed
# ---------------------------
@app.get("/v1/stream/tracking/{session_id}")
async def stream_tracking(session_id: str):
    hub = engine.hub
    session = hub.get(session_id)

    async def gen():
        q = hub.subscribe(session_id)
        try:
            # Send current state immediately on connect
            yield encode_view(session.view(), bus_missing=session.bus_missing)
            while not session.closed:
                try:
                    encoded = await asyncio.wait_for(q.get(), timeout=SSE_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if encoded is None:
                    break
                yield encoded
            yield f"event: closed\ndata: {json.dumps({'ts': int(time.time() * 1000)})}\n\n"
        finally:
            # Ends the session too once its last feed is gone
            hub.release(session_id, q)
    return StreamingResponse(gen(), media_type="text/event-stream")
