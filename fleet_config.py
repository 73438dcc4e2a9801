from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import json
import os

from access_gate import StaticTicketAssignments
from fleet_simulator import (
    DEFAULT_ADMIN_CODE,
    DEFAULT_ARRIVAL_THRESHOLD,
    DEFAULT_SPEED,
    DEFAULT_TICK_INTERVAL_MS,
    Bus,
    SimulationConfig,
    bus_from_config,
)
from route_catalog import RouteCatalog


DEFAULT_ROUTES_CONFIG_PATH = Path("config/routes.json")
DEFAULT_FLEET_CONFIG_PATH = Path("config/fleet.json")
DEFAULT_TICKETS_CONFIG_PATH = Path("config/tickets.json")
DEFAULT_DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]

# Demo network used when no route file is deployed (Kano city centre).
DEFAULT_ROUTES: Dict[str, Any] = {
    "coordinate_order": "latlon",
    "routes": [
        {
            "id": "RT001",
            "name": "City Center ↔ Airport Terminal",
            "color": "#2563eb",
            "waypoints": [
                {"name": "City Center", "position": [12.0002, 8.5900]},
                {"name": "Downtown Station", "position": [12.0022, 8.5920]},
                {"name": "Central Plaza", "position": [12.0061, 8.5958]},
                {"name": "Train Station", "position": [12.0110, 8.5991]},
                {"name": "Airport Terminal", "position": [12.0195, 8.6043]},
            ],
        },
        {
            "id": "RT002",
            "name": "University ↔ Shopping District",
            "color": "#16a34a",
            "waypoints": [
                {"name": "University Campus", "position": [12.0122, 8.6020]},
                {"name": "Library Square", "position": [12.0098, 8.6064]},
                {"name": "Residential Area", "position": [12.0071, 8.6102]},
                {"name": "Shopping District", "position": [12.0040, 8.6139]},
            ],
        },
        {
            "id": "RT003",
            "name": "Hospital ↔ Business Park",
            "color": "#dc2626",
            "waypoints": [
                {"name": "Medical Center", "position": [11.9922, 8.5820]},
                {"name": "Hospital District", "position": [11.9950, 8.5778]},
                {"name": "Metro Junction", "position": [11.9987, 8.5741]},
                {"name": "Business Park", "position": [12.0031, 8.5712]},
            ],
        },
    ],
}

DEFAULT_FLEET: Dict[str, Any] = {
    "buses": [
        {
            "id": "BUS001",
            "route_id": "RT001",
            "waypoint_index": 1,
            "capacity": 40,
            "occupied": 28,
            "driver": "Ahmed Kano",
            "status": "On Time",
        },
        {
            "id": "BUS002",
            "route_id": "RT002",
            "waypoint_index": 0,
            "capacity": 35,
            "occupied": 15,
            "driver": "Fatima Abdullahi",
            "status": "On Time",
        },
        {
            "id": "BUS003",
            "route_id": "RT003",
            "waypoint_index": 0,
            "capacity": 45,
            "occupied": 32,
            "driver": "Ibrahim Musa",
            "status": "Delayed",
        },
    ]
}

DEFAULT_TICKETS: Dict[str, Any] = {
    "tickets": [
        {"id": "TCK001", "bus_id": "BUS001"},
        {"id": "TCK002", "bus_id": "BUS002"},
        {"id": "TCK003", "bus_id": "BUS003"},
    ]
}


def _read_data_file(
    path: Path,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> Tuple[Optional[Path], Optional[str]]:
    """Read a data file from one of the configured data directories."""
    if data_dirs is None:
        data_dirs = DEFAULT_DATA_DIRS
    path_obj = Path(path)
    candidates: List[Path]
    if path_obj.is_absolute():
        candidates = [path_obj]
    else:
        candidates = [base / path_obj for base in data_dirs]
        candidates.append(path_obj)
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            return candidate, candidate.read_text()
        except OSError as exc:
            print(f"[config] failed to read data file {candidate}: {exc}")
            return candidate, None
    return None, None


def _load_json_document(
    path: Path,
    default: Dict[str, Any],
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> Any:
    resolved_path, raw_text = _read_data_file(path, data_dirs=data_dirs)
    if not raw_text:
        print(f"[config] {path} not found, using bundled defaults")
        return default
    try:
        return json.loads(raw_text)
    except json.JSONDecodeError as exc:
        print(f"[config] failed to parse {resolved_path or path}: {exc}; using bundled defaults")
        return default


def load_route_catalog(
    path: Path = DEFAULT_ROUTES_CONFIG_PATH,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> RouteCatalog:
    """Load the route catalog. Malformed route data raises InvalidRouteDefinition."""
    raw = _load_json_document(path, DEFAULT_ROUTES, data_dirs=data_dirs)
    catalog = RouteCatalog.from_config(raw)
    print(f"[config] loaded {len(catalog)} routes order={catalog.coordinate_order}")
    return catalog


def load_fleet(
    catalog: RouteCatalog,
    path: Path = DEFAULT_FLEET_CONFIG_PATH,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> List[Bus]:
    raw = _load_json_document(path, DEFAULT_FLEET, data_dirs=data_dirs)
    entries = raw.get("buses") if isinstance(raw, dict) else raw
    buses: List[Bus] = []
    seen: Set[str] = set()
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict):
            continue
        try:
            bus = bus_from_config(entry, catalog)
        except Exception as exc:
            print(f"[config] skipping bus entry {entry.get('id')!r}: {exc}")
            continue
        if bus.id in seen:
            print(f"[config] skipping duplicate bus entry {bus.id!r}")
            continue
        seen.add(bus.id)
        buses.append(bus)
    return buses


def load_ticket_assignments(
    path: Path = DEFAULT_TICKETS_CONFIG_PATH,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> StaticTicketAssignments:
    raw = _load_json_document(path, DEFAULT_TICKETS, data_dirs=data_dirs)
    entries = raw.get("tickets") if isinstance(raw, dict) else raw
    return StaticTicketAssignments.from_entries(entries if isinstance(entries, list) else [])


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        print(f"[config] ignoring non-integer {name}={value!r}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        print(f"[config] ignoring non-numeric {name}={value!r}")
        return default


def load_simulation_config() -> SimulationConfig:
    """Build the simulation config from the environment."""
    return SimulationConfig(
        tick_interval_ms=_env_int("TICK_INTERVAL_MS", DEFAULT_TICK_INTERVAL_MS),
        speed=_env_float("SIM_SPEED", DEFAULT_SPEED),
        arrival_threshold=_env_float("ARRIVAL_THRESHOLD", DEFAULT_ARRIVAL_THRESHOLD),
        admin_code=os.getenv("ADMIN_CODE") or DEFAULT_ADMIN_CODE,
        occupancy_drift=os.getenv("OCCUPANCY_DRIFT", "").lower() in {"1", "true", "yes", "on"},
    )


__all__ = [
    "DEFAULT_ROUTES",
    "DEFAULT_FLEET",
    "DEFAULT_TICKETS",
    "load_route_catalog",
    "load_fleet",
    "load_ticket_assignments",
    "load_simulation_config",
]
