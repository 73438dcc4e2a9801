import json
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import fleet_config  # noqa: E402
from fleet_simulator import DEFAULT_ADMIN_CODE, DEFAULT_SPEED, BusStatus, FleetSimulator  # noqa: E402
from tracking_errors import InvalidRouteDefinition  # noqa: E402


ROUTES = {
    "coordinate_order": "lonlat",
    "routes": [
        {
            "id": "L1",
            "name": "Loop",
            "color": "#000",
            "waypoints": [
                {"name": "North", "position": [8.5, 12.0]},
                {"name": "South", "position": [8.5, 11.9]},
            ],
        }
    ],
}


def _write(base: Path, name: str, payload) -> Path:
    path = base / "config" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return Path("config") / name


def test_loads_documents_from_data_dirs(tmp_path):
    routes_path = _write(tmp_path, "routes.json", ROUTES)
    fleet_path = _write(
        tmp_path,
        "fleet.json",
        {
            "buses": [
                {"id": "X1", "route_id": "L1", "waypoint_index": 1, "capacity": 20, "occupied": 4, "status": "Delayed"},
                {"id": "X2", "route_id": "nope", "waypoint_index": 0},
                {"id": "X3", "route_id": "L1", "waypoint_index": 7},
                "junk",
            ]
        },
    )
    tickets_path = _write(tmp_path, "tickets.json", {"tickets": [{"id": "P1", "bus_id": "X1"}]})

    catalog = fleet_config.load_route_catalog(routes_path, data_dirs=[tmp_path])
    buses = fleet_config.load_fleet(catalog, fleet_path, data_dirs=[tmp_path])
    tickets = fleet_config.load_ticket_assignments(tickets_path, data_dirs=[tmp_path])

    assert catalog.coordinate_order == "lonlat"
    assert [r.id for r in catalog.list_routes()] == ["L1"]
    assert [b.id for b in buses] == ["X1"]
    assert buses[0].position == (8.5, 11.9)
    assert buses[0].status is BusStatus.DELAYED
    assert tickets.lookup("P1") == "X1"


def test_missing_files_fall_back_to_bundled_network(tmp_path):
    missing = Path("missing") / "routes.json"
    catalog = fleet_config.load_route_catalog(missing, data_dirs=[tmp_path])
    buses = fleet_config.load_fleet(catalog, Path("missing") / "fleet.json", data_dirs=[tmp_path])
    tickets = fleet_config.load_ticket_assignments(Path("missing") / "tickets.json", data_dirs=[tmp_path])

    assert [r.id for r in catalog.list_routes()] == ["RT001", "RT002", "RT003"]
    assert [b.id for b in buses] == ["BUS001", "BUS002", "BUS003"]
    assert buses[0].waypoint_index == 1
    assert tickets.lookup("TCK003") == "BUS003"


def test_unparseable_json_falls_back_to_defaults(tmp_path):
    path = _write(tmp_path, "routes.json", "{not json")
    catalog = fleet_config.load_route_catalog(path, data_dirs=[tmp_path])
    assert len(catalog) == len(fleet_config.DEFAULT_ROUTES["routes"])


def test_malformed_route_data_is_rejected(tmp_path):
    bad = {
        "routes": [
            {"id": "B", "name": "Bad", "waypoints": [{"name": "Only", "position": [1, 1]}]},
        ]
    }
    path = _write(tmp_path, "routes.json", bad)
    with pytest.raises(InvalidRouteDefinition):
        fleet_config.load_route_catalog(path, data_dirs=[tmp_path])


def test_bundled_config_files_match_defaults():
    for name, default in (
        ("routes.json", fleet_config.DEFAULT_ROUTES),
        ("fleet.json", fleet_config.DEFAULT_FLEET),
        ("tickets.json", fleet_config.DEFAULT_TICKETS),
    ):
        assert json.loads((ROOT_DIR / "config" / name).read_text(encoding="utf-8")) == default


def test_simulation_config_from_environment(monkeypatch):
    monkeypatch.setenv("TICK_INTERVAL_MS", "500")
    monkeypatch.setenv("SIM_SPEED", "0.25")
    monkeypatch.setenv("ARRIVAL_THRESHOLD", "0.001")
    monkeypatch.setenv("ADMIN_CODE", "Depot42")
    monkeypatch.setenv("OCCUPANCY_DRIFT", "true")

    config = fleet_config.load_simulation_config()

    assert config.tick_interval_ms == 500
    assert config.tick_interval_s == 0.5
    assert config.speed == 0.25
    assert config.arrival_threshold == 0.001
    assert config.admin_code == "Depot42"
    assert config.occupancy_drift is True


def test_simulation_config_ignores_garbage_environment(monkeypatch):
    monkeypatch.setenv("TICK_INTERVAL_MS", "fast")
    monkeypatch.setenv("SIM_SPEED", "")
    monkeypatch.delenv("ADMIN_CODE", raising=False)
    monkeypatch.delenv("OCCUPANCY_DRIFT", raising=False)

    config = fleet_config.load_simulation_config()

    assert config.tick_interval_ms == 2000
    assert config.speed == DEFAULT_SPEED
    assert config.admin_code == DEFAULT_ADMIN_CODE
    assert config.occupancy_drift is False


def test_bad_fleet_rows_are_skipped_so_the_simulator_still_starts(tmp_path):
    routes_path = _write(tmp_path, "routes.json", ROUTES)
    fleet_path = _write(
        tmp_path,
        "fleet.json",
        {
            "buses": [
                {"id": "B1", "route_id": "L1", "capacity": 10, "occupied": 50},
                {"id": "B2", "route_id": "L1", "capacity": 10, "occupied": 3},
                {"id": "B2", "route_id": "L1", "waypoint_index": 1, "capacity": 12, "occupied": 1},
                {"id": "B3", "route_id": "L1", "capacity": -1},
            ]
        },
    )
    catalog = fleet_config.load_route_catalog(routes_path, data_dirs=[tmp_path])

    buses = fleet_config.load_fleet(catalog, fleet_path, data_dirs=[tmp_path])

    assert [(b.id, b.capacity) for b in buses] == [("B2", 10)]
    simulator = FleetSimulator(catalog, buses)
    assert [s.id for s in simulator.snapshot()] == ["B2"]
