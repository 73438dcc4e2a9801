import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from access_gate import AccessGate, AllBuses, SingleBus, StaticTicketAssignments  # noqa: E402
from fleet_simulator import Bus, FleetSimulator, SimulationConfig  # noqa: E402
from route_catalog import RouteCatalog, build_route  # noqa: E402
from tracking_errors import (  # noqa: E402
    CredentialNotRecognized,
    Forbidden,
    NotFound,
    SessionClosed,
)
from tracking_session import TrackingHub, TrackingSession, encode_view  # noqa: E402


BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _setup():
    routes = [
        build_route("R1", "One", "", [{"name": "A", "position": [0, 0]}, {"name": "B", "position": [1, 0]}]),
        build_route("R2", "Two", "", [{"name": "C", "position": [0, 1]}, {"name": "D", "position": [1, 1]}]),
    ]
    catalog = RouteCatalog(routes)
    buses = [
        Bus(id="BUS001", route_id="R1", position=(0.0, 0.0), waypoint_index=0, capacity=40, occupied=28),
        Bus(id="BUS002", route_id="R2", position=(0.0, 1.0), waypoint_index=0, capacity=35, occupied=15),
        Bus(id="BUS003", route_id="R2", position=(1.0, 1.0), waypoint_index=1, capacity=45, occupied=32),
    ]
    simulator = FleetSimulator(catalog, buses, SimulationConfig(speed=0.25, arrival_threshold=0.01))
    gate = AccessGate(
        "admin123",
        StaticTicketAssignments({"TCK001": "BUS001", "TCK002": "BUS002", "TCK003": "BUS003"}),
    )
    return simulator, gate


def test_admin_session_sees_whole_fleet():
    simulator, gate = _setup()
    session = TrackingSession.open("ADMIN123", gate, simulator)

    assert isinstance(session.capability, AllBuses)
    assert len(session.view()) == len(simulator)
    assert [s.id for s in session.view(route_id="R2")] == ["BUS002", "BUS003"]


def test_ticket_session_only_sees_its_bus():
    simulator, gate = _setup()
    session = TrackingSession.open("TCK001", gate, simulator)

    assert session.capability == SingleBus("BUS001")
    for step in range(5):
        simulator.tick(BASE + timedelta(seconds=step))
        assert [s.id for s in session.view()] == ["BUS001"]
    assert session.view(route_id="R2") == ()


def test_open_with_unknown_credential_fails():
    simulator, gate = _setup()
    with pytest.raises(CredentialNotRecognized):
        TrackingSession.open("nope", gate, simulator)


def test_view_is_idempotent_between_ticks():
    simulator, gate = _setup()
    session = TrackingSession.open("admin123", gate, simulator)
    simulator.tick(BASE)

    assert session.view() == session.view()


def test_removed_bus_yields_empty_view_and_is_reported():
    simulator, gate = _setup()
    session = TrackingSession.open("TCK002", gate, simulator)
    simulator.remove_bus("BUS002")

    assert session.view() == ()
    assert session.bus_missing is True
    with pytest.raises(NotFound):
        session.select_bus("BUS002")


def test_single_bus_session_cannot_select_other_buses():
    simulator, gate = _setup()
    session = TrackingSession.open("TCK001", gate, simulator)

    assert session.select_bus("BUS001").id == "BUS001"
    with pytest.raises(Forbidden):
        session.select_bus("BUS002")


def test_admin_can_select_any_bus_but_not_unknown_ones():
    simulator, gate = _setup()
    session = TrackingSession.open("admin123", gate, simulator)

    assert session.select_bus("BUS003").route_id == "R2"
    with pytest.raises(NotFound):
        session.select_bus("BUS999")


def test_poll_only_returns_after_fleet_moves():
    simulator, gate = _setup()
    session = TrackingSession.open("admin123", gate, simulator)

    assert session.poll() is not None
    assert session.poll() is None
    simulator.tick(BASE)
    fresh = session.poll()
    assert fresh is not None and fresh[0].position == (0.25, 0.0)
    assert session.last_snapshot_version == simulator.version


def test_closing_a_session_leaves_the_simulator_alone():
    simulator, gate = _setup()
    session = TrackingSession.open("TCK001", gate, simulator)
    version = simulator.version
    snapshot = simulator.snapshot()

    session.close()

    assert simulator.version == version
    assert simulator.snapshot() is snapshot
    with pytest.raises(SessionClosed):
        session.view()


def test_hub_publishes_filtered_views_to_subscribers():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    admin_id, _ = hub.open_session("admin123")
    rider_id, _ = hub.open_session("TCK003")
    admin_q = hub.subscribe(admin_id)
    rider_q = hub.subscribe(rider_id)

    simulator.tick(BASE)
    assert hub.publish() == 2

    admin_msg = json.loads(admin_q.get_nowait()[len("data: "):])
    rider_msg = json.loads(rider_q.get_nowait()[len("data: "):])
    assert [b["id"] for b in admin_msg["buses"]] == ["BUS001", "BUS002", "BUS003"]
    assert [b["id"] for b in rider_msg["buses"]] == ["BUS003"]
    assert rider_msg["bus_missing"] is False


def test_cancelling_one_subscription_does_not_affect_others():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    first_id, _ = hub.open_session("TCK001")
    second_id, _ = hub.open_session("TCK002")
    first_q = hub.subscribe(first_id)
    second_q = hub.subscribe(second_id)

    hub.unsubscribe(first_id, first_q)
    hub.close_session(first_id)
    hub.publish()

    assert first_q.empty()
    assert second_q.qsize() == 1
    assert hub.subscriber_count() == 1
    with pytest.raises(NotFound):
        hub.get(first_id)
    with pytest.raises(NotFound):
        hub.close_session(first_id)


def test_slow_subscribers_drop_updates_instead_of_blocking():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    session_id, _ = hub.open_session("admin123")
    q = hub.subscribe(session_id)

    for step in range(q.maxsize + 5):
        simulator.tick(BASE + timedelta(seconds=step))
        hub.publish()

    assert q.full()
    assert q.qsize() == q.maxsize


def test_subscriber_queue_can_be_awaited():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    session_id, _ = hub.open_session("TCK001")

    async def main():
        q = hub.subscribe(session_id)
        simulator.tick(BASE)
        hub.publish()
        return await asyncio.wait_for(q.get(), timeout=1)

    encoded = asyncio.run(main())
    assert encoded.startswith("data: ") and encoded.endswith("\n\n")


def test_encode_view_shape():
    simulator, _ = _setup()
    payload = json.loads(encode_view(simulator.snapshot()[:1], bus_missing=True)[len("data: "):])
    assert payload["bus_missing"] is True
    bus = payload["buses"][0]
    assert bus["id"] == "BUS001"
    assert bus["occupancy_level"] == "medium"
    assert bus["status"] == "On Time"
    assert bus["next_stop"] == "B"


def test_feed_publish_leaves_the_poll_cursor_alone():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    session_id, session = hub.open_session("TCK001")
    session.view()
    q = hub.subscribe(session_id)

    simulator.tick(BASE)
    hub.publish()

    assert q.qsize() == 1
    fresh = session.poll()
    assert fresh is not None and fresh[0].position == (0.25, 0.0)


def test_last_feed_disconnecting_ends_the_session():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    session_id, session = hub.open_session("admin123")
    first_q = hub.subscribe(session_id)
    second_q = hub.subscribe(session_id)

    hub.release(session_id, first_q)
    assert hub.get(session_id) is session

    hub.release(session_id, second_q)
    assert session.closed
    with pytest.raises(NotFound):
        hub.get(session_id)


def test_closing_a_session_wakes_its_feeds():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator)
    session_id, _ = hub.open_session("TCK002")
    q = hub.subscribe(session_id)
    for step in range(q.maxsize):
        simulator.tick(BASE + timedelta(seconds=step))
        hub.publish()

    hub.close_session(session_id)

    items = [q.get_nowait() for _ in range(q.qsize())]
    assert items[-1] is None
    assert hub.subscriber_count() == 0


def test_idle_sessions_without_feeds_are_purged():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator, idle_ttl_s=60)
    idle_id, idle = hub.open_session("TCK001")
    watched_id, watched = hub.open_session("TCK002")
    active_id, _ = hub.open_session("admin123")
    hub.subscribe(watched_id)
    now = datetime.now(timezone.utc)
    idle.last_active = now - timedelta(seconds=61)
    watched.last_active = now - timedelta(seconds=600)

    assert hub.purge_idle(now) == [idle_id]

    assert idle.closed
    assert {sid for sid, _ in hub.sessions()} == {watched_id, active_id}


def test_requests_keep_a_session_alive():
    simulator, gate = _setup()
    hub = TrackingHub(gate, simulator, idle_ttl_s=60)
    session_id, session = hub.open_session("TCK001")
    session.last_active = datetime.now(timezone.utc) - timedelta(seconds=120)

    session.view()

    assert hub.purge_idle() == []
    assert hub.get(session_id) is session
