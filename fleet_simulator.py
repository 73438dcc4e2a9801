from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple
import math
import random
import threading

from route_catalog import Route, RouteCatalog
from tracking_errors import NotFound


# Default tuning: a 2 s tick covering a tenth of a segment per step
DEFAULT_TICK_INTERVAL_MS = 2000
DEFAULT_SPEED = 0.1
DEFAULT_ARRIVAL_THRESHOLD = 0.0005
DEFAULT_ADMIN_CODE = "admin123"

# Occupancy bands used by the rider-facing views (percent of capacity)
OCCUPANCY_LOW_PCT = 50.0
OCCUPANCY_MEDIUM_PCT = 80.0
HIGH_DEMAND_PCT = 80.0

RECENT_EVENTS_MAXLEN = 100
RECENT_FAULTS_MAXLEN = 25


class Direction(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"

    def flipped(self) -> "Direction":
        return Direction.BACKWARD if self is Direction.FORWARD else Direction.FORWARD


class BusStatus(str, Enum):
    ON_TIME = "On Time"
    DELAYED = "Delayed"

    @classmethod
    def parse(cls, value: Any) -> "BusStatus":
        if isinstance(value, BusStatus):
            return value
        text = str(value or "").strip().lower().replace("_", " ")
        if text in {"delayed", "late"}:
            return cls.DELAYED
        return cls.ON_TIME


@dataclass
class SimulationConfig:
    """Tunable simulation parameters.

    ``speed`` is the fraction of the current segment covered per tick. It is
    coupled to ``arrival_threshold``: a threshold much smaller than one step
    only works because overshooting steps also count as arrivals.
    """
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    speed: float = DEFAULT_SPEED
    arrival_threshold: float = DEFAULT_ARRIVAL_THRESHOLD
    admin_code: str = DEFAULT_ADMIN_CODE
    occupancy_drift: bool = False

    def __post_init__(self) -> None:
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if not (0.0 < self.speed <= 1.0) or not math.isfinite(self.speed):
            raise ValueError("speed must be in (0, 1]")
        if self.arrival_threshold <= 0 or not math.isfinite(self.arrival_threshold):
            raise ValueError("arrival_threshold must be positive")
        if not self.admin_code or not self.admin_code.strip():
            raise ValueError("admin_code must not be empty")

    @property
    def tick_interval_s(self) -> float:
        return self.tick_interval_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        # admin_code stays out of anything served over HTTP
        return {
            "tick_interval_ms": self.tick_interval_ms,
            "speed": self.speed,
            "arrival_threshold": self.arrival_threshold,
            "occupancy_drift": self.occupancy_drift,
        }


@dataclass
class Bus:
    """Live record of a bus. Only FleetSimulator mutates these."""
    id: str
    route_id: str
    position: Tuple[float, float]
    waypoint_index: int
    direction: Direction = Direction.FORWARD
    occupied: int = 0
    capacity: int = 0
    driver_name: str = ""
    status: BusStatus = BusStatus.ON_TIME
    current_location_name: str = ""
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def occupancy_level(occupied: int, capacity: int) -> str:
    if capacity <= 0:
        return "low"
    pct = occupied / capacity * 100.0
    if pct < OCCUPANCY_LOW_PCT:
        return "low"
    if pct < OCCUPANCY_MEDIUM_PCT:
        return "medium"
    return "high"


@dataclass(frozen=True)
class BusState:
    """Immutable view of a bus handed to every consumer outside the simulator."""
    id: str
    route_id: str
    route_name: str
    position: Tuple[float, float]
    waypoint_index: int
    direction: Direction
    occupied: int
    capacity: int
    driver_name: str
    status: BusStatus
    current_location_name: str
    next_stop: str
    eta_seconds: Optional[float]
    last_update: datetime

    @property
    def occupancy_level(self) -> str:
        return occupancy_level(self.occupied, self.capacity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "route_id": self.route_id,
            "route_name": self.route_name,
            "position": [self.position[0], self.position[1]],
            "waypoint_index": self.waypoint_index,
            "direction": self.direction.value,
            "occupied": self.occupied,
            "capacity": self.capacity,
            "occupancy_level": self.occupancy_level,
            "driver": self.driver_name,
            "status": self.status.value,
            "current_location": self.current_location_name,
            "next_stop": self.next_stop,
            "eta_seconds": self.eta_seconds,
            "last_update": self.last_update.isoformat().replace("+00:00", "Z"),
        }


@dataclass(frozen=True)
class ArrivalEvent:
    bus_id: str
    route_id: str
    waypoint_index: int
    waypoint_name: str
    direction_flipped: bool
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus_id": self.bus_id,
            "route_id": self.route_id,
            "waypoint_index": self.waypoint_index,
            "waypoint_name": self.waypoint_name,
            "direction_flipped": self.direction_flipped,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


def target_index_for(waypoint_index: int, direction: Direction, n: int) -> int:
    if direction is Direction.FORWARD:
        return (waypoint_index + 1) % n
    return n - 1 if waypoint_index == 0 else waypoint_index - 1


def inward_direction(waypoint_index: int, direction: Direction, n: int) -> Direction:
    """Direction a bus at ``waypoint_index`` must face to head into the route."""
    if waypoint_index == 0:
        return Direction.FORWARD
    if waypoint_index == n - 1:
        return Direction.BACKWARD
    return direction


def _default_fault_reporter(bus_id: str, exc: Exception) -> None:
    print(f"[fleet] bus {bus_id} step failed, keeping previous state: {exc!r}")


class FleetSimulator:
    """
    Owns every bus and advances them along their routes one step per tick.

    Buses ping-pong between the route ends: the direction flips only when a
    bus snaps onto waypoint 0 or the last waypoint. Buses are independent, so
    the order in which they are stepped does not matter.

    Writers (``tick``, ``add_bus``, ``remove_bus``) serialize on a lock.
    Readers get the immutable snapshot published at the end of the last
    write and never take the lock.
    """

    def __init__(
        self,
        catalog: RouteCatalog,
        buses: Iterable[Bus] = (),
        config: Optional[SimulationConfig] = None,
        *,
        fault_reporter: Optional[Callable[[str, Exception], None]] = None,
        occupancy_rng: Optional[random.Random] = None,
    ):
        self.catalog = catalog
        self.config = config or SimulationConfig()
        self.fault_reporter = fault_reporter or _default_fault_reporter
        self._rng = occupancy_rng or random.Random()

        self._lock = threading.Lock()
        self._buses: Dict[str, Bus] = {}
        self._version = 0
        self._published: Tuple[int, Tuple[BusState, ...], Dict[str, BusState]] = (0, (), {})

        # Diagnostics
        self.recent_arrivals: Deque[ArrivalEvent] = deque(maxlen=RECENT_EVENTS_MAXLEN)
        self.recent_faults: Deque[Dict[str, Any]] = deque(maxlen=RECENT_FAULTS_MAXLEN)

        with self._lock:
            for bus in buses:
                self._insert_bus(bus)
            self._publish()

        print(
            f"[fleet] simulator initialized buses={len(self._buses)} "
            f"routes={len(self.catalog)} speed={self.config.speed} "
            f"threshold={self.config.arrival_threshold}"
        )

    # ------------------------------------------------------------------
    # Fleet membership
    # ------------------------------------------------------------------
    def add_bus(self, bus: Bus) -> BusState:
        with self._lock:
            self._insert_bus(bus)
            self._version += 1
            self._publish()
            return self._published[2][bus.id]

    def remove_bus(self, bus_id: str) -> None:
        with self._lock:
            if self._buses.pop(str(bus_id), None) is None:
                raise NotFound(f"bus {bus_id} not found")
            self._version += 1
            self._publish()
        print(f"[fleet] bus {bus_id} removed from fleet")

    def _insert_bus(self, bus: Bus) -> None:
        # Keep a private copy so callers cannot mutate fleet state.
        bus = replace(bus)
        if bus.id in self._buses:
            raise ValueError(f"duplicate bus id {bus.id}")
        route = self.catalog.get_route(bus.route_id)
        if not 0 <= bus.waypoint_index < len(route.waypoints):
            raise ValueError(
                f"bus {bus.id}: waypoint index {bus.waypoint_index} outside route {route.id}"
            )
        if bus.capacity < 0 or not 0 <= bus.occupied <= bus.capacity:
            raise ValueError(
                f"bus {bus.id}: occupancy {bus.occupied}/{bus.capacity} is invalid"
            )
        # Buses on a route end always face into the route.
        direction = inward_direction(bus.waypoint_index, bus.direction, len(route.waypoints))
        if direction is not bus.direction:
            print(
                f"[fleet] bus {bus.id} starts at route end {bus.waypoint_index}, "
                f"facing {direction.value}"
            )
            bus.direction = direction
        if bus.position is None or not all(math.isfinite(c) for c in bus.position):
            bus.position = route.waypoints[bus.waypoint_index].position
        if not bus.current_location_name:
            bus.current_location_name = route.waypoints[bus.waypoint_index].name
        self._buses[bus.id] = bus

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------
    def tick(self, now: Optional[datetime] = None) -> List[ArrivalEvent]:
        """Advance every bus by one step and return the arrivals it produced."""
        if now is None:
            now = datetime.now(timezone.utc)
        arrivals: List[ArrivalEvent] = []
        with self._lock:
            for bus in list(self._buses.values()):
                try:
                    event = self._step_bus(bus, now)
                except Exception as exc:
                    self.recent_faults.append(
                        {
                            "bus_id": bus.id,
                            "error": repr(exc),
                            "timestamp": now.isoformat().replace("+00:00", "Z"),
                        }
                    )
                    try:
                        self.fault_reporter(bus.id, exc)
                    except Exception as report_exc:
                        print(f"[fleet] fault reporter failed: {report_exc!r}")
                    continue
                if event is not None:
                    arrivals.append(event)
                    self.recent_arrivals.append(event)
            self._version += 1
            self._publish()
        return arrivals

    def _step_bus(self, bus: Bus, now: datetime) -> Optional[ArrivalEvent]:
        # Everything is computed into locals first so a failure part way
        # through leaves the bus untouched.
        route = self.catalog.get_route(bus.route_id)
        n = len(route.waypoints)
        target_index = target_index_for(bus.waypoint_index, bus.direction, n)
        current = route.waypoints[bus.waypoint_index].position
        target = route.waypoints[target_index].position

        dx = (target[0] - current[0]) * self.config.speed
        dy = (target[1] - current[1]) * self.config.speed
        new_pos = (bus.position[0] + dx, bus.position[1] + dy)
        if not all(math.isfinite(c) for c in new_pos):
            raise ValueError(f"non-finite position {new_pos}")

        remaining = math.hypot(target[0] - new_pos[0], target[1] - new_pos[1])
        overshot = ((target[0] - new_pos[0]) * dx + (target[1] - new_pos[1]) * dy) < 0

        occupied = bus.occupied
        if self.config.occupancy_drift and bus.capacity > 0:
            occupied = min(bus.capacity, max(0, occupied + self._rng.randint(-1, 1)))

        event: Optional[ArrivalEvent] = None
        if remaining < self.config.arrival_threshold or overshot:
            flip = target_index == 0 or target_index == n - 1
            event = ArrivalEvent(
                bus_id=bus.id,
                route_id=route.id,
                waypoint_index=target_index,
                waypoint_name=route.waypoints[target_index].name,
                direction_flipped=flip,
                timestamp=now,
            )
            bus.position = target
            bus.waypoint_index = target_index
            bus.current_location_name = event.waypoint_name
            if flip:
                bus.direction = bus.direction.flipped()
        else:
            bus.position = new_pos
        bus.occupied = occupied
        bus.last_update = now
        return event

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def _publish(self) -> None:
        states = tuple(self._state_for(bus) for bus in self._buses.values())
        self._published = (self._version, states, {s.id: s for s in states})

    def _state_for(self, bus: Bus) -> BusState:
        route = self.catalog.get_route(bus.route_id)
        n = len(route.waypoints)
        target_index = target_index_for(bus.waypoint_index, bus.direction, n)
        return BusState(
            id=bus.id,
            route_id=bus.route_id,
            route_name=route.display_name,
            position=(bus.position[0], bus.position[1]),
            waypoint_index=bus.waypoint_index,
            direction=bus.direction,
            occupied=bus.occupied,
            capacity=bus.capacity,
            driver_name=bus.driver_name,
            status=bus.status,
            current_location_name=bus.current_location_name,
            next_stop=route.waypoints[target_index].name,
            eta_seconds=self._eta_seconds(bus, route, target_index),
            last_update=bus.last_update,
        )

    def _eta_seconds(self, bus: Bus, route: Route, target_index: int) -> Optional[float]:
        current = route.waypoints[bus.waypoint_index].position
        target = route.waypoints[target_index].position
        step = math.hypot(target[0] - current[0], target[1] - current[1]) * self.config.speed
        if step <= 0 or not math.isfinite(step):
            return None
        remaining = math.hypot(target[0] - bus.position[0], target[1] - bus.position[1])
        if not math.isfinite(remaining):
            return None
        ticks = math.ceil(max(remaining - self.config.arrival_threshold, 0.0) / step)
        return max(ticks, 1) * self.config.tick_interval_s

    @property
    def version(self) -> int:
        return self._published[0]

    def snapshot(self) -> Tuple[BusState, ...]:
        return self._published[1]

    def get_bus(self, bus_id: str) -> BusState:
        state = self._published[2].get(str(bus_id))
        if state is None:
            raise NotFound(f"bus {bus_id} not found")
        return state

    def __len__(self) -> int:
        return len(self._published[1])

    def fleet_summary(self) -> Dict[str, Any]:
        """Per-route figures for the operations dashboard."""
        states = self.snapshot()
        routes: List[Dict[str, Any]] = []
        for route in self.catalog.list_routes():
            on_route = [s for s in states if s.route_id == route.id]
            capacity = sum(s.capacity for s in on_route)
            occupied = sum(s.occupied for s in on_route)
            pct = (occupied / capacity * 100.0) if capacity else 0.0
            routes.append(
                {
                    "id": route.id,
                    "name": route.display_name,
                    "active_buses": len(on_route),
                    "total_capacity": capacity,
                    "current_occupancy": occupied,
                    "occupancy_pct": round(pct, 1),
                    "delayed_buses": sum(1 for s in on_route if s.status is BusStatus.DELAYED),
                    "status": "High Demand" if pct >= HIGH_DEMAND_PCT else "Normal",
                }
            )
        on_time = sum(1 for s in states if s.status is BusStatus.ON_TIME)
        return {
            "version": self.version,
            "total_buses": len(states),
            "on_time_pct": round(on_time / len(states) * 100.0, 1) if states else None,
            "routes": routes,
        }


def bus_from_config(entry: Dict[str, Any], catalog: RouteCatalog) -> Bus:
    """Build a Bus from a ``config/fleet.json`` entry placed at a waypoint."""
    bus_id = entry.get("id")
    if not bus_id:
        raise ValueError("bus entry is missing an id")
    route = catalog.get_route(entry.get("route_id"))
    index = int(entry.get("waypoint_index") or 0)
    if not 0 <= index < len(route.waypoints):
        raise ValueError(f"bus {bus_id}: waypoint index {index} outside route {route.id}")
    direction_raw = str(entry.get("direction") or "forward").strip().lower()
    direction = Direction.BACKWARD if direction_raw == "backward" else Direction.FORWARD
    direction = inward_direction(index, direction, len(route.waypoints))
    occupied = int(entry.get("occupied") or 0)
    capacity = int(entry.get("capacity") or 0)
    if capacity < 0 or not 0 <= occupied <= capacity:
        raise ValueError(f"bus {bus_id}: occupancy {occupied}/{capacity} is invalid")
    return Bus(
        id=str(bus_id),
        route_id=route.id,
        position=route.waypoints[index].position,
        waypoint_index=index,
        direction=direction,
        occupied=occupied,
        capacity=capacity,
        driver_name=str(entry.get("driver") or ""),
        status=BusStatus.parse(entry.get("status")),
        current_location_name=route.waypoints[index].name,
    )


__all__ = [
    "Direction",
    "BusStatus",
    "SimulationConfig",
    "Bus",
    "BusState",
    "ArrivalEvent",
    "FleetSimulator",
    "bus_from_config",
    "inward_direction",
    "occupancy_level",
    "target_index_for",
]
