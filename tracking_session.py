from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
import asyncio
import json
import secrets
import time

from access_gate import AccessGate, AllBuses, Capability, SingleBus
from fleet_simulator import BusState, FleetSimulator
from tracking_errors import Forbidden, NotFound, SessionClosed


# Per-subscriber queue bound; slow clients drop updates instead of growing memory
SUBSCRIBER_QUEUE_MAXSIZE = 10
# Sessions with no live subscriber are purged after this long without a request
DEFAULT_SESSION_IDLE_TTL_S = 900.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrackingSession:
    """A viewer's window onto the fleet, limited by its capability."""
    capability: Capability
    simulator: FleetSimulator
    last_snapshot_version: int = -1
    opened_at: datetime = field(default_factory=_utc_now)
    last_active: datetime = field(default_factory=_utc_now)
    closed: bool = False
    bus_missing: bool = False

    @classmethod
    def open(cls, credential: Any, gate: AccessGate, simulator: FleetSimulator) -> "TrackingSession":
        capability = gate.validate(credential, simulator.snapshot())
        return cls(capability=capability, simulator=simulator)

    @property
    def is_admin(self) -> bool:
        return isinstance(self.capability, AllBuses)

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosed()
        self.last_active = _utc_now()

    def visible(
        self,
        states: Tuple[BusState, ...],
        route_id: Optional[str] = None,
    ) -> Tuple[Tuple[BusState, ...], bool]:
        """Filter ``states`` by capability; returns ``(visible, bus_missing)``.

        Touches no session state, so feeds can render without moving the
        poll cursor.
        """
        capability = self.capability
        if isinstance(capability, AllBuses):
            visible, missing = states, False
        elif isinstance(capability, SingleBus):
            visible = tuple(s for s in states if s.id == capability.bus_id)
            missing = not visible
        else:
            raise TypeError(f"unknown capability {capability!r}")
        if route_id is not None:
            visible = tuple(s for s in visible if s.route_id == str(route_id))
        return visible, missing

    def view(self, route_id: Optional[str] = None) -> Tuple[BusState, ...]:
        self._ensure_open()
        version = self.simulator.version
        visible, missing = self.visible(self.simulator.snapshot(), route_id)
        if missing and not self.bus_missing:
            print(f"[session] bus {self.capability.bus_id} is no longer in the fleet")
        self.bus_missing = missing
        self.last_snapshot_version = version
        return visible

    def poll(self, route_id: Optional[str] = None) -> Optional[Tuple[BusState, ...]]:
        """Return a fresh view only if the fleet moved since the last one."""
        self._ensure_open()
        if self.simulator.version == self.last_snapshot_version:
            return None
        return self.view(route_id)

    def select_bus(self, bus_id: str) -> BusState:
        self._ensure_open()
        if not self.capability.permits(bus_id):
            raise Forbidden(f"bus {bus_id} is not visible to this session")
        return self.simulator.get_bus(bus_id)

    def close(self) -> None:
        self.closed = True


def encode_view(states: Tuple[BusState, ...], *, bus_missing: bool = False) -> str:
    data = {
        "ts": int(time.time() * 1000),
        "bus_missing": bus_missing,
        "buses": [s.to_dict() for s in states],
    }
    return f"data: {json.dumps(data)}\n\n"


class TrackingHub:
    """Registry of open sessions and their live feed subscribers.

    A session ends on an explicit close, when its last feed subscriber
    disconnects (``release``), or after ``idle_ttl_s`` with neither requests
    nor subscribers (``purge_idle``, run from the ticker). Queues of a closed
    session receive ``None`` so waiting feeds finish straight away.
    """

    def __init__(
        self,
        gate: AccessGate,
        simulator: FleetSimulator,
        *,
        idle_ttl_s: float = DEFAULT_SESSION_IDLE_TTL_S,
    ):
        self.gate = gate
        self.simulator = simulator
        self.idle_ttl_s = idle_ttl_s
        self._sessions: Dict[str, TrackingSession] = {}
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def open_session(self, credential: Any) -> Tuple[str, TrackingSession]:
        session = TrackingSession.open(credential, self.gate, self.simulator)
        session_id = secrets.token_urlsafe(16)
        self._sessions[session_id] = session
        print(f"[session] opened {session_id[:6]} capability={session.capability.to_dict()['kind']}")
        return session_id, session

    def get(self, session_id: str) -> TrackingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("tracking session not found")
        return session

    def close_session(self, session_id: str, reason: str = "closed") -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFound("tracking session not found")
        session.close()
        for q in self._subscribers.pop(session_id, set()):
            while True:
                try:
                    q.put_nowait(None)
                    break
                except asyncio.QueueFull:
                    q.get_nowait()
        print(f"[session] {reason} {session_id[:6]}")

    def sessions(self) -> List[Tuple[str, TrackingSession]]:
        return list(self._sessions.items())

    def subscribe(self, session_id: str) -> asyncio.Queue:
        self.get(session_id)
        q: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_MAXSIZE)
        self._subscribers.setdefault(session_id, set()).add(q)
        return q

    def unsubscribe(self, session_id: str, q: asyncio.Queue) -> None:
        subs = self._subscribers.get(session_id)
        if not subs:
            return
        subs.discard(q)
        if not subs:
            self._subscribers.pop(session_id, None)

    def release(self, session_id: str, q: asyncio.Queue) -> None:
        """Unsubscribe a feed and end the session once no feed is left."""
        self.unsubscribe(session_id, q)
        if session_id in self._sessions and not self.subscriber_count(session_id):
            self.close_session(session_id, reason="disconnected")

    def purge_idle(self, now: Optional[datetime] = None) -> List[str]:
        now = now or _utc_now()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if not self.subscriber_count(session_id)
            and (now - session.last_active).total_seconds() >= self.idle_ttl_s
        ]
        for session_id in expired:
            self.close_session(session_id, reason="expired")
        return expired

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def publish(self) -> int:
        """Push each subscribed session's view; returns the number of messages queued."""
        delivered = 0
        states = self.simulator.snapshot()
        for session_id, subs in list(self._subscribers.items()):
            session = self._sessions.get(session_id)
            if session is None or session.closed:
                continue
            visible, missing = session.visible(states)
            encoded = encode_view(visible, bus_missing=missing)
            for q in list(subs):
                try:
                    q.put_nowait(encoded)
                    delivered += 1
                except asyncio.QueueFull:
                    pass  # Drop update for slow clients
        return delivered


__all__ = ["TrackingSession", "TrackingHub", "encode_view"]
