"""
Access Gate

Turns a credential presented by a rider or an operator into a capability
describing which buses the viewer may observe.

Two kinds of credential are accepted:
- the operator admin code (compared case-insensitively) grants ``AllBuses``
- a ticket ID assigned to a bus grants ``SingleBus(bus_id)``

Ticket-to-bus assignments come from a ``TicketAssignments`` provider so the
issuing system can be swapped without touching the gate.

Example usage:
    gate = AccessGate("admin123", StaticTicketAssignments({"TCK001": "BUS001"}))
    capability = gate.validate("TCK001", simulator.snapshot())
    # Returns: SingleBus(bus_id="BUS001")
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Union
import secrets

from tracking_errors import CredentialNotRecognized


@dataclass(frozen=True)
class AllBuses:
    """Operator capability: every bus in the fleet is visible."""

    def permits(self, bus_id: str) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "all_buses", "bus_id": None, "admin": True}


@dataclass(frozen=True)
class SingleBus:
    """Ticket-holder capability: only the assigned bus is visible."""
    bus_id: str

    def permits(self, bus_id: str) -> bool:
        return str(bus_id) == self.bus_id

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "single_bus", "bus_id": self.bus_id, "admin": False}


Capability = Union[AllBuses, SingleBus]


class TicketAssignments(ABC):
    """
    Abstract source of ticket-to-bus assignments.

    A real deployment backs this with the ticket issuing system; the
    service ships with a static table loaded from configuration.
    """

    @abstractmethod
    def lookup(self, ticket_id: str) -> Optional[str]:
        """Return the bus assigned to ``ticket_id`` or None if unknown."""
        pass

    def describe(self) -> str:
        return type(self).__name__


class StaticTicketAssignments(TicketAssignments):
    def __init__(self, assignments: Optional[Mapping[str, str]] = None):
        self._assignments: Dict[str, str] = {}
        for ticket_id, bus_id in (assignments or {}).items():
            if not ticket_id or not bus_id:
                continue
            self._assignments[str(ticket_id).strip()] = str(bus_id).strip()

    @classmethod
    def from_entries(cls, entries: Iterable[Any]) -> "StaticTicketAssignments":
        """Build from ``[{"id": "TCK001", "bus_id": "BUS001"}, ...]``."""
        mapping: Dict[str, str] = {}
        for entry in entries or []:
            if not isinstance(entry, Mapping):
                continue
            ticket_id = entry.get("id") or entry.get("ticket_id")
            bus_id = entry.get("bus_id") or entry.get("busId")
            if ticket_id and bus_id:
                mapping[str(ticket_id)] = str(bus_id)
        return cls(mapping)

    def lookup(self, ticket_id: str) -> Optional[str]:
        return self._assignments.get(ticket_id)

    def describe(self) -> str:
        return f"static ({len(self._assignments)} tickets)"

    def __len__(self) -> int:
        return len(self._assignments)


class AccessGate:
    def __init__(self, admin_code: str, assignments: TicketAssignments):
        if not admin_code or not admin_code.strip():
            raise ValueError("admin_code must not be empty")
        self._admin_code = admin_code.strip().casefold()
        self.assignments = assignments

    def _is_admin_code(self, credential: str) -> bool:
        return secrets.compare_digest(
            credential.casefold().encode("utf-8"),
            self._admin_code.encode("utf-8"),
        )

    def validate(self, credential: Any, fleet_snapshot: Iterable[Any]) -> Capability:
        """Validate a credential against the current fleet.

        ``fleet_snapshot`` is any iterable of bus states exposing ``id``; a
        ticket only validates while its assigned bus is in the fleet.
        Raises CredentialNotRecognized otherwise.
        """
        if credential is None:
            raise CredentialNotRecognized()
        text = str(credential).strip()
        if not text:
            raise CredentialNotRecognized()

        if self._is_admin_code(text):
            print("[access] admin code accepted")
            return AllBuses()

        bus_id = self.assignments.lookup(text)
        if bus_id is None:
            print(f"[access] rejected unknown ticket {text!r}")
            raise CredentialNotRecognized()
        fleet_ids = {str(state.id) for state in fleet_snapshot}
        if bus_id not in fleet_ids:
            print(f"[access] ticket {text!r} assigned to {bus_id} which is not in the fleet")
            raise CredentialNotRecognized()
        print(f"[access] ticket {text!r} granted bus {bus_id}")
        return SingleBus(bus_id=bus_id)


__all__ = [
    "AllBuses",
    "SingleBus",
    "Capability",
    "TicketAssignments",
    "StaticTicketAssignments",
    "AccessGate",
]
