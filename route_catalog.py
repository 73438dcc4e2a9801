from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import math

from tracking_errors import InvalidRouteDefinition, NotFound


# Axis order of every position in a catalog. Which axis is latitude depends
# on the map provider consuming the positions, so it is fixed per catalog.
COORDINATE_ORDERS = ("latlon", "lonlat")
DEFAULT_COORDINATE_ORDER = "latlon"


@dataclass(frozen=True)
class Waypoint:
    """A named stop on a route."""
    name: str
    position: Tuple[float, float]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "position": [self.position[0], self.position[1]]}


@dataclass(frozen=True)
class Route:
    id: str
    display_name: str
    color_tag: str
    waypoints: Tuple[Waypoint, ...]

    @property
    def last_index(self) -> int:
        return len(self.waypoints) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "color": self.color_tag,
            "waypoints": [w.to_dict() for w in self.waypoints],
        }


def _parse_position(raw: Any, route_id: str, index: int) -> Tuple[float, float]:
    if isinstance(raw, Mapping):
        raw = raw.get("position")
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise InvalidRouteDefinition(
            f"route {route_id}: waypoint {index} needs a two-element position"
        )
    try:
        a = float(raw[0])
        b = float(raw[1])
    except (TypeError, ValueError):
        raise InvalidRouteDefinition(
            f"route {route_id}: waypoint {index} has a non-numeric position"
        ) from None
    return a, b


def build_route(
    route_id: Any,
    display_name: Optional[str],
    color_tag: Optional[str],
    waypoints: Iterable[Any],
) -> Route:
    """Validate raw route data and return an immutable Route.

    Waypoints may be ``Waypoint`` objects or mappings with ``name`` and
    ``position`` keys.
    """
    if route_id is None or not str(route_id).strip():
        raise InvalidRouteDefinition("route is missing an id")
    rid = str(route_id).strip()

    parsed: List[Waypoint] = []
    for idx, raw in enumerate(waypoints or []):
        if isinstance(raw, Waypoint):
            name = raw.name
            position = _parse_position(raw.position, rid, idx)
        elif isinstance(raw, Mapping):
            name = str(raw.get("name") or f"Stop {idx + 1}").strip()
            position = _parse_position(raw, rid, idx)
        else:
            raise InvalidRouteDefinition(f"route {rid}: waypoint {idx} is not an object")
        if not all(math.isfinite(c) for c in position):
            raise InvalidRouteDefinition(f"route {rid}: waypoint {idx} position is not finite")
        parsed.append(Waypoint(name=name, position=position))

    if len(parsed) < 2:
        raise InvalidRouteDefinition(
            f"route {rid}: needs at least 2 waypoints, got {len(parsed)}"
        )
    for idx in range(1, len(parsed)):
        if parsed[idx].position == parsed[idx - 1].position:
            raise InvalidRouteDefinition(
                f"route {rid}: waypoints {idx - 1} and {idx} share a position"
            )

    return Route(
        id=rid,
        display_name=(display_name or rid).strip(),
        color_tag=(color_tag or "").strip(),
        waypoints=tuple(parsed),
    )


class RouteCatalog:
    """Read-only set of routes, loaded once at startup."""

    def __init__(
        self,
        routes: Iterable[Route],
        coordinate_order: str = DEFAULT_COORDINATE_ORDER,
    ):
        order = (coordinate_order or "").strip().lower()
        if order not in COORDINATE_ORDERS:
            raise InvalidRouteDefinition(f"unknown coordinate order {coordinate_order!r}")
        self._coordinate_order = order

        ordered: List[Route] = []
        lookup: Dict[str, Route] = {}
        for route in routes:
            if not isinstance(route, Route):
                raise InvalidRouteDefinition(f"expected Route, got {type(route).__name__}")
            # Re-validate routes that were built by hand.
            checked = build_route(route.id, route.display_name, route.color_tag, route.waypoints)
            if checked.id in lookup:
                raise InvalidRouteDefinition(f"duplicate route id {checked.id}")
            lookup[checked.id] = checked
            ordered.append(checked)
        self._routes: Tuple[Route, ...] = tuple(ordered)
        self._lookup = lookup

    @classmethod
    def from_config(cls, raw: Any) -> "RouteCatalog":
        """Build a catalog from the ``config/routes.json`` document shape."""
        if isinstance(raw, list):
            entries, order = raw, DEFAULT_COORDINATE_ORDER
        elif isinstance(raw, Mapping):
            entries = raw.get("routes")
            order = raw.get("coordinate_order") or DEFAULT_COORDINATE_ORDER
        else:
            raise InvalidRouteDefinition("route config must be an object or a list")
        if not isinstance(entries, list):
            raise InvalidRouteDefinition("route config has no routes list")

        routes: List[Route] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                raise InvalidRouteDefinition("route entry is not an object")
            routes.append(
                build_route(
                    entry.get("id"),
                    entry.get("name") or entry.get("display_name"),
                    entry.get("color") or entry.get("color_tag"),
                    entry.get("waypoints") or [],
                )
            )
        return cls(routes, coordinate_order=order)

    @property
    def coordinate_order(self) -> str:
        return self._coordinate_order

    def get_route(self, route_id: Any) -> Route:
        route = self._lookup.get(str(route_id))
        if route is None:
            raise NotFound(f"route {route_id} not found")
        return route

    def list_routes(self) -> Tuple[Route, ...]:
        return self._routes

    def __contains__(self, route_id: object) -> bool:
        return str(route_id) in self._lookup

    def __len__(self) -> int:
        return len(self._routes)


__all__ = [
    "COORDINATE_ORDERS",
    "Waypoint",
    "Route",
    "RouteCatalog",
    "build_route",
]
