"""
Pedestrian routing providers.

Each provider answers one question: the walking route between two
coordinates. They share the OSRM-style response shape (``routes[0]`` with
``distance``, optional ``duration``, GeoJSON ``geometry`` and
``legs[0].steps[]``), so parsing lives in one place.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx

from safereach.app.core.exceptions import RoutingUnavailableError
from safereach.app.services.geo import Coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderStep:
    maneuver_type: Optional[str]
    maneuver_modifier: Optional[str]
    distance: float
    duration: float
    name: str = ""


@dataclass(frozen=True)
class ProviderRoute:
    distance_meters: float
    duration_seconds: Optional[float]
    steps: List[ProviderStep] = field(default_factory=list)
    geometry: List[Coordinates] = field(default_factory=list)


class RoutingProvider(Protocol):
    name: str

    async def route(self, origin: Coordinates, destination: Coordinates) -> ProviderRoute:
        """Return the walking route or raise ``RoutingUnavailableError``."""
        ...


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_route_response(data: dict) -> ProviderRoute:
    """
    Parse an OSRM/Mapbox directions payload.

    Raises:
        RoutingUnavailableError: the payload reports no route or is malformed
    """
    try:
        return _parse_route(data)
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        raise RoutingUnavailableError(f"Malformed routing response: {e!r}") from e


def _parse_route(data) -> ProviderRoute:
    if not isinstance(data, dict):
        raise RoutingUnavailableError("Routing response is not an object")

    code = data.get("code", "Ok")
    routes = data.get("routes") or []
    if code != "Ok" or not routes:
        raise RoutingUnavailableError(f"No route found (code={code})")

    route = routes[0]
    distance = _number(route.get("distance"))
    if distance is None:
        raise RoutingUnavailableError("Route has no distance")

    steps = []
    legs = route.get("legs") or []
    if legs:
        for raw in legs[0].get("steps") or []:
            maneuver = raw.get("maneuver") or {}
            steps.append(ProviderStep(
                maneuver_type=maneuver.get("type"),
                maneuver_modifier=maneuver.get("modifier"),
                distance=_number(raw.get("distance")) or 0.0,
                duration=_number(raw.get("duration")) or 0.0,
                name=raw.get("name") or "",
            ))

    geometry = []
    raw_geometry = route.get("geometry")
    if isinstance(raw_geometry, dict):
        # GeoJSON is [lng, lat]
        for point in raw_geometry.get("coordinates") or []:
            geometry.append(Coordinates(float(point[1]), float(point[0])))

    return ProviderRoute(
        distance_meters=distance,
        duration_seconds=_number(route.get("duration")),
        steps=steps,
        geometry=geometry,
    )


class OSRMRoutingProvider:
    """OSRM ``/route/v1/foot`` client."""

    name = "osrm"

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def route(self, origin: Coordinates, destination: Coordinates) -> ProviderRoute:
        url = (
            f"{self.base_url}/route/v1/foot/"
            f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        )
        params = {"overview": "full", "geometries": "geojson", "steps": "true"}
        response = await self.client.get(url, params=params)
        # OSRM answers "NoRoute" with a 400 and a JSON body
        if response.status_code >= 500:
            response.raise_for_status()
        try:
            data = response.json()
        except ValueError as e:
            raise RoutingUnavailableError(f"OSRM returned invalid JSON ({response.status_code})") from e
        return parse_route_response(data)


class MapboxRoutingProvider:
    """Mapbox Directions ``walking`` profile client."""

    name = "mapbox"

    def __init__(self, client: httpx.AsyncClient, base_url: str, access_token: str):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token

    async def route(self, origin: Coordinates, destination: Coordinates) -> ProviderRoute:
        if not self.access_token:
            raise RoutingUnavailableError("Mapbox access token is not configured")
        url = (
            f"{self.base_url}/directions/v5/mapbox/walking/"
            f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        )
        params = {
            "overview": "full",
            "geometries": "geojson",
            "steps": "true",
            "access_token": self.access_token,
        }
        response = await self.client.get(url, params=params)
        if response.status_code >= 500:
            response.raise_for_status()
        try:
            data = response.json()
        except ValueError as e:
            raise RoutingUnavailableError(f"Mapbox returned invalid JSON ({response.status_code})") from e
        return parse_route_response(data)
