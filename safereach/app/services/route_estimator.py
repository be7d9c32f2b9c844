"""
Route and ETA estimation.

Resolves both endpoints to coordinates, asks the configured walking router
for distance, duration and steps, and falls back to a straight line when
the router cannot help. Callers get an estimate whenever both endpoints
can be located.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Union

import httpx

from safereach.app.core.config import settings
from safereach.app.core.exceptions import GeocodingError, RoutingUnavailableError
from safereach.app.core.reliability import (
    CircuitBreaker, CircuitOpenError, call_with_retry, routing_circuit_breaker
)
from safereach.app.services.geo import Coordinates, distance_between, walking_minutes
from safereach.app.services.geocoding import NominatimGeocoder
from safereach.app.services.maneuvers import describe_maneuver
from safereach.app.services.routing_providers import (
    MapboxRoutingProvider, OSRMRoutingProvider, ProviderRoute, RoutingProvider
)

logger = logging.getLogger(__name__)

Endpoint = Union[str, Coordinates]

SOURCE_STRAIGHT_LINE = "straight_line"


@dataclass(frozen=True)
class RouteStepEstimate:
    step_number: int
    instruction: str
    distance: float  # meters
    duration: float  # seconds
    maneuver_type: Optional[str] = None
    maneuver_modifier: Optional[str] = None


@dataclass(frozen=True)
class RouteEstimate:
    duration_minutes: int
    distance_meters: float
    origin: Coordinates
    destination: Coordinates
    steps: List[RouteStepEstimate] = field(default_factory=list)
    geometry: List[Coordinates] = field(default_factory=list)
    degraded: bool = False  # True when the router failed and this is a straight line
    source: str = SOURCE_STRAIGHT_LINE


class RouteEstimator:
    """
    Distance/duration estimator with a straight-line fallback.

    Pure with respect to the service: nothing is stored, and the same inputs
    give the same answer as long as the external services do.
    """

    def __init__(
        self,
        geocoder: NominatimGeocoder,
        provider: RoutingProvider,
        walking_speed_mps: float = 1.34112,
        max_retries: int = 1,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.geocoder = geocoder
        self.provider = provider
        self.walking_speed_mps = walking_speed_mps
        self.max_retries = max_retries
        self.circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=3, reset_timeout=30)

    async def resolve(self, endpoint: Endpoint) -> Optional[Coordinates]:
        """Coordinates for an endpoint, geocoding free text. ``None`` if unknown."""
        if isinstance(endpoint, Coordinates):
            return endpoint
        try:
            place = await self.geocoder.search(endpoint)
        except GeocodingError as e:
            logger.warning("Geocoding failed for %r: %s", endpoint, e)
            return None
        if place is None:
            logger.info("No geocoding result for %r", endpoint)
            return None
        return place.coordinates

    async def estimate(self, origin: Endpoint, destination: Endpoint) -> Optional[RouteEstimate]:
        """
        Estimate the walk between two endpoints.

        Returns:
            The estimate, or None when an address could not be located
        """
        origin_coords = await self.resolve(origin)
        if origin_coords is None:
            return None
        destination_coords = await self.resolve(destination)
        if destination_coords is None:
            return None

        try:
            route = await self.circuit_breaker.call(
                call_with_retry,
                self.provider.route,
                origin_coords,
                destination_coords,
                retries=self.max_retries,
                retry_on=(httpx.TransportError,),
            )
        except (httpx.HTTPError, RoutingUnavailableError, CircuitOpenError,
                KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            logger.warning(
                "Routing via %s failed, using straight line: %s",
                getattr(self.provider, "name", "provider"), e
            )
            return self.straight_line(origin_coords, destination_coords)

        return self._from_provider(route, origin_coords, destination_coords)

    def straight_line(self, origin: Coordinates, destination: Coordinates) -> RouteEstimate:
        """Degraded estimate treating the endpoints as directly connected."""
        distance = distance_between(origin, destination)
        return RouteEstimate(
            duration_minutes=walking_minutes(distance, self.walking_speed_mps),
            distance_meters=distance,
            origin=origin,
            destination=destination,
            geometry=[origin, destination],
            degraded=True,
            source=SOURCE_STRAIGHT_LINE,
        )

    def _from_provider(self, route: ProviderRoute, origin: Coordinates, destination: Coordinates) -> RouteEstimate:
        if route.duration_seconds is not None:
            minutes = math.ceil(route.duration_seconds / 60)
        else:
            minutes = walking_minutes(route.distance_meters, self.walking_speed_mps)

        steps = [
            RouteStepEstimate(
                step_number=number,
                instruction=describe_maneuver(step.maneuver_type, step.maneuver_modifier, step.name),
                distance=step.distance,
                duration=step.duration,
                maneuver_type=step.maneuver_type,
                maneuver_modifier=step.maneuver_modifier,
            )
            for number, step in enumerate(route.steps, start=1)
        ]

        return RouteEstimate(
            duration_minutes=minutes,
            distance_meters=route.distance_meters,
            origin=origin,
            destination=destination,
            steps=steps,
            geometry=route.geometry or [origin, destination],
            degraded=False,
            source=getattr(self.provider, "name", "provider"),
        )


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))


def build_route_estimator(client: httpx.AsyncClient) -> RouteEstimator:
    """Wire the estimator from settings."""
    geocoder = NominatimGeocoder(client, settings.geocoding_base_url, settings.geocoding_user_agent)
    if settings.routing_provider == "mapbox":
        provider = MapboxRoutingProvider(client, settings.mapbox_base_url, settings.mapbox_access_token)
    else:
        provider = OSRMRoutingProvider(client, settings.osrm_base_url)
    return RouteEstimator(
        geocoder,
        provider,
        walking_speed_mps=settings.walking_speed_mps,
        max_retries=settings.routing_max_retries,
        circuit_breaker=routing_circuit_breaker,
    )


# Process-wide estimator, wired in the application lifespan
route_estimator: Optional[RouteEstimator] = None


def get_route_estimator() -> RouteEstimator:
    """FastAPI dependency for the configured estimator."""
    if route_estimator is None:
        raise RuntimeError("Route estimator is not configured")
    return route_estimator
