"""
Route Estimation API Endpoints.

Walking ETA between two places and address lookup for the start form.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List

from safereach.app.core.exceptions import GeocodingError, RouteNotFoundError
from safereach.app.models.traveler import Traveler
from safereach.app.core.dependencies import get_current_traveler
from safereach.app.schemas.journey import CoordinatesIn, RouteStepResponse
from safereach.app.schemas.route import (
    GeocodeResult, ReverseGeocodeResponse, RouteEstimateRequest, RouteEstimateResponse
)
from safereach.app.services.geo import Coordinates
from safereach.app.services.route_estimator import RouteEstimate, RouteEstimator, get_route_estimator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Routes"])


def as_endpoint(value):
    """Request endpoint (coordinates or free text) as estimator input."""
    if isinstance(value, CoordinatesIn):
        return Coordinates(value.lat, value.lng)
    return value


def estimate_response(estimate: RouteEstimate) -> RouteEstimateResponse:
    warning = None
    if estimate.degraded:
        warning = "Walking directions are unavailable; showing a straight-line estimate"
    return RouteEstimateResponse(
        duration_minutes=estimate.duration_minutes,
        distance_meters=estimate.distance_meters,
        steps=[RouteStepResponse.model_validate(step) for step in estimate.steps],
        geometry=[[point.lat, point.lng] for point in estimate.geometry],
        origin=CoordinatesIn(lat=estimate.origin.lat, lng=estimate.origin.lng),
        destination=CoordinatesIn(lat=estimate.destination.lat, lng=estimate.destination.lng),
        degraded=estimate.degraded,
        source=estimate.source,
        warning=warning,
    )


@router.post("/routes/estimate", response_model=RouteEstimateResponse)
async def estimate_route(
    request: RouteEstimateRequest,
    current_traveler: Traveler = Depends(get_current_traveler),
    estimator: RouteEstimator = Depends(get_route_estimator)
):
    """
    Estimate the walking duration and distance between two places.

    Falls back to a straight-line estimate (``degraded``) when the router
    is unavailable. Returns 404 when either address cannot be located.
    """
    estimate = await estimator.estimate(as_endpoint(request.origin), as_endpoint(request.destination))
    if estimate is None:
        raise RouteNotFoundError("Could not find one of the addresses")
    return estimate_response(estimate)


@router.get("/geocode/search", response_model=List[GeocodeResult])
async def search_places(
    q: str = Query(..., min_length=1, max_length=500),
    limit: int = Query(5, ge=1, le=10),
    current_traveler: Traveler = Depends(get_current_traveler),
    estimator: RouteEstimator = Depends(get_route_estimator)
):
    """Address suggestions for the start and destination fields."""
    try:
        places = await estimator.geocoder.suggest(q, limit=limit)
    except GeocodingError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Address search is unavailable"
        ) from e
    return [
        GeocodeResult(lat=place.coordinates.lat, lng=place.coordinates.lng, display_name=place.display_name)
        for place in places
    ]


@router.get("/geocode/reverse", response_model=ReverseGeocodeResponse)
async def reverse_geocode(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    current_traveler: Traveler = Depends(get_current_traveler),
    estimator: RouteEstimator = Depends(get_route_estimator)
):
    """
    Human-readable address for a position.

    ``display_name`` is null when the lookup fails; the client then shows
    the raw coordinates.
    """
    try:
        display_name = await estimator.geocoder.reverse(lat, lon)
    except GeocodingError as e:
        logger.warning("Reverse geocoding failed for %s,%s: %s", lat, lon, e)
        display_name = None
    return ReverseGeocodeResponse(lat=lat, lng=lon, display_name=display_name)
