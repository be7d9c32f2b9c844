"""
Route estimation and geocoding schemas.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Union

from safereach.app.schemas.journey import CoordinatesIn, RouteStepResponse


class RouteEstimateRequest(BaseModel):
    origin: Union[CoordinatesIn, str]
    destination: Union[CoordinatesIn, str]


class RouteEstimateResponse(BaseModel):
    duration_minutes: int
    distance_meters: float
    steps: List[RouteStepResponse]
    geometry: List[List[float]]  # [lat, lng] pairs
    origin: CoordinatesIn
    destination: CoordinatesIn
    degraded: bool
    source: str
    warning: Optional[str] = None


class GeocodeResult(BaseModel):
    lat: float
    lng: float
    display_name: str


class ReverseGeocodeResponse(BaseModel):
    lat: float
    lng: float
    display_name: Optional[str] = Field(None, description="None when the service had no answer")
