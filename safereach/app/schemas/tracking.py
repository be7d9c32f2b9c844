"""
Public tracking schemas.

What anyone holding a tracking link may see.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import List, Optional

from safereach.app.models.enums import JourneyStatus
from safereach.app.schemas.journey import (
    BreadcrumbStatsResponse, ContactSummary, JourneyCheckInResponse,
    JourneyLocationResponse, RouteStepResponse
)


class TravelerSummary(BaseModel):
    name: str
    phone: Optional[str]
    
    class Config:
        from_attributes = True


class PublicJourney(BaseModel):
    id: str
    start_name: str
    start_address: str
    dest_name: str
    dest_address: str
    dest_latitude: Optional[float]
    dest_longitude: Optional[float]
    start_time: datetime
    eta_time: Optional[datetime]
    end_time: Optional[datetime]
    status: JourneyStatus
    current_latitude: Optional[float]
    current_longitude: Optional[float]
    location_updated_at: Optional[datetime]
    
    class Config:
        from_attributes = True


class PublicTrackingResponse(BaseModel):
    journey: PublicJourney
    traveler: Optional[TravelerSummary]
    contacts: List[ContactSummary]
    checkins: List[JourneyCheckInResponse]
    locations: List[JourneyLocationResponse]
    steps: List[RouteStepResponse]
    stats: BreadcrumbStatsResponse
