"""
Journey schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Literal, Optional

from safereach.app.models.enums import CheckInResponse, JourneyStatus, NotificationType


class CoordinatesIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class JourneyCreate(BaseModel):
    """
    Start-journey form.
    
    The start is either a named place/address or the traveler's current
    position (``start_location`` without an address).
    """
    start_name: Optional[str] = Field(None, max_length=255)
    start_address: Optional[str] = Field(None, max_length=500)
    start_location: Optional[CoordinatesIn] = None
    dest_name: Optional[str] = Field(None, max_length=255)
    dest_address: Optional[str] = Field(None, max_length=500)
    dest_location: Optional[CoordinatesIn] = None
    contact_ids: List[str] = Field(default_factory=list)
    expected_duration_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)
    checkin_interval_minutes: Optional[int] = Field(None, ge=1, le=60)
    compute_route: bool = True


class ConfirmRequest(BaseModel):
    """Irreversible transitions must be confirmed explicitly."""
    confirm: bool = False


class CheckInCreate(BaseModel):
    response: Literal["yes", "no"]


class LocationRecord(BaseModel):
    """Schema for recording GPS location."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, gt=0)
    recorded_at: Optional[datetime] = None


class LocationRecordResponse(BaseModel):
    """Response after recording location."""
    journey_id: str
    location_id: Optional[str]
    position_updated: bool
    history_appended: bool


class JourneyResponse(BaseModel):
    id: str
    traveler_id: str
    start_name: str
    start_address: str
    dest_name: str
    dest_address: str
    start_latitude: Optional[float]
    start_longitude: Optional[float]
    dest_latitude: Optional[float]
    dest_longitude: Optional[float]
    start_time: datetime
    eta_time: Optional[datetime]
    end_time: Optional[datetime]
    status: JourneyStatus
    checkin_interval_minutes: int
    current_latitude: Optional[float]
    current_longitude: Optional[float]
    location_updated_at: Optional[datetime]
    estimated_distance_meters: Optional[float]
    estimate_degraded: bool
    
    class Config:
        from_attributes = True


class JourneyLocationResponse(BaseModel):
    """GPS breadcrumb response."""
    id: str
    latitude: float
    longitude: float
    accuracy: Optional[float]
    timestamp: datetime
    
    class Config:
        from_attributes = True


class JourneyCheckInResponse(BaseModel):
    id: str
    response: CheckInResponse
    timestamp: datetime
    
    class Config:
        from_attributes = True


class RouteStepResponse(BaseModel):
    step_number: int
    instruction: str
    distance: float
    duration: float
    maneuver_type: Optional[str] = None
    maneuver_modifier: Optional[str] = None
    
    class Config:
        from_attributes = True


class ContactSummary(BaseModel):
    id: str
    name: str
    phone: str
    
    class Config:
        from_attributes = True


class NotificationLogResponse(BaseModel):
    id: str
    contact_id: Optional[str]
    type: NotificationType
    message: str
    timestamp: datetime
    
    class Config:
        from_attributes = True


class BreadcrumbStatsResponse(BaseModel):
    total_distance_meters: float
    average_speed_mps: float
    elapsed_seconds: float
    point_count: int
    total_distance_display: str
    average_speed_display: str


class TransitionResponse(BaseModel):
    journey: JourneyResponse
    changed: bool
    notifications_created: int


class CheckInResultResponse(BaseModel):
    checkin: JourneyCheckInResponse
    journey: JourneyResponse
    alert_triggered: bool
    notifications_created: int


class JourneyDetailResponse(BaseModel):
    """Traveler's own view of a journey."""
    journey: JourneyResponse
    contacts: List[ContactSummary]
    checkins: List[JourneyCheckInResponse]
    last_checkin: Optional[JourneyCheckInResponse]
    steps: List[RouteStepResponse]
    notifications: List[NotificationLogResponse]
    stats: BreadcrumbStatsResponse
    remaining_distance_meters: Optional[float]
    unsafe_zones: int = 0  # Zone detection is not implemented
    tracking_url: str


class JourneyCreateResponse(BaseModel):
    journey: JourneyResponse
    steps: List[RouteStepResponse]
    notifications_created: int
    tracking_url: str
    estimate_degraded: bool
