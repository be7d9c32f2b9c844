"""
Journey database model.

One tracked trip from a start point to a destination. The row carries the
latest known position so viewers can render it without reading the whole
breadcrumb trail.
"""

import uuid
from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from safereach.app.db.session import Base
from safereach.app.models.enums import JourneyStatus


class Journey(Base):
    """
    Journey model.
    
    Owned by one traveler. Anyone holding the id can read it through the
    public tracking link.
    """
    __tablename__ = "journeys"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    traveler_id = Column(String(36), ForeignKey("travelers.id", ondelete="CASCADE"), nullable=False, index=True)
    
    # Endpoints
    start_name = Column(String(255), nullable=False)
    start_address = Column(String(500), nullable=False)
    dest_name = Column(String(255), nullable=False)
    dest_address = Column(String(500), nullable=False)
    start_latitude = Column(Float, nullable=True)
    start_longitude = Column(Float, nullable=True)
    dest_latitude = Column(Float, nullable=True)
    dest_longitude = Column(Float, nullable=True)
    
    # Timing
    start_time = Column(DateTime(timezone=True), nullable=False)
    eta_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)  # Set on safe arrival only
    
    # Lifecycle
    status = Column(Enum(JourneyStatus, values_callable=lambda e: [m.value for m in e]),
                    default=JourneyStatus.ACTIVE, nullable=False, index=True)
    checkin_interval_minutes = Column(Integer, nullable=False, default=5)
    
    # Latest position (last writer wins)
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    
    # Last check-in tick claimed by a scheduler; one worker prompts per tick
    last_prompt_at = Column(DateTime(timezone=True), nullable=True)
    
    # Route estimate at creation
    estimated_distance_meters = Column(Float, nullable=True)
    estimate_degraded = Column(Boolean, default=False, nullable=False)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Journey(id={self.id}, status='{self.status.value}')>"
