"""
Journey location database model.

Stores the GPS breadcrumb trail for live tracking.
"""

import uuid
from sqlalchemy import Column, String, Float, ForeignKey, DateTime
from safereach.app.db.session import Base


class JourneyLocation(Base):
    """
    Journey location model.
    
    One immutable breadcrumb point. Rows are only ever appended; they go
    away with their journey.
    """
    __tablename__ = "journey_locations"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    journey_id = Column(String(36), ForeignKey("journeys.id", ondelete="CASCADE"), nullable=False, index=True)
    
    # GPS coordinates
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)  # meters
    
    # When the device captured the position
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    
    def __repr__(self):
        return f"<JourneyLocation(journey_id={self.journey_id}, lat={self.latitude}, lng={self.longitude})>"
