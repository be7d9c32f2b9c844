"""
Journey check-in database model.
"""

import uuid
from sqlalchemy import Column, String, ForeignKey, DateTime, Enum
from safereach.app.db.session import Base
from safereach.app.models.enums import CheckInResponse


class JourneyCheckIn(Base):
    """One answer to an "Are you safe?" prompt. The newest row is the current status."""
    __tablename__ = "journey_checkins"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    journey_id = Column(String(36), ForeignKey("journeys.id", ondelete="CASCADE"), nullable=False, index=True)
    response = Column(Enum(CheckInResponse, values_callable=lambda e: [m.value for m in e]), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    
    def __repr__(self):
        return f"<JourneyCheckIn(journey_id={self.journey_id}, response='{self.response.value}')>"
