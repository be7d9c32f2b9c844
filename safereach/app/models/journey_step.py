"""
Journey route step database model.
"""

import uuid
from sqlalchemy import Column, String, Integer, Float, Text, ForeignKey, DateTime
from sqlalchemy.sql import func
from safereach.app.db.session import Base


class JourneyStep(Base):
    """
    Turn-by-turn instruction.
    
    Written in bulk when the journey starts, read-only afterwards.
    """
    __tablename__ = "journey_steps"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    journey_id = Column(String(36), ForeignKey("journeys.id", ondelete="CASCADE"), nullable=False, index=True)
    
    step_number = Column(Integer, nullable=False, index=True)  # 1-based, contiguous
    instruction = Column(Text, nullable=False)
    distance = Column(Float, nullable=False)  # meters
    duration = Column(Float, nullable=False)  # seconds
    maneuver_type = Column(String(50), nullable=True)
    maneuver_modifier = Column(String(50), nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<JourneyStep(journey_id={self.journey_id}, step={self.step_number})>"
