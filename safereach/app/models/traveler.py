"""
Traveler database model.

Profile data for the person making journeys. Accounts themselves live
with the external identity provider; the token subject is this row's id.
"""

import uuid
from sqlalchemy import Column, String, Integer, DateTime
from sqlalchemy.sql import func
from safereach.app.db.session import Base


class Traveler(Base):
    __tablename__ = "travelers"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    
    # Preferred "Are you safe?" interval
    default_checkin_interval_minutes = Column(Integer, default=5, nullable=False)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Traveler(id={self.id}, name='{self.name}')>"
