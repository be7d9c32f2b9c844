"""
Notification log database model.

An audit trail of what contacts should have been told. Delivery happens
elsewhere.
"""

import uuid
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Enum
from safereach.app.db.session import Base
from safereach.app.models.enums import NotificationType


class NotificationLogEntry(Base):
    __tablename__ = "notifications_log"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    journey_id = Column(String(36), ForeignKey("journeys.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(String(36), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True, index=True)
    
    type = Column(Enum(NotificationType, values_callable=lambda e: [m.value for m in e]), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    
    def __repr__(self):
        return f"<NotificationLogEntry(journey_id={self.journey_id}, type='{self.type.value}')>"
