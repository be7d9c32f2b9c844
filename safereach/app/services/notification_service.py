"""
Notification Service.

Creates notification log entries for a journey's contacts. Delivery
(push/SMS/email) is handled by another system reading the log.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Sequence

from safereach.app.core.clock import utcnow
from safereach.app.models.contact import Contact
from safereach.app.models.enums import NotificationType
from safereach.app.models.journey_contact import JourneyContact
from safereach.app.models.notification_log import NotificationLogEntry


class NotificationService:

    @staticmethod
    async def journey_contact_ids(db: AsyncSession, journey_id: str) -> List[str]:
        """Contacts notified when the journey started."""
        result = await db.execute(
            select(JourneyContact.contact_id).where(JourneyContact.journey_id == journey_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def journey_contacts(db: AsyncSession, journey_id: str) -> List[Contact]:
        result = await db.execute(
            select(Contact)
            .join(JourneyContact, JourneyContact.contact_id == Contact.id)
            .where(JourneyContact.journey_id == journey_id)
            .order_by(Contact.name)
        )
        return list(result.scalars().all())

    @staticmethod
    def build_entries(
        journey_id: str,
        contact_ids: Sequence[str],
        type: NotificationType,
        message: str
    ) -> List[NotificationLogEntry]:
        """One entry per contact, not yet added to a session."""
        now = utcnow()
        return [
            NotificationLogEntry(
                journey_id=journey_id,
                contact_id=contact_id,
                type=type,
                message=message,
                timestamp=now
            )
            for contact_id in contact_ids
        ]

    @staticmethod
    async def notify_journey_contacts(
        db: AsyncSession,
        journey_id: str,
        type: NotificationType,
        message: str
    ) -> int:
        """
        Log a notification for every contact attached to the journey.

        The caller commits, so the entries land in the same transaction as
        the state change that caused them.
        """
        contact_ids = await NotificationService.journey_contact_ids(db, journey_id)
        entries = NotificationService.build_entries(journey_id, contact_ids, type, message)
        if entries:
            db.add_all(entries)
        return len(entries)

    @staticmethod
    async def list_for_journey(db: AsyncSession, journey_id: str) -> List[NotificationLogEntry]:
        result = await db.execute(
            select(NotificationLogEntry)
            .where(NotificationLogEntry.journey_id == journey_id)
            .order_by(NotificationLogEntry.timestamp)
        )
        return list(result.scalars().all())
