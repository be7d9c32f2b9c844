"""
Journey state machine.

Lifecycle: ``active`` -> ``completed_safe`` | ``alert_triggered``.

Each transition commits its status change together with its side effects
(check-in rows, notification log entries) in one transaction, then
announces the new journey row on the real-time channel.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from safereach.app.core.clock import utcnow
from safereach.app.core.config import settings
from safereach.app.core.exceptions import (
    InsufficientPermissionsError, InvalidTransitionError, ResourceNotFoundError, ValidationError
)
from safereach.app.models.contact import Contact
from safereach.app.models.enums import CheckInResponse, JourneyStatus, NotificationType
from safereach.app.models.journey import Journey
from safereach.app.models.journey_checkin import JourneyCheckIn
from safereach.app.models.journey_contact import JourneyContact
from safereach.app.models.journey_step import JourneyStep
from safereach.app.models.traveler import Traveler
from safereach.app.schemas.journey import JourneyCreate
from safereach.app.services.notification_service import NotificationService
from safereach.app.services.realtime import RealtimeChannel, journey_changed
from safereach.app.services.route_estimator import RouteEstimate

logger = logging.getLogger(__name__)

CURRENT_LOCATION = "Current Location"


@dataclass
class TransitionResult:
    journey: Journey
    changed: bool
    notifications_created: int = 0
    checkin: Optional[JourneyCheckIn] = None


@dataclass
class CreatedJourney:
    journey: Journey
    steps: List[JourneyStep]
    notifications_created: int


class JourneyStateMachine:
    """
    Transitions for one journey at a time, bound to a session.

    ``alert_is_terminal`` decides what an alert means. When true, an alerted
    journey is finished: no more sampling, check-ins or arrival. When false,
    monitoring continues and the traveler can still mark arrival.
    """

    def __init__(
        self,
        db: AsyncSession,
        channel: Optional[RealtimeChannel] = None,
        alert_is_terminal: Optional[bool] = None,
        escalate_missed_checkin: Optional[bool] = None,
    ):
        self.db = db
        self.channel = channel
        self.alert_is_terminal = settings.alert_is_terminal if alert_is_terminal is None else alert_is_terminal
        self.escalate_missed_checkin = (
            settings.escalate_missed_checkin if escalate_missed_checkin is None else escalate_missed_checkin
        )

    # Lookups

    async def get_journey(self, journey_id: str) -> Journey:
        journey = await self.db.get(Journey, journey_id)
        if not journey:
            raise ResourceNotFoundError("Journey", journey_id)
        return journey

    async def get_owned_journey(self, journey_id: str, traveler_id: str) -> Journey:
        journey = await self.get_journey(journey_id)
        if journey.traveler_id != traveler_id:
            raise InsufficientPermissionsError("This journey belongs to another traveler")
        return journey

    def monitored_statuses(self) -> List[JourneyStatus]:
        """Statuses in which sampling and check-ins keep running."""
        if self.alert_is_terminal:
            return [JourneyStatus.ACTIVE]
        return [JourneyStatus.ACTIVE, JourneyStatus.ALERT_TRIGGERED]

    def is_monitored(self, journey: Journey) -> bool:
        return journey.status in self.monitored_statuses()

    async def _traveler_name(self, traveler_id: str) -> str:
        traveler = await self.db.get(Traveler, traveler_id)
        return traveler.name if traveler else "Traveler"

    # Creation

    async def validate_create(self, traveler_id: str, request: JourneyCreate) -> List[Contact]:
        """
        Reject a start-journey request before anything is written.

        Returns the selected contacts, in request order.
        """
        contact_ids = list(dict.fromkeys(request.contact_ids))
        if not contact_ids:
            raise ValidationError("Please select at least one contact")

        has_start = bool(request.start_address or request.start_name or request.start_location)
        has_destination = bool(request.dest_address or request.dest_name or request.dest_location)
        if not has_start or not has_destination:
            raise ValidationError("Please fill in all required fields")

        result = await self.db.execute(
            select(Contact).where(Contact.id.in_(contact_ids), Contact.traveler_id == traveler_id)
        )
        found = {contact.id: contact for contact in result.scalars().all()}
        missing = [cid for cid in contact_ids if cid not in found]
        if missing:
            raise ValidationError("Unknown contacts selected", details={"contact_ids": missing})

        return [found[cid] for cid in contact_ids]

    async def create_journey(
        self,
        traveler_id: str,
        request: JourneyCreate,
        estimate: Optional[RouteEstimate] = None,
    ) -> CreatedJourney:
        """
        Start a journey.

        Inserts the journey, its contact snapshot, the route steps and one
        ``start`` notification per contact in a single transaction.

        Raises:
            ValidationError: no contacts, missing endpoints, or no way to
                compute an ETA. Nothing is written.
        """
        contacts = await self.validate_create(traveler_id, request)

        traveler = await self.db.get(Traveler, traveler_id)
        if not traveler:
            raise ResourceNotFoundError("Traveler", traveler_id)

        duration_minutes = request.expected_duration_minutes
        if duration_minutes is None and estimate is not None:
            duration_minutes = estimate.duration_minutes
        if duration_minutes is None:
            raise ValidationError("Expected duration is required when the route cannot be estimated")

        start_name = request.start_name or request.start_address or CURRENT_LOCATION
        start_address = request.start_address or start_name
        dest_name = request.dest_name or request.dest_address or "Dropped Pin"
        dest_address = request.dest_address or dest_name

        start_coords = request.start_location
        dest_coords = request.dest_location
        if estimate is not None:
            start_coords = start_coords or estimate.origin
            dest_coords = dest_coords or estimate.destination

        now = utcnow()
        journey = Journey(
            traveler_id=traveler_id,
            start_name=start_name,
            start_address=start_address,
            dest_name=dest_name,
            dest_address=dest_address,
            start_latitude=start_coords.lat if start_coords else None,
            start_longitude=start_coords.lng if start_coords else None,
            dest_latitude=dest_coords.lat if dest_coords else None,
            dest_longitude=dest_coords.lng if dest_coords else None,
            start_time=now,
            eta_time=now + timedelta(minutes=duration_minutes),
            status=JourneyStatus.ACTIVE,
            checkin_interval_minutes=(
                request.checkin_interval_minutes
                or traveler.default_checkin_interval_minutes
                or settings.default_checkin_interval_minutes
            ),
            estimated_distance_meters=estimate.distance_meters if estimate else None,
            estimate_degraded=estimate.degraded if estimate else False,
        )

        try:
            self.db.add(journey)
            await self.db.flush()

            self.db.add_all([
                JourneyContact(journey_id=journey.id, contact_id=contact.id)
                for contact in contacts
            ])

            steps = []
            if estimate is not None:
                steps = [
                    JourneyStep(
                        journey_id=journey.id,
                        step_number=step.step_number,
                        instruction=step.instruction,
                        distance=step.distance,
                        duration=step.duration,
                        maneuver_type=step.maneuver_type,
                        maneuver_modifier=step.maneuver_modifier,
                    )
                    for step in estimate.steps
                ]
                self.db.add_all(steps)

            entries = NotificationService.build_entries(
                journey.id,
                [contact.id for contact in contacts],
                NotificationType.START,
                f"Journey started from {start_name} to {dest_name}",
            )
            self.db.add_all(entries)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Journey creation rolled back for traveler %s", traveler_id)
            raise

        await self.db.refresh(journey)
        logger.info("Journey %s started with %d contacts", journey.id, len(contacts))
        await self._announce(journey)
        return CreatedJourney(journey=journey, steps=steps, notifications_created=len(entries))

    # Transitions

    async def _transition(
        self,
        journey: Journey,
        target: JourneyStatus,
        allowed_from: Sequence[JourneyStatus],
        **values
    ) -> bool:
        """
        Conditionally move ``journey`` to ``target``.

        The UPDATE only matches while the row is in ``allowed_from``, so two
        racing requests cannot both perform the transition.
        """
        result = await self.db.execute(
            update(Journey)
            .where(Journey.id == journey.id, Journey.status.in_(list(allowed_from)))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_arrived(self, journey_id: str, traveler_id: str, confirmed: bool = False) -> TransitionResult:
        """
        Traveler reached the destination.

        A second call after success returns the completed journey and
        creates no further notifications.
        """
        if not confirmed:
            raise ValidationError("Please confirm that you have arrived")

        journey = await self.get_owned_journey(journey_id, traveler_id)
        if journey.status == JourneyStatus.COMPLETED_SAFE:
            return TransitionResult(journey=journey, changed=False)

        allowed = [JourneyStatus.ACTIVE]
        if not self.alert_is_terminal:
            allowed.append(JourneyStatus.ALERT_TRIGGERED)

        try:
            changed = await self._transition(journey, JourneyStatus.COMPLETED_SAFE, allowed, end_time=utcnow())
            created = 0
            if changed:
                name = await self._traveler_name(journey.traveler_id)
                created = await NotificationService.notify_journey_contacts(
                    self.db, journey.id, NotificationType.ARRIVAL_SAFE,
                    f"{name} has arrived safely at {journey.dest_name}"
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(journey)
        if not changed:
            if journey.status == JourneyStatus.COMPLETED_SAFE:
                return TransitionResult(journey=journey, changed=False)
            raise InvalidTransitionError(journey.status.value, "mark arrival for")

        logger.info("Journey %s completed safely", journey.id)
        await self._announce(journey)
        return TransitionResult(journey=journey, changed=True, notifications_created=created)

    async def trigger_alert(self, journey_id: str, traveler_id: str, confirmed: bool = False) -> TransitionResult:
        """Traveler pressed the emergency button."""
        if not confirmed:
            raise ValidationError("Please confirm the emergency alert")

        journey = await self.get_owned_journey(journey_id, traveler_id)
        return await self._raise_alert(journey, "EMERGENCY ALERT: {name} indicated they are NOT safe!")

    async def _raise_alert(self, journey: Journey, message: str) -> TransitionResult:
        if journey.status == JourneyStatus.COMPLETED_SAFE:
            raise InvalidTransitionError(journey.status.value, "raise an alert for")
        if journey.status == JourneyStatus.ALERT_TRIGGERED and self.alert_is_terminal:
            return TransitionResult(journey=journey, changed=False)

        allowed = [JourneyStatus.ACTIVE]
        if not self.alert_is_terminal:
            allowed.append(JourneyStatus.ALERT_TRIGGERED)

        try:
            changed = await self._transition(journey, JourneyStatus.ALERT_TRIGGERED, allowed)
            checkin = None
            created = 0
            if changed:
                checkin = JourneyCheckIn(journey_id=journey.id, response=CheckInResponse.NO, timestamp=utcnow())
                self.db.add(checkin)
                name = await self._traveler_name(journey.traveler_id)
                created = await NotificationService.notify_journey_contacts(
                    self.db, journey.id, NotificationType.DANGER_ALERT, message.format(name=name)
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(journey)
        if not changed:
            if journey.status == JourneyStatus.ALERT_TRIGGERED:
                return TransitionResult(journey=journey, changed=False)
            raise InvalidTransitionError(journey.status.value, "raise an alert for")

        logger.warning("Journey %s alert triggered, %d contacts flagged", journey.id, created)
        await self._announce(journey)
        return TransitionResult(journey=journey, changed=True, notifications_created=created, checkin=checkin)

    async def record_checkin(self, journey_id: str, traveler_id: str, response: CheckInResponse) -> TransitionResult:
        """
        Record the traveler's answer to a check-in prompt.

        ``yes`` only stores the answer. ``no`` raises the alert.
        """
        journey = await self.get_owned_journey(journey_id, traveler_id)
        if not self.is_monitored(journey):
            raise InvalidTransitionError(journey.status.value, "check in on")

        if response == CheckInResponse.NO:
            return await self._raise_alert(journey, "ALERT: {name} indicated they are NOT safe!")
        if response != CheckInResponse.YES:
            raise ValidationError("Check-in response must be yes or no")

        checkin = JourneyCheckIn(journey_id=journey.id, response=CheckInResponse.YES, timestamp=utcnow())
        self.db.add(checkin)
        await self.db.commit()
        await self.db.refresh(checkin)
        return TransitionResult(journey=journey, changed=False, checkin=checkin)

    async def claim_checkin_prompt(self, journey_id: str, due: datetime, min_gap_seconds: float) -> bool:
        """
        Claim the check-in tick due at ``due`` for this scheduler.

        Every worker may run a timer for the same journey. The UPDATE only
        matches a monitored journey whose last claimed tick is at least
        ``min_gap_seconds`` older, so one prompt goes out per tick.
        """
        result = await self.db.execute(
            update(Journey)
            .where(
                Journey.id == journey_id,
                Journey.status.in_(self.monitored_statuses()),
                or_(
                    Journey.last_prompt_at.is_(None),
                    Journey.last_prompt_at <= due - timedelta(seconds=min_gap_seconds),
                ),
            )
            .values(last_prompt_at=due)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def answered_since(self, journey_id: str, since: datetime) -> bool:
        result = await self.db.execute(
            select(func.count(JourneyCheckIn.id))
            .where(JourneyCheckIn.journey_id == journey_id, JourneyCheckIn.timestamp >= since)
        )
        return result.scalar_one() > 0

    async def record_missed_checkin(
        self, journey_id: str, prompted_at: Optional[datetime] = None
    ) -> Optional[TransitionResult]:
        """
        The traveler did not answer a prompt in time.

        Stores a ``no_response`` check-in and a ``checkin_alert`` entry per
        contact. With escalation enabled the journey also moves to
        ``alert_triggered``. Does nothing when the journey is no longer
        monitored. Also does nothing when any check-in was stored after
        ``prompted_at``, which covers answers handled by another worker.
        """
        journey = await self.db.get(Journey, journey_id)
        if journey is None or not self.is_monitored(journey):
            return None
        if prompted_at is not None and await self.answered_since(journey_id, prompted_at):
            return None

        try:
            checkin = JourneyCheckIn(journey_id=journey.id, response=CheckInResponse.NO_RESPONSE, timestamp=utcnow())
            self.db.add(checkin)
            name = await self._traveler_name(journey.traveler_id)
            created = await NotificationService.notify_journey_contacts(
                self.db, journey.id, NotificationType.CHECKIN_ALERT,
                f"{name} did not respond to a safety check-in on the way to {journey.dest_name}"
            )
            changed = False
            if self.escalate_missed_checkin and journey.status == JourneyStatus.ACTIVE:
                changed = await self._transition(
                    journey, JourneyStatus.ALERT_TRIGGERED, [JourneyStatus.ACTIVE]
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(journey)
        logger.warning("Journey %s missed a check-in (escalated=%s)", journey.id, changed)
        if changed:
            await self._announce(journey)
        return TransitionResult(journey=journey, changed=changed, notifications_created=created, checkin=checkin)

    async def _announce(self, journey: Journey) -> None:
        if self.channel is not None:
            await self.channel.publish(journey_changed(journey))


async def is_journey_monitored(session_factory, journey_id: str) -> bool:
    """Fresh read of whether sampling should continue for a journey."""
    async with session_factory() as db:
        journey = await db.get(Journey, journey_id)
        return journey is not None and JourneyStateMachine(db).is_monitored(journey)
