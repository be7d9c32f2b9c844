"""
Periodic safety check-ins.

While a journey is monitored, a timer asks the traveler "Are you safe?"
every N minutes. The prompt goes out on the real-time channel; the answer
comes back through the check-in endpoint, which calls ``acknowledge``. If no
answer arrives within the response timeout, the missed check-in is recorded
and (optionally) escalated to an alert.

Per journey: IDLE -> WAITING (timer running) -> PROMPTING (a prompt awaits
its answer) -> WAITING ... until the journey leaves the monitored states or
the timer is stopped. The response wait runs beside the timer, so prompts
keep their cadence however long the traveler takes to answer.

Several workers may hold a timer for the same journey (each one resumes
monitored journeys at startup). Each tick is claimed in the store before
prompting, and a missed response is only recorded when no check-in was
stored after the prompt, so an answer handled by another worker counts.
"""

import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from safereach.app.core.clock import utcnow
from safereach.app.core.config import settings
from safereach.app.models.journey import Journey
from safereach.app.services.journey_state import JourneyStateMachine
from safereach.app.services.realtime import RealtimeChannel, checkin_requested

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Ticks claimed closer together than this share of the interval are duplicates
CLAIM_GAP_RATIO = 0.9


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    PROMPTING = "prompting"


@dataclass
class _OpenPrompt:
    number: int
    prompted_at: datetime
    answered: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


@dataclass
class _JourneyTimer:
    journey_id: str
    interval_seconds: float
    started_at: datetime
    task: Optional[asyncio.Task] = None
    state: SchedulerState = SchedulerState.IDLE
    prompts: int = 0
    open_prompts: List[_OpenPrompt] = field(default_factory=list)


class CheckInScheduler:
    """
    One cancellable timer task per journey, plus one short-lived task per
    unanswered prompt.

    ``sleep`` is injectable so tests can drive time explicitly.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel: RealtimeChannel,
        response_timeout_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
        state_machine_factory: Callable[..., JourneyStateMachine] = JourneyStateMachine,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.response_timeout_seconds = (
            settings.checkin_response_timeout_seconds
            if response_timeout_seconds is None else response_timeout_seconds
        )
        self.sleep = sleep
        self.state_machine_factory = state_machine_factory
        self._timers: Dict[str, _JourneyTimer] = {}

    def state(self, journey_id: str) -> SchedulerState:
        timer = self._timers.get(journey_id)
        if timer is None:
            return SchedulerState.IDLE
        if timer.open_prompts:
            return SchedulerState.PROMPTING
        return timer.state

    def prompt_count(self, journey_id: str) -> int:
        timer = self._timers.get(journey_id)
        return timer.prompts if timer else 0

    def is_running(self, journey_id: str) -> bool:
        timer = self._timers.get(journey_id)
        return bool(timer and timer.task and not timer.task.done())

    def start(self, journey_id: str, interval_minutes: float) -> None:
        """Start the timer for a journey. A running timer is left alone."""
        if self.is_running(journey_id):
            return
        timer = _JourneyTimer(journey_id=journey_id, interval_seconds=interval_minutes * 60, started_at=utcnow())
        timer.task = asyncio.create_task(self._run(timer), name=f"checkin-{journey_id}")
        self._timers[journey_id] = timer
        logger.info("Check-in timer started for journey %s every %s min", journey_id, interval_minutes)

    async def stop(self, journey_id: str) -> None:
        """Cancel the journey's timer. Safe to call when none is running."""
        timer = self._timers.pop(journey_id, None)
        if timer is None or timer.task is None:
            return
        if timer.task is not asyncio.current_task():
            timer.task.cancel()
            with suppress(asyncio.CancelledError):
                await timer.task
        timer.state = SchedulerState.IDLE

    def acknowledge(self, journey_id: str) -> None:
        """A response was recorded; open prompts are resolved."""
        timer = self._timers.get(journey_id)
        if timer is None:
            return
        for prompt in timer.open_prompts:
            prompt.answered.set()

    async def resume(self) -> int:
        """Restart timers for journeys that were active before a restart."""
        async with self.session_factory() as db:
            machine = self.state_machine_factory(db)
            result = await db.execute(
                select(Journey).where(Journey.status.in_(machine.monitored_statuses()))
            )
            journeys = result.scalars().all()
        for journey in journeys:
            self.start(journey.id, journey.checkin_interval_minutes)
        if journeys:
            logger.info("Resumed check-in timers for %d journeys", len(journeys))
        return len(journeys)

    async def shutdown(self) -> None:
        for journey_id in list(self._timers):
            await self.stop(journey_id)

    async def _claim_tick(self, timer: _JourneyTimer, due: datetime) -> Optional[bool]:
        """None once the journey is no longer monitored, else whether this worker owns the tick."""
        async with self.session_factory() as db:
            machine = self.state_machine_factory(db)
            journey = await db.get(Journey, timer.journey_id)
            if journey is None or not machine.is_monitored(journey):
                return None
            return await machine.claim_checkin_prompt(
                timer.journey_id, due, timer.interval_seconds * CLAIM_GAP_RATIO
            )

    async def _run(self, timer: _JourneyTimer) -> None:
        ticks = 0
        try:
            while True:
                timer.state = SchedulerState.WAITING
                await self.sleep(timer.interval_seconds)
                ticks += 1
                due = timer.started_at + timedelta(seconds=timer.interval_seconds * ticks)
                try:
                    claimed = await self._claim_tick(timer, due)
                    if claimed is None:
                        logger.info("Journey %s no longer monitored, stopping check-ins", timer.journey_id)
                        return
                    if claimed:
                        await self._prompt(timer)
                    else:
                        logger.debug("Check-in tick for journey %s claimed by another worker", timer.journey_id)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    # The next tick retries; a hiccup must not end monitoring
                    logger.exception("Check-in tick failed for journey %s", timer.journey_id)
        finally:
            pending = [prompt.task for prompt in timer.open_prompts if prompt.task is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            timer.open_prompts.clear()
            timer.state = SchedulerState.IDLE
            if self._timers.get(timer.journey_id) is timer:
                del self._timers[timer.journey_id]

    async def _prompt(self, timer: _JourneyTimer) -> None:
        timer.prompts += 1
        prompted_at = utcnow()

        respond_by = None
        if self.response_timeout_seconds:
            respond_by = prompted_at + timedelta(seconds=self.response_timeout_seconds)
        await self.channel.publish(checkin_requested(timer.journey_id, timer.prompts, respond_by))

        if not self.response_timeout_seconds:
            return

        prompt = _OpenPrompt(number=timer.prompts, prompted_at=prompted_at)
        timer.open_prompts.append(prompt)
        prompt.task = asyncio.create_task(
            self._await_answer(timer, prompt), name=f"checkin-{timer.journey_id}-{prompt.number}"
        )

    async def _await_answer(self, timer: _JourneyTimer, prompt: _OpenPrompt) -> None:
        try:
            await asyncio.wait_for(prompt.answered.wait(), timeout=self.response_timeout_seconds)
        except asyncio.TimeoutError:
            try:
                await self._record_missed(timer.journey_id, prompt.prompted_at)
            except Exception:
                logger.exception("Could not record missed check-in for journey %s", timer.journey_id)
        finally:
            if prompt in timer.open_prompts:
                timer.open_prompts.remove(prompt)

    async def _record_missed(self, journey_id: str, prompted_at: datetime) -> None:
        async with self.session_factory() as db:
            machine = self.state_machine_factory(db, channel=self.channel)
            await machine.record_missed_checkin(journey_id, prompted_at=prompted_at)


# Process-wide scheduler, wired in the application lifespan
checkin_scheduler: Optional[CheckInScheduler] = None


def get_checkin_scheduler() -> CheckInScheduler:
    """FastAPI dependency for the running scheduler."""
    if checkin_scheduler is None:
        raise RuntimeError("Check-in scheduler is not running")
    return checkin_scheduler
