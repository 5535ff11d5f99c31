"""Decides whether a table is available for a requested slot.

Tier 1 asks the tenant's Google Calendar; tier 2 counts confirmed covers in
the local store against the tenant's capacity. A failing calendar query falls
through to tier 2, and no error ever reaches the caller: the voice assistant
cannot retry, so every request gets a decision.
"""

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfoNotFoundError

from tablenow.config import get_config
from tablenow.engine.timeutils import normalize_time, slot_start, spoken_time
from tablenow.errors import TransportDegraded
from tablenow.models import AvailabilityDecision, AvailabilitySource, Tenant
from tablenow.services.calendar_service import BusyInterval, CalendarClient
from tablenow.services.store import ReservationStore

logger = logging.getLogger(__name__)

SLOT_LENGTH = timedelta(hours=1)
SLOT_STEP = timedelta(minutes=30)
DAY_OPENS = 9
DAY_CLOSES = 22
MAX_SUGGESTIONS = 3

APOLOGY = "I am sorry, I cannot check availability right now due to a technical issue."


def free_slots(
    day_start: datetime, day_end: datetime, busy: list[BusyInterval]
) -> list[datetime]:
    """Slide a 1-hour window over the day in 30-minute steps.

    Returns:
        Start times of windows that overlap no busy interval
    """
    slots = []
    candidate = day_start
    while candidate < day_end:
        candidate_end = candidate + SLOT_LENGTH
        if not any(interval.overlaps(candidate, candidate_end) for interval in busy):
            slots.append(candidate)
        candidate += SLOT_STEP
    return slots


class AvailabilityOracle:
    """Answers availability questions for one tenant at a time."""

    def __init__(self, store: ReservationStore, calendar: CalendarClient | None = None) -> None:
        self.config = get_config()
        self.store = store
        self.calendar = calendar

    async def check(
        self, tenant: Tenant, date: str, time: str, party_size: int
    ) -> AvailabilityDecision:
        """Decide whether ``party_size`` guests can be seated.

        Args:
            tenant: Restaurant being asked
            date: Requested date (YYYY-MM-DD)
            time: Requested time (24-hour or AM/PM)
            party_size: Number of guests

        Returns:
            AvailabilityDecision; never raises
        """
        logger.info(
            f"Checking availability for tenant {tenant.id}: "
            f"date={date}, time={time}, party_size={party_size}"
        )

        try:
            decision = None
            if tenant.has_calendar() and self.calendar is not None:
                decision = await self._check_calendar(tenant, date, time, party_size)

            if decision is None:
                decision = await self._check_capacity(tenant, date, time, party_size)
        except Exception:
            logger.exception(f"Availability check failed for tenant {tenant.id}")
            return AvailabilityDecision(
                available=False, message=APOLOGY, source=AvailabilitySource.ERROR
            )

        logger.info(
            f"Availability for tenant {tenant.id}: available={decision.available} "
            f"via {decision.source.value}"
        )
        return decision

    async def _check_calendar(
        self, tenant: Tenant, date: str, time: str, party_size: int
    ) -> AvailabilityDecision | None:
        """Tier 1. Returns None when the calendar cannot answer."""
        timezone = tenant.timezone or self.config.default_timezone
        try:
            start = slot_start(date, time, timezone)
            busy = await self.calendar.query_busy(
                tenant.calendar_credentials, start, start + SLOT_LENGTH
            )
        except (TransportDegraded, ValueError, ZoneInfoNotFoundError) as e:
            logger.warning(
                f"Calendar check failed for tenant {tenant.id}, "
                f"falling back to local capacity: {e}"
            )
            return None

        if not busy:
            return AvailabilityDecision(
                available=True,
                message=f"Yes, we have availability for {party_size} guests on {date} at {time}.",
                source=AvailabilitySource.CALENDAR,
            )

        suggestions = await self._suggest(tenant, start)
        if suggestions:
            message = (
                "Sorry, that time is taken. However, we have availability at: "
                f"{', '.join(suggestions)}."
            )
        else:
            message = f"Sorry, we are fully booked on {date}."

        return AvailabilityDecision(
            available=False,
            message=message,
            suggestions=suggestions,
            source=AvailabilitySource.CALENDAR,
        )

    async def _suggest(self, tenant: Tenant, requested: datetime) -> list[str]:
        """Find up to three free 1-hour slots on the requested day."""
        day_start = requested.replace(hour=DAY_OPENS, minute=0)
        day_end = requested.replace(hour=DAY_CLOSES, minute=0)
        try:
            busy = await self.calendar.query_busy(
                tenant.calendar_credentials, day_start, day_end
            )
        except TransportDegraded as e:
            logger.warning(f"Could not compute suggestions for tenant {tenant.id}: {e}")
            return []

        slots = free_slots(day_start, day_end, busy)
        return [spoken_time(slot) for slot in slots[:MAX_SUGGESTIONS]]

    async def _check_capacity(
        self, tenant: Tenant, date: str, time: str, party_size: int
    ) -> AvailabilityDecision:
        """Tier 2: compare remaining seats with the party size."""
        capacity = tenant.capacity if tenant.capacity is not None else self.config.default_capacity
        booked = await self.store.count_confirmed_party_size(
            tenant.id, date, normalize_time(time)
        )
        available = capacity - booked >= party_size

        if available:
            message = f"Yes, we have availability for {party_size} guests on {date} at {time}."
        else:
            message = f"Sorry, we don't have availability for {party_size} guests at that time."

        return AvailabilityDecision(
            available=available, message=message, source=AvailabilitySource.CAPACITY
        )
