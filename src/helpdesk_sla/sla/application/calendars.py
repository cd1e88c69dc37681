"""
Calendar Configuration Service
===============================

Validates and stores business calendars. Saving a calendar re-derives the
deadlines of every in-flight ticket computed against it.
"""

from typing import Any, Dict, List, Tuple

from helpdesk_sla.core.exceptions import ResourceNotFoundException
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application.recalculation import RecalculationCoordinator
from helpdesk_sla.sla.application.services import ICalendarRepository
from helpdesk_sla.sla.domain import BusinessCalendar, SLACalculation

logger = get_logger(__name__)


class CalendarService:
    """Calendar reads and writes for the configuration API."""

    def __init__(
        self,
        calendars: ICalendarRepository,
        coordinator: RecalculationCoordinator
    ):
        self._calendars = calendars
        self._coordinator = coordinator

    async def list_calendars(self) -> List[BusinessCalendar]:
        return await self._calendars.list_all()

    async def get_calendar(self, calendar_id: str) -> BusinessCalendar:
        calendar = await self._calendars.get(calendar_id)
        if calendar is None:
            raise ResourceNotFoundException("BusinessCalendar", calendar_id)
        return calendar

    async def save_calendar(
        self,
        calendar_id: str,
        definition: Dict[str, Any]
    ) -> Tuple[BusinessCalendar, List[SLACalculation]]:
        """
        Validate and store a calendar, then recalculate affected tickets.

        Raises:
            ConfigurationException: if the definition is invalid (no working
                time, malformed holiday, overlapping windows, bad timezone)
        """
        calendar = BusinessCalendar.from_config({**definition, "id": calendar_id})
        saved = await self._calendars.save(calendar)

        logger.info(
            "Business calendar saved",
            extra={"calendar_id": calendar_id, "timezone": saved.timezone}
        )

        recalculated = await self._coordinator.recalculate_calendar(calendar_id)
        return saved, recalculated

    async def seed(self, calendars: List[BusinessCalendar]) -> int:
        """Store configured calendars that do not exist yet; returns the count added."""
        added = 0
        for calendar in calendars:
            if await self._calendars.get(calendar.id) is None:
                await self._calendars.save(calendar)
                added += 1

        if added:
            logger.info("Seeded business calendars", extra={"count": added})
        return added
