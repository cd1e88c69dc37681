"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain objects and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from helpdesk_sla.config import LegState, RecalcReason, SLALeg, VALID_LEGS
from helpdesk_sla.core.exceptions import ResourceNotFoundException
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.domain import (
    BusinessCalendar,
    DeadlineCalculator,
    DueDates,
    LegEvaluator,
    SLACalculation,
    SLAConfig,
    SLARuleResolver,
    SLAStatus,
    Ticket,
    as_utc,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketReader(ABC):
    """Read access to ticket snapshots owned by the system of record."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[Ticket]:
        """Get a ticket by ID."""

    @abstractmethod
    async def get_many(self, ticket_ids: Sequence[str]) -> Dict[str, Ticket]:
        """Get tickets by ID; unknown IDs are absent from the result."""


class ITicketRepository(ITicketReader):
    """Ticket read model, written only by the ingest endpoint."""

    @abstractmethod
    async def upsert(self, ticket: Ticket) -> Ticket:
        """Insert or replace a ticket snapshot."""


class ISLACalculationStore(ABC):
    """
    Append-only SLA calculation history.

    At most one row per ticket is current. Writers guard the switch of the
    current row with the ID of the row they read.
    """

    @abstractmethod
    async def get_current(self, ticket_id: str) -> Optional[SLACalculation]:
        """Get the current calculation of a ticket."""

    @abstractmethod
    async def list_history(self, ticket_id: str) -> List[SLACalculation]:
        """All calculations of a ticket, newest first."""

    @abstractmethod
    async def replace_current(
        self,
        calculation: SLACalculation,
        expected_current_id: Optional[str]
    ) -> Optional[SLACalculation]:
        """
        Retire the expected current row and insert `calculation` as current,
        atomically.

        expected_current_id None means the ticket must have no current row.

        Returns:
            The stored calculation, or None when the current row is no
            longer the expected one (stale)
        """

    @abstractmethod
    async def list_in_flight(self) -> List[SLACalculation]:
        """Current calculations with at least one leg still being tracked."""

    @abstractmethod
    async def list_current_by_calendar(self, calendar_id: str) -> List[SLACalculation]:
        """Current calculations computed against a calendar."""

    @abstractmethod
    async def advance_leg(
        self,
        calculation_id: str,
        leg: SLALeg,
        expected_state: LegState,
        expected_level: int,
        new_state: LegState,
        new_level: int,
        alert_sent_at: Optional[datetime]
    ) -> bool:
        """
        Compare-and-set one leg's escalation bookkeeping on a current row.

        Returns:
            True when this caller won the transition
        """


class ICalendarRepository(ABC):
    """Business calendar storage."""

    @abstractmethod
    async def get(self, calendar_id: str) -> Optional[BusinessCalendar]:
        """Get calendar by ID."""

    @abstractmethod
    async def list_all(self) -> List[BusinessCalendar]:
        """List all calendars."""

    @abstractmethod
    async def save(self, calendar: BusinessCalendar) -> BusinessCalendar:
        """Create or replace a calendar."""


class ISLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""


# ========== Application Services ==========

class SLAService:
    """
    Computes initial SLA calculations and live ticket status.

    Also derives the calculation rows the RecalculationCoordinator appends.
    """

    def __init__(
        self,
        ticket_reader: ITicketReader,
        store: ISLACalculationStore,
        calendars: ICalendarRepository,
        config_provider: ISLAConfigProvider,
        clock: Clock = utc_now
    ):
        self._ticket_reader = ticket_reader
        self._store = store
        self._calendars = calendars
        self._config_provider = config_provider
        self._clock = clock

    async def compute_initial_sla(self, ticket: Ticket) -> SLACalculation:
        """
        Create the first calculation of a ticket.

        Idempotent: a ticket that already has a current calculation gets
        that calculation back. When no rule resolves the row is still
        written, with null due dates, so the ticket's history is complete.
        """
        existing = await self._store.get_current(ticket.id)
        if existing is not None:
            return existing

        calculation = await self.derive_calculation(
            ticket, ticket.created_at, RecalcReason.CREATION
        )
        stored = await self._store.replace_current(calculation, None)
        if stored is None:
            # Another writer created the first row meanwhile
            current = await self._store.get_current(ticket.id)
            if current is not None:
                return current
            raise ResourceNotFoundException("SLACalculation", ticket.id)

        logger.info(
            "Initial SLA calculated",
            extra={
                "ticket_id": ticket.id,
                "calculation_id": stored.id,
                "priority": ticket.priority.value,
                "has_sla": stored.has_sla,
                "response_due_at": stored.response_due_at.isoformat() if stored.response_due_at else None,
                "solution_due_at": stored.solution_due_at.isoformat() if stored.solution_due_at else None,
            }
        )
        return stored

    async def get_current_status(
        self,
        ticket_id: str,
        now: Optional[datetime] = None
    ) -> SLAStatus:
        """
        Evaluate the ticket's current calculation against `now`.

        Raises:
            ResourceNotFoundException: if the ticket is unknown
        """
        ticket = await self._require_ticket(ticket_id)
        now = as_utc(now or self._clock())
        calculation = await self._store.get_current(ticket_id)

        if calculation is None:
            return SLAStatus(
                ticket_id=ticket_id,
                calculation_id=None,
                response_status=LegState.NO_SLA,
                solution_status=LegState.NO_SLA,
            )

        warning = self._config_provider.get_config().get_warning_minutes(calculation.priority)
        states = {
            leg: LegEvaluator.evaluate(
                calculation.due_at(leg), now, warning, ticket.is_leg_completed(leg)
            )
            for leg in VALID_LEGS
        }

        status = SLAStatus(
            ticket_id=ticket_id,
            calculation_id=calculation.id,
            response_status=states[SLALeg.RESPONSE],
            solution_status=states[SLALeg.SOLUTION],
            response_due_at=calculation.response_due_at,
            solution_due_at=calculation.solution_due_at,
        )

        open_due = [
            calculation.due_at(leg) for leg in VALID_LEGS
            if states[leg] not in (LegState.NO_SLA, LegState.COMPLETED)
        ]
        if open_due:
            nearest = min(open_due)
            status.time_remaining_minutes = (nearest - now).total_seconds() / 60
            status.business_minutes_remaining = await self._business_minutes_remaining(
                calculation.calendar_id, now, nearest
            )
        return status

    async def get_history(self, ticket_id: str) -> List[SLACalculation]:
        """Audit trail of a ticket's calculations, newest first."""
        await self._require_ticket(ticket_id)
        return await self._store.list_history(ticket_id)

    async def derive_calculation(
        self,
        ticket: Ticket,
        baseline_at: datetime,
        reason: RecalcReason
    ) -> SLACalculation:
        """
        Build (but do not store) a calculation from the ticket's current
        contract, priority and calendar.
        """
        config = self._config_provider.get_config()

        contract = None
        if ticket.contract_id:
            contract = config.get_contract(ticket.contract_id)
            if contract is None:
                logger.warning(
                    "Unknown contract, using default template",
                    extra={"ticket_id": ticket.id, "contract_id": ticket.contract_id}
                )

        budget = SLARuleResolver(config).resolve(contract, ticket.priority)
        calendar_id = (contract.calendar_id if contract and contract.calendar_id
                       else config.default_calendar_id)

        due_dates = DueDates()
        if budget is not None:
            calendar = await self.get_calendar(calendar_id)
            due_dates = DeadlineCalculator.compute_due_dates(baseline_at, calendar, budget)

        calculation = SLACalculation(
            ticket_id=ticket.id,
            priority=ticket.priority,
            baseline_at=baseline_at,
            reason=reason,
            calendar_id=calendar_id,
            template_id=budget.template_id if budget else None,
            contract_id=contract.id if contract else None,
            response_minutes=budget.response_minutes if budget else None,
            solution_minutes=budget.solution_minutes if budget else None,
            response_due_at=due_dates.response_due_at,
            solution_due_at=due_dates.solution_due_at,
            calculated_at=self._clock(),
        )

        # Legs already finished are never escalated again
        for leg in VALID_LEGS:
            if calculation.due_at(leg) is not None and ticket.is_leg_completed(leg):
                calculation = calculation.with_leg(leg, LegState.COMPLETED, 0)
        return calculation

    async def get_calendar(self, calendar_id: str) -> BusinessCalendar:
        calendar = await self._calendars.get(calendar_id)
        if calendar is None:
            raise ResourceNotFoundException("BusinessCalendar", calendar_id)
        return calendar

    async def _require_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._ticket_reader.get(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket

    async def _business_minutes_remaining(
        self,
        calendar_id: Optional[str],
        now: datetime,
        due_at: datetime
    ) -> Optional[float]:
        calendar = await self._calendars.get(calendar_id) if calendar_id else None
        if calendar is None:
            return None
        if due_at >= now:
            return calendar.business_minutes_between(now, due_at)
        return -calendar.business_minutes_between(due_at, now)
