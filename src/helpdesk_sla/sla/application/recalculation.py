"""
Recalculation Coordinator
==========================

Appends a new current SLA calculation when a ticket's priority, contract or
calendar changes, when it is reopened, or on explicit request.

Recalculation is serialized per ticket twice over: an in-process keyed
asyncio.Lock, and the store's optimistic check on the current row ID, which
also catches writers in other processes. A lost race comes back as Stale
and is retried against the freshly inserted row.
"""

import asyncio
import weakref
from datetime import datetime
from typing import List, Optional

from helpdesk_sla.config import CLOSED_STATUSES, OPEN_STATUSES, RecalcReason
from helpdesk_sla.core.exceptions import ConcurrencyException, ResourceNotFoundException
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application.services import (
    Clock,
    ISLACalculationStore,
    ITicketReader,
    SLAService,
    utc_now,
)
from helpdesk_sla.sla.domain import (
    Applied,
    RecalcResult,
    Rejected,
    SLACalculation,
    Stale,
    Ticket,
)

logger = get_logger(__name__)


class RecalculationCoordinator:
    """Re-derives a ticket's deadlines without ever editing a prior row."""

    # Shared by every coordinator in the process; entries vanish when unused
    _locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __init__(
        self,
        sla_service: SLAService,
        ticket_reader: ITicketReader,
        store: ISLACalculationStore,
        clock: Clock = utc_now,
        max_attempts: int = 3
    ):
        self._sla_service = sla_service
        self._ticket_reader = ticket_reader
        self._store = store
        self._clock = clock
        self._max_attempts = max_attempts

    async def recalculate(
        self,
        ticket_id: str,
        reason: RecalcReason,
        reopened_at: Optional[datetime] = None
    ) -> Optional[SLACalculation]:
        """
        Append a new current calculation for a ticket.

        Returns:
            The new calculation, or the existing current one when the ticket
            is completed on both legs

        Raises:
            ResourceNotFoundException: if the ticket is unknown
            ConcurrencyException: if every attempt lost the race
        """
        result = await self.apply(ticket_id, reason, reopened_at)
        return result.calculation

    async def apply(
        self,
        ticket_id: str,
        reason: RecalcReason,
        reopened_at: Optional[datetime] = None
    ) -> RecalcResult:
        """Like recalculate(), but returns the Applied or Rejected outcome."""
        async with self._lock_for(ticket_id):
            for attempt_number in range(1, self._max_attempts + 1):
                result = await self.attempt(ticket_id, reason, reopened_at)
                if not isinstance(result, Stale):
                    return result

                logger.warning(
                    "Stale SLA calculation, retrying",
                    extra={
                        "ticket_id": ticket_id,
                        "reason": reason.value,
                        "attempt": attempt_number,
                        "expected_calculation_id": result.expected_calculation_id,
                    }
                )

        raise ConcurrencyException("SLACalculation", ticket_id, self._max_attempts)

    async def attempt(
        self,
        ticket_id: str,
        reason: RecalcReason,
        reopened_at: Optional[datetime] = None
    ) -> RecalcResult:
        """
        Single optimistic recalculation attempt, without locking or retries.

        Deadlines are re-derived from the ticket's creation instant, or from
        the reopen instant when reason is reopen.
        """
        ticket = await self._ticket_reader.get(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)

        current = await self._store.get_current(ticket_id)

        if ticket.is_fully_completed:
            logger.info(
                "Recalculation rejected, ticket completed",
                extra={"ticket_id": ticket_id, "reason": reason.value}
            )
            return Rejected("ticket completed on both legs", current)

        if reason == RecalcReason.REOPEN:
            baseline_at = reopened_at or self._clock()
        else:
            baseline_at = ticket.created_at

        calculation = await self._sla_service.derive_calculation(ticket, baseline_at, reason)
        if current is not None:
            calculation = calculation.carry_escalation(current)
        expected_id = current.id if current else None

        stored = await self._store.replace_current(calculation, expected_id)
        if stored is None:
            return Stale(expected_id)

        logger.info(
            "SLA recalculated",
            extra={
                "ticket_id": ticket_id,
                "calculation_id": stored.id,
                "previous_calculation_id": expected_id,
                "reason": reason.value,
                "response_due_at": stored.response_due_at.isoformat() if stored.response_due_at else None,
                "solution_due_at": stored.solution_due_at.isoformat() if stored.solution_due_at else None,
            }
        )
        return Applied(stored)

    async def recalculate_calendar(self, calendar_id: str) -> List[SLACalculation]:
        """
        Recalculate every in-flight ticket whose current calculation was
        computed against the given calendar.
        """
        applied = []
        for calculation in await self._store.list_current_by_calendar(calendar_id):
            try:
                result = await self.apply(calculation.ticket_id, RecalcReason.CALENDAR_CHANGE)
            except ResourceNotFoundException:
                logger.warning(
                    "Calendar recalculation skipped unknown ticket",
                    extra={"ticket_id": calculation.ticket_id, "calendar_id": calendar_id}
                )
                continue
            if isinstance(result, Applied):
                applied.append(result.calculation)

        logger.info(
            "Calendar recalculation complete",
            extra={"calendar_id": calendar_id, "recalculated": len(applied)}
        )
        return applied

    @staticmethod
    def reason_for_change(previous: Ticket, current: Ticket) -> Optional[RecalcReason]:
        """
        Derive the recalculation trigger from two snapshots of a ticket.

        Returns None when nothing relevant to the SLA changed.
        """
        if previous.status in CLOSED_STATUSES and current.status in OPEN_STATUSES:
            return RecalcReason.REOPEN
        if previous.contract_id != current.contract_id:
            return RecalcReason.CONTRACT_CHANGE
        if previous.priority != current.priority:
            return RecalcReason.PRIORITY_CHANGE
        return None

    @classmethod
    def _lock_for(cls, ticket_id: str) -> asyncio.Lock:
        lock = cls._locks.get(ticket_id)
        if lock is None:
            lock = asyncio.Lock()
            cls._locks[ticket_id] = lock
        return lock
