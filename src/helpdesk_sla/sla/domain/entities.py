"""
SLA Domain Entities
====================

Pure Python domain entities for SLA computation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from helpdesk_sla.config import (
    CLOSED_STATUSES,
    LegState,
    Priority,
    RecalcReason,
    SLALeg,
    TicketStatus,
)
from helpdesk_sla.sla.domain.calendar import as_utc


@dataclass
class Ticket:
    """
    Ticket snapshot as reported by the system of record.

    The engine never owns tickets; it only reads these fields.
    """

    id: str
    priority: Priority
    status: TicketStatus
    created_at: datetime
    contract_id: Optional[str] = None
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        # Snapshots from library callers may carry naive datetimes, taken as UTC
        for name in ("created_at", "first_response_at", "resolved_at", "updated_at"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, as_utc(value))
        if self.first_response_at and self.first_response_at < self.created_at:
            raise ValueError("first_response_at cannot be before created_at")

    @property
    def is_response_completed(self) -> bool:
        return self.first_response_at is not None

    @property
    def is_solution_completed(self) -> bool:
        return self.status in CLOSED_STATUSES

    @property
    def is_fully_completed(self) -> bool:
        """Both legs are historical facts and can no longer be re-derived."""
        return self.is_response_completed and self.is_solution_completed

    def is_leg_completed(self, leg: SLALeg) -> bool:
        if leg == SLALeg.RESPONSE:
            return self.is_response_completed
        return self.is_solution_completed


@dataclass
class SLACalculation:
    """
    One row of a ticket's SLA history.

    Rows are append-only. Only is_current and the per-leg escalation
    bookkeeping (state, level, last_alert_sent_at) change after insert.
    """

    ticket_id: str
    priority: Priority
    baseline_at: datetime
    reason: RecalcReason
    calendar_id: Optional[str] = None
    template_id: Optional[str] = None
    contract_id: Optional[str] = None
    response_minutes: Optional[int] = None
    solution_minutes: Optional[int] = None
    response_due_at: Optional[datetime] = None
    solution_due_at: Optional[datetime] = None
    is_current: bool = True
    version: int = 1
    calculated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Escalation bookkeeping
    response_state: LegState = LegState.ON_TRACK
    response_escalation_level: int = 0
    solution_state: LegState = LegState.ON_TRACK
    solution_escalation_level: int = 0
    last_alert_sent_at: Optional[datetime] = None

    def __post_init__(self):
        if self.response_due_at is None:
            self.response_state = LegState.NO_SLA
        if self.solution_due_at is None:
            self.solution_state = LegState.NO_SLA

    @property
    def has_sla(self) -> bool:
        return self.response_due_at is not None or self.solution_due_at is not None

    def due_at(self, leg: SLALeg) -> Optional[datetime]:
        return self.response_due_at if leg == SLALeg.RESPONSE else self.solution_due_at

    def state_of(self, leg: SLALeg) -> LegState:
        return self.response_state if leg == SLALeg.RESPONSE else self.solution_state

    def level_of(self, leg: SLALeg) -> int:
        if leg == SLALeg.RESPONSE:
            return self.response_escalation_level
        return self.solution_escalation_level

    def with_leg(self, leg: SLALeg, state: LegState, level: int) -> "SLACalculation":
        """Copy with one leg's bookkeeping replaced."""
        if leg == SLALeg.RESPONSE:
            return replace(self, response_state=state, response_escalation_level=level)
        return replace(self, solution_state=state, solution_escalation_level=level)

    def carry_escalation(self, previous: "SLACalculation") -> "SLACalculation":
        """
        Keep the previous row's bookkeeping on legs whose due date did not move.

        A threshold already crossed for the same deadline is never alerted twice.
        """
        calculation = self
        carried = False
        for leg in (SLALeg.RESPONSE, SLALeg.SOLUTION):
            due_at = self.due_at(leg)
            if due_at is None or due_at != previous.due_at(leg):
                continue
            if self.state_of(leg) != LegState.ON_TRACK:
                continue
            calculation = calculation.with_leg(leg, previous.state_of(leg), previous.level_of(leg))
            carried = True
        if carried:
            calculation = replace(calculation, last_alert_sent_at=previous.last_alert_sent_at)
        return calculation

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "priority": self.priority.value,
            "reason": self.reason.value,
            "template_id": self.template_id,
            "contract_id": self.contract_id,
            "calendar_id": self.calendar_id,
            "baseline_at": iso(self.baseline_at),
            "response_minutes": self.response_minutes,
            "solution_minutes": self.solution_minutes,
            "response_due_at": iso(self.response_due_at),
            "solution_due_at": iso(self.solution_due_at),
            "calculated_at": iso(self.calculated_at),
            "is_current": self.is_current,
            "version": self.version,
            "response": {
                "state": self.response_state.value,
                "escalation_level": self.response_escalation_level,
            },
            "solution": {
                "state": self.solution_state.value,
                "escalation_level": self.solution_escalation_level,
            },
            "last_alert_sent_at": iso(self.last_alert_sent_at),
        }


@dataclass(frozen=True)
class StatusEvent:
    """
    Emitted by the escalation sweep when a leg moves forward a state.

    idempotency_key is stable for a given calculation, leg and threshold,
    so downstream notifiers can drop duplicates.
    """

    ticket_id: str
    calculation_id: str
    leg: SLALeg
    previous_state: LegState
    state: LegState
    escalation_level: int
    priority: Priority
    due_at: Optional[datetime]
    occurred_at: datetime
    met: Optional[bool] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.calculation_id}:{self.leg.value}:{self.escalation_level}:{self.state.value}"

    @property
    def is_alert(self) -> bool:
        """Approaching and breached transitions are escalation alerts."""
        return self.state in (LegState.APPROACHING, LegState.BREACHED)

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "calculation_id": self.calculation_id,
            "leg": self.leg.value,
            "previous_state": self.previous_state.value,
            "state": self.state.value,
            "escalation_level": self.escalation_level,
            "priority": self.priority.value,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "occurred_at": self.occurred_at.isoformat(),
            "met": self.met,
            "idempotency_key": self.idempotency_key,
        }


@dataclass
class SLAStatus:
    """Live status of a ticket's current calculation."""

    ticket_id: str
    calculation_id: Optional[str]
    response_status: LegState
    solution_status: LegState
    response_due_at: Optional[datetime] = None
    solution_due_at: Optional[datetime] = None
    # Wall-clock minutes to the nearest open deadline (negative when overdue)
    time_remaining_minutes: Optional[float] = None
    business_minutes_remaining: Optional[float] = None

    @property
    def has_sla(self) -> bool:
        return not (
            self.response_status == LegState.NO_SLA
            and self.solution_status == LegState.NO_SLA
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "ticket_id": self.ticket_id,
            "calculation_id": self.calculation_id,
            "has_sla": self.has_sla,
            "response_status": self.response_status.value,
            "solution_status": self.solution_status.value,
            "response_due_at": self.response_due_at.isoformat() if self.response_due_at else None,
            "solution_due_at": self.solution_due_at.isoformat() if self.solution_due_at else None,
            "time_remaining_minutes": (
                round(self.time_remaining_minutes, 2)
                if self.time_remaining_minutes is not None else None
            ),
            "business_minutes_remaining": (
                round(self.business_minutes_remaining, 2)
                if self.business_minutes_remaining is not None else None
            ),
        }
