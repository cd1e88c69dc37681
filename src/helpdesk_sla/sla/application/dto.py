"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from helpdesk_sla.config import Priority, RecalcReason, TicketStatus
from helpdesk_sla.sla.domain import Ticket, as_utc


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["critical", "high", "medium", "low"]
TicketStatusStr = Literal["open", "in_progress", "pending", "resolved", "closed"]
RecalcReasonStr = Literal[
    "priority_change", "contract_change", "calendar_change", "manual", "reopen"
]
IngestActionStr = Literal["created", "recalculated", "unchanged", "rejected"]


# ========== Request DTOs ==========

class TicketSnapshotDTO(BaseModel):
    """Ticket fields the SLA engine reads from the system of record."""
    id: str = Field(..., min_length=1, description="Ticket ID in the system of record")
    priority: PriorityStr = Field(..., description="Ticket priority")
    status: TicketStatusStr = Field(default="open", description="Ticket status")
    created_at: datetime = Field(..., description="Ticket creation timestamp")
    contract_id: Optional[str] = Field(None, description="Contract the ticket is filed under")
    first_response_at: Optional[datetime] = Field(None, description="First agent response")
    resolved_at: Optional[datetime] = Field(None, description="Resolution time")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")

    @field_validator("first_response_at")
    @classmethod
    def validate_first_response_at(cls, v: Optional[datetime], info) -> Optional[datetime]:
        """Ensure first_response_at is not before created_at."""
        created_at = info.data.get("created_at")
        if v is not None and created_at is not None and as_utc(v) < as_utc(created_at):
            raise ValueError("first_response_at cannot be before created_at")
        return v

    def to_domain(self) -> Ticket:
        """Convert to domain entity with UTC timestamps."""
        return Ticket(
            id=self.id,
            priority=Priority(self.priority),
            status=TicketStatus(self.status),
            created_at=as_utc(self.created_at),
            contract_id=self.contract_id,
            first_response_at=as_utc(self.first_response_at) if self.first_response_at else None,
            resolved_at=as_utc(self.resolved_at) if self.resolved_at else None,
            updated_at=as_utc(self.updated_at) if self.updated_at else None,
        )


class TicketIngestRequest(BaseModel):
    """Request model for ticket ingestion."""
    tickets: List[TicketSnapshotDTO] = Field(
        ...,
        min_length=1,
        description="Ticket snapshots to ingest"
    )


class RecalculateRequest(BaseModel):
    """Explicit recalculation trigger."""
    reason: RecalcReasonStr = Field(default="manual", description="Why the deadlines change")
    reopened_at: Optional[datetime] = Field(
        None,
        description="Reopen instant used as the new baseline when reason is reopen"
    )

    def to_reason(self) -> RecalcReason:
        return RecalcReason(self.reason)


class CalendarRequest(BaseModel):
    """
    Calendar definition for PUT /sla/calendars/{id}.

    Validated by BusinessCalendar.from_config; errors surface as
    configuration errors (422).
    """
    name: str = ""
    timezone: str = "UTC"
    working_hours: Dict[str, List[Dict[str, str]]] = Field(
        default_factory=dict,
        description="Weekday (0 = Monday) to list of {start, end} HH:MM windows"
    )
    holidays: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="List of {date, recurrence: none|yearly|monthly, name}"
    )


class SweepRequest(BaseModel):
    """Manual escalation sweep."""
    now: Optional[datetime] = Field(None, description="Evaluation instant (defaults to now)")
    shard_index: int = Field(default=0, ge=0)
    shard_count: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def validate_shard(self) -> "SweepRequest":
        if self.shard_index >= self.shard_count:
            raise ValueError("shard_index must be < shard_count")
        return self


# ========== Response DTOs ==========

class IngestResult(BaseModel):
    """Outcome for one ingested ticket."""
    ticket_id: str
    action: IngestActionStr
    calculation_id: Optional[str] = None
    reason: Optional[str] = None


class IngestResponse(BaseModel):
    """Response model for ticket ingestion."""
    created: int = Field(..., description="Tickets that received their first calculation")
    recalculated: int = Field(..., description="Tickets whose deadlines were re-derived")
    unchanged: int = Field(..., description="Tickets without SLA-relevant changes")
    rejected: int = Field(0, description="Tickets whose change was refused, e.g. on a completed calculation")
    results: List[IngestResult] = Field(default_factory=list)


class SweepResponse(BaseModel):
    """Response model for a manual sweep."""
    evaluated_at: datetime
    events: List[Dict[str, Any]] = Field(default_factory=list)
    notified: int = 0
