"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

These are the database representations of our domain objects.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk_sla.config import LegState, Priority, RecalcReason, TicketStatus
from helpdesk_sla.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketModel(Base):
    """
    Read model of tickets fed by the ingest endpoint.

    Maps to the 'tickets' table. IDs are those of the system of record.
    """
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    priority: Mapped[Priority] = mapped_column(String(20), nullable=False)
    status: Mapped[TicketStatus] = mapped_column(String(20), nullable=False, default=TicketStatus.OPEN)
    contract_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class BusinessCalendarModel(Base):
    """
    Database model for business calendars.

    Maps to the 'business_calendars' table. Working hours and holidays are
    stored as JSON documents.
    """
    __tablename__ = "business_calendars"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    # {"0": [{"start": "09:00", "end": "18:00"}], ...}
    working_hours: Mapped[Dict[str, List[Dict[str, str]]]] = mapped_column(JSON, nullable=False)
    # [{"date": "2024-12-25", "recurrence": "yearly", "name": "Christmas"}, ...]
    holidays: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class SLACalculationModel(Base):
    """
    Database model for the append-only SLA calculation history.

    Maps to the 'sla_calculations' table. The partial unique index allows
    a single current row per ticket.
    """
    __tablename__ = "sla_calculations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ticket_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Per-ticket sequence number, 1 for the creation row
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    priority: Mapped[Priority] = mapped_column(String(20), nullable=False)
    reason: Mapped[RecalcReason] = mapped_column(String(30), nullable=False)
    template_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    contract_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    calendar_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    baseline_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    response_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    solution_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    solution_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Escalation bookkeeping, written by the sweep
    response_state: Mapped[LegState] = mapped_column(String(20), nullable=False)
    response_escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    solution_state: Mapped[LegState] = mapped_column(String(20), nullable=False)
    solution_escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_alert_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("ticket_id", "version", name="uq_sla_calculations_ticket_version"),
        Index(
            "uq_sla_calculations_current_ticket",
            "ticket_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
    )
