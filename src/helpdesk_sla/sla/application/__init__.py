"""
SLA Application Layer
======================

Contains:
- Services: SLAService, RecalculationCoordinator, EscalationEngine, CalendarService
- Repository interfaces the infrastructure layer implements
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from helpdesk_sla.sla.application.calendars import CalendarService
from helpdesk_sla.sla.application.dto import (
    CalendarRequest,
    IngestResponse,
    IngestResult,
    RecalculateRequest,
    SweepRequest,
    SweepResponse,
    TicketIngestRequest,
    TicketSnapshotDTO,
)
from helpdesk_sla.sla.application.escalation import EscalationEngine, IEscalationNotifier, in_shard
from helpdesk_sla.sla.application.recalculation import RecalculationCoordinator
from helpdesk_sla.sla.application.services import (
    ICalendarRepository,
    ISLACalculationStore,
    ISLAConfigProvider,
    ITicketReader,
    ITicketRepository,
    SLAService,
    utc_now,
)

__all__ = [
    # DTOs
    "TicketSnapshotDTO",
    "TicketIngestRequest",
    "RecalculateRequest",
    "CalendarRequest",
    "SweepRequest",
    "IngestResult",
    "IngestResponse",
    "SweepResponse",
    # Services
    "SLAService",
    "RecalculationCoordinator",
    "EscalationEngine",
    "CalendarService",
    "in_shard",
    "utc_now",
    # Interfaces
    "ITicketReader",
    "ITicketRepository",
    "ISLACalculationStore",
    "ICalendarRepository",
    "ISLAConfigProvider",
    "IEscalationNotifier",
]
