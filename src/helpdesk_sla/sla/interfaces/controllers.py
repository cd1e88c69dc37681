"""
SLA Controllers (API Routes)
=============================

FastAPI routes for the SLA engine.

Controllers are thin - they delegate to application services. Domain
errors are rendered by the exception handlers in shared.api.middleware.
"""

import time
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk_sla.config import RecalcReason, settings
from helpdesk_sla.infrastructure.database import get_session
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application import (
    CalendarRequest,
    CalendarService,
    EscalationEngine,
    IEscalationNotifier,
    IngestResponse,
    IngestResult,
    ISLAConfigProvider,
    RecalculateRequest,
    RecalculationCoordinator,
    SLAService,
    SweepRequest,
    SweepResponse,
    TicketIngestRequest,
    utc_now,
)
from helpdesk_sla.sla.application.services import Clock
from helpdesk_sla.sla.domain import Applied
from helpdesk_sla.sla.infrastructure import (
    SQLAlchemyCalendarRepository,
    SQLAlchemySLACalculationStore,
    SQLAlchemyTicketReader,
    YAMLConfigProvider,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA"])


# ========== Example payloads for Swagger ==========

TICKET_SNAPSHOT_EXAMPLE = {
    "id": "T-1001",
    "priority": "critical",
    "status": "open",
    "contract_id": "acme-gold",
    "created_at": "2024-03-01T20:30:00Z",
    "first_response_at": None,
    "updated_at": "2024-03-01T20:30:00Z"
}

SLA_STATUS_EXAMPLE = {
    "ticket_id": "T-1001",
    "calculation_id": "5b0f3c9e-8a51-4c5e-9d8e-2f6a3f1c7b20",
    "has_sla": True,
    "response_status": "on_track",
    "solution_status": "on_track",
    "response_due_at": "2024-03-04T12:30:00+00:00",
    "solution_due_at": "2024-03-05T20:30:00+00:00",
    "time_remaining_minutes": 2520.0,
    "business_minutes_remaining": 60.0
}

CALENDAR_EXAMPLE = {
    "name": "Business hours (Sao Paulo)",
    "timezone": "America/Sao_Paulo",
    "working_hours": {
        "0": [{"start": "09:00", "end": "18:00"}],
        "1": [{"start": "09:00", "end": "18:00"}],
        "2": [{"start": "09:00", "end": "18:00"}],
        "3": [{"start": "09:00", "end": "18:00"}],
        "4": [{"start": "09:00", "end": "18:00"}]
    },
    "holidays": [
        {"date": "2024-12-25", "recurrence": "yearly", "name": "Christmas"}
    ]
}


# ========== Dependencies ==========

def get_config_provider(request: Request) -> ISLAConfigProvider:
    """Hot-reloading manager when the app started one, else a static YAML load."""
    manager = getattr(request.app.state, "sla_config_manager", None)
    if manager is not None:
        return manager

    provider = getattr(request.app.state, "static_config_provider", None)
    if provider is None:
        provider = YAMLConfigProvider(settings.sla_config_path)
        request.app.state.static_config_provider = provider
    return provider


def get_clock() -> Clock:
    return utc_now


def get_notifier(request: Request) -> Optional[IEscalationNotifier]:
    return getattr(request.app.state, "slack_client", None)


async def get_sla_service(
    session: AsyncSession = Depends(get_session),
    config_provider: ISLAConfigProvider = Depends(get_config_provider),
    clock: Clock = Depends(get_clock)
) -> SLAService:
    return SLAService(
        SQLAlchemyTicketReader(session),
        SQLAlchemySLACalculationStore(session),
        SQLAlchemyCalendarRepository(session),
        config_provider,
        clock
    )


async def get_coordinator(
    session: AsyncSession = Depends(get_session),
    sla_service: SLAService = Depends(get_sla_service),
    clock: Clock = Depends(get_clock)
) -> RecalculationCoordinator:
    return RecalculationCoordinator(
        sla_service,
        SQLAlchemyTicketReader(session),
        SQLAlchemySLACalculationStore(session),
        clock,
        max_attempts=settings.recalculation_max_attempts
    )


async def get_escalation_engine(
    session: AsyncSession = Depends(get_session),
    config_provider: ISLAConfigProvider = Depends(get_config_provider),
    clock: Clock = Depends(get_clock)
) -> EscalationEngine:
    return EscalationEngine(
        SQLAlchemyTicketReader(session),
        SQLAlchemySLACalculationStore(session),
        config_provider,
        clock
    )


async def get_calendar_service(
    session: AsyncSession = Depends(get_session),
    coordinator: RecalculationCoordinator = Depends(get_coordinator)
) -> CalendarService:
    return CalendarService(SQLAlchemyCalendarRepository(session), coordinator)


# ========== Tickets ==========

@router.post(
    "/tickets",
    response_model=IngestResponse,
    summary="Ingest ticket snapshots",
    description="""
    Feed ticket snapshots from the system of record.

    - New tickets get their initial SLA calculation.
    - Priority or contract changes, and reopening a resolved/closed ticket,
      append a new current calculation.
    - Anything else (status progress, first response) is picked up by the
      escalation sweep.
    """,
    responses={200: {"content": {"application/json": {"example": {
        "created": 1, "recalculated": 0, "unchanged": 0, "rejected": 0,
        "results": [{"ticket_id": "T-1001", "action": "created",
                     "calculation_id": "5b0f3c9e-8a51-4c5e-9d8e-2f6a3f1c7b20",
                     "reason": "creation"}]
    }}}}}
)
async def ingest_tickets(
    request: TicketIngestRequest = Body(..., examples=[{"tickets": [TICKET_SNAPSHOT_EXAMPLE]}]),
    session: AsyncSession = Depends(get_session),
    sla_service: SLAService = Depends(get_sla_service),
    coordinator: RecalculationCoordinator = Depends(get_coordinator)
):
    start_time = time.perf_counter()
    tickets = SQLAlchemyTicketReader(session)
    store = SQLAlchemySLACalculationStore(session)
    results = []

    for dto in request.tickets:
        ticket = dto.to_domain()
        previous = await tickets.get(ticket.id)
        await tickets.upsert(ticket)

        if previous is None or await store.get_current(ticket.id) is None:
            calculation = await sla_service.compute_initial_sla(ticket)
            results.append(IngestResult(
                ticket_id=ticket.id,
                action="created",
                calculation_id=calculation.id,
                reason=calculation.reason.value
            ))
            continue

        reason = coordinator.reason_for_change(previous, ticket)
        if reason is None:
            results.append(IngestResult(ticket_id=ticket.id, action="unchanged"))
            continue

        reopened_at = ticket.updated_at if reason == RecalcReason.REOPEN else None
        outcome = await coordinator.apply(ticket.id, reason, reopened_at)
        results.append(IngestResult(
            ticket_id=ticket.id,
            action="recalculated" if isinstance(outcome, Applied) else "rejected",
            calculation_id=outcome.calculation.id if outcome.calculation else None,
            reason=reason.value
        ))

    counts = {action: sum(1 for r in results if r.action == action)
              for action in ("created", "recalculated", "unchanged", "rejected")}

    logger.info(
        "Ticket ingestion complete",
        extra={
            "tickets_created": counts["created"],
            "tickets_recalculated": counts["recalculated"],
            "tickets_unchanged": counts["unchanged"],
            "tickets_rejected": counts["rejected"],
            "processing_time_ms": int((time.perf_counter() - start_time) * 1000)
        }
    )

    return IngestResponse(
        created=counts["created"],
        recalculated=counts["recalculated"],
        unchanged=counts["unchanged"],
        rejected=counts["rejected"],
        results=results
    )


@router.get(
    "/tickets/{ticket_id}",
    summary="Get current SLA status",
    responses={
        200: {"content": {"application/json": {"example": SLA_STATUS_EXAMPLE}}},
        404: {"description": "Ticket not found"}
    }
)
async def get_ticket_status(
    ticket_id: str,
    sla_service: SLAService = Depends(get_sla_service)
):
    status = await sla_service.get_current_status(ticket_id)
    return status.to_dict()


@router.get(
    "/tickets/{ticket_id}/calculations",
    summary="Get SLA calculation history",
    description="Every calculation ever written for the ticket, newest first.",
    responses={404: {"description": "Ticket not found"}}
)
async def get_ticket_history(
    ticket_id: str,
    sla_service: SLAService = Depends(get_sla_service)
):
    history = await sla_service.get_history(ticket_id)
    return {
        "ticket_id": ticket_id,
        "calculations": [calculation.to_dict() for calculation in history]
    }


@router.post(
    "/tickets/{ticket_id}/recalculate",
    summary="Recalculate SLA deadlines",
    description="""
    Append a new current calculation derived from the ticket's creation
    instant (or the reopen instant for `reason=reopen`). Tickets completed
    on both legs are left unchanged.
    """,
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "Concurrent recalculations kept conflicting"}
    }
)
async def recalculate_ticket(
    ticket_id: str,
    request: Optional[RecalculateRequest] = None,
    coordinator: RecalculationCoordinator = Depends(get_coordinator)
):
    request = request or RecalculateRequest()
    outcome = await coordinator.apply(ticket_id, request.to_reason(), request.reopened_at)
    return {
        "ticket_id": ticket_id,
        "status": "applied" if isinstance(outcome, Applied) else "rejected",
        "calculation": outcome.calculation.to_dict() if outcome.calculation else None
    }


# ========== Escalation ==========

@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run an escalation sweep now",
    description="Evaluates every in-flight calculation and returns the transitions it fired."
)
async def run_sweep(
    request: Optional[SweepRequest] = None,
    session: AsyncSession = Depends(get_session),
    engine: EscalationEngine = Depends(get_escalation_engine),
    notifier: Optional[IEscalationNotifier] = Depends(get_notifier),
    clock: Clock = Depends(get_clock)
):
    request = request or SweepRequest()
    now = request.now or clock()
    events = await engine.sweep(now, request.shard_index, request.shard_count)

    # Bookkeeping is durable before anyone is alerted
    await session.commit()
    notified = await engine.publish(events, notifier) if notifier else 0

    return SweepResponse(
        evaluated_at=now,
        events=[event.to_dict() for event in events],
        notified=notified
    )


# ========== Configuration ==========

@router.get("/templates", summary="List SLA templates and contracts")
async def list_templates(
    config_provider: ISLAConfigProvider = Depends(get_config_provider)
):
    config = config_provider.get_config()
    return {
        "default_template_id": config.default_template_id,
        "default_calendar_id": config.default_calendar_id,
        "warning_minutes": {priority.value: minutes for priority, minutes in config.warning_minutes.items()},
        "templates": [template.model_dump(mode="json") for template in config.templates],
        "contracts": [contract.model_dump(mode="json") for contract in config.contracts],
    }


@router.get("/calendars", summary="List business calendars")
async def list_calendars(
    calendar_service: CalendarService = Depends(get_calendar_service)
):
    calendars = await calendar_service.list_calendars()
    return {"calendars": [calendar.model_dump(mode="json") for calendar in calendars]}


@router.get(
    "/calendars/{calendar_id}",
    summary="Get a business calendar",
    responses={404: {"description": "Calendar not found"}}
)
async def get_calendar(
    calendar_id: str,
    calendar_service: CalendarService = Depends(get_calendar_service)
):
    calendar = await calendar_service.get_calendar(calendar_id)
    return calendar.model_dump(mode="json")


@router.put(
    "/calendars/{calendar_id}",
    summary="Create or replace a business calendar",
    description="""
    Validates the calendar (at least one working window, no overlapping
    windows, well-formed holiday dates, known timezone) and re-derives the
    deadlines of in-flight tickets computed against it.
    """,
    responses={422: {"description": "Invalid calendar definition"}}
)
async def put_calendar(
    calendar_id: str,
    request: CalendarRequest = Body(..., examples=[CALENDAR_EXAMPLE]),
    calendar_service: CalendarService = Depends(get_calendar_service)
):
    calendar, recalculated = await calendar_service.save_calendar(
        calendar_id, request.model_dump()
    )
    return {
        "calendar": calendar.model_dump(mode="json"),
        "recalculated_tickets": [calculation.ticket_id for calculation in recalculated]
    }


# Export router for inclusion in main app
sla_router = router
