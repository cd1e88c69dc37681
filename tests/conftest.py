"""
Pytest configuration and fixtures for the Helpdesk SLA engine tests.

Application services are exercised against in-memory repositories; the
SQLAlchemy repositories get their own tests on an in-memory SQLite database.
"""
import asyncio
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional, Sequence

# Keep the settings deterministic regardless of the developer's environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SLA_EVALUATION_INTERVAL", "0")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from helpdesk_sla.config import LegState, Priority, SLALeg, TicketStatus
from helpdesk_sla.infrastructure.database import Base
from helpdesk_sla.sla.application import (
    EscalationEngine,
    ICalendarRepository,
    IEscalationNotifier,
    ISLACalculationStore,
    ISLAConfigProvider,
    ITicketRepository,
    RecalculationCoordinator,
    SLAService,
)
from helpdesk_sla.sla.domain import BusinessCalendar, SLACalculation, SLAConfig, StatusEvent, Ticket

TRACKED_STATES = (LegState.ON_TRACK, LegState.APPROACHING, LegState.BREACHED)
WEEKDAYS = range(5)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def business_hours_calendar(holidays: Optional[List[dict]] = None, **overrides) -> BusinessCalendar:
    """Mon-Fri 09:00-18:00 in Sao Paulo (UTC-3, no DST)."""
    data = {
        "id": "business-hours",
        "name": "Business hours",
        "timezone": "America/Sao_Paulo",
        "working_hours": {day: [{"start": "09:00", "end": "18:00"}] for day in WEEKDAYS},
        "holidays": holidays or [],
    }
    data.update(overrides)
    return BusinessCalendar.from_config(data)


def around_the_clock_calendar() -> BusinessCalendar:
    return BusinessCalendar.from_config({
        "id": "24x7",
        "timezone": "UTC",
        "working_hours": {day: [{"start": "00:00", "end": "24:00"}] for day in range(7)},
    })


def make_config(**overrides) -> SLAConfig:
    data = {
        "default_template_id": "standard",
        "default_calendar_id": "business-hours",
        "templates": [
            {
                "id": "standard",
                "name": "Standard",
                "rules": [
                    {"priority": "critical", "response_minutes": 60, "solution_minutes": 480},
                    {"priority": "high", "response_minutes": 120, "solution_minutes": 960},
                    {"priority": "medium", "response_minutes": 240, "solution_minutes": 1920},
                ],
            },
            {
                "id": "premium",
                "name": "Premium",
                "rules": [
                    {"priority": "critical", "response_minutes": 15, "solution_minutes": 240},
                    {"priority": "high", "response_minutes": 30, "solution_minutes": 480},
                ],
            },
        ],
        "contracts": [
            {
                "id": "acme-gold",
                "name": "ACME Gold",
                "template_id": "premium",
                "calendar_id": "24x7",
                "overrides": [
                    {"priority": "critical", "response_minutes": 10, "solution_minutes": 120},
                ],
            },
            {"id": "globex", "name": "Globex"},
        ],
        "warning_minutes": {"critical": 30, "high": 60, "medium": 120, "low": 240},
    }
    data.update(overrides)
    return SLAConfig.model_validate(data)


def make_ticket(
    ticket_id: str = "T-1",
    priority: Priority = Priority.CRITICAL,
    status: TicketStatus = TicketStatus.OPEN,
    created_at: Optional[datetime] = None,
    **fields
) -> Ticket:
    return Ticket(
        id=ticket_id,
        priority=priority,
        status=status,
        # Friday 2024-03-01 17:30 in Sao Paulo
        created_at=created_at or utc(2024, 3, 1, 20, 30),
        **fields
    )


# ========== In-memory fakes ==========

class FixedClock:
    """Clock returning a controllable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StaticConfigProvider(ISLAConfigProvider):
    def __init__(self, config: SLAConfig):
        self.config = config

    def get_config(self) -> SLAConfig:
        return self.config


class InMemoryTicketRepository(ITicketRepository):
    def __init__(self):
        self.tickets: Dict[str, Ticket] = {}

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        return self.tickets.get(ticket_id)

    async def get_many(self, ticket_ids: Sequence[str]) -> Dict[str, Ticket]:
        return {tid: self.tickets[tid] for tid in ticket_ids if tid in self.tickets}

    async def upsert(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = ticket
        return ticket


class InMemoryCalendarRepository(ICalendarRepository):
    def __init__(self, *calendars: BusinessCalendar):
        self.calendars: Dict[str, BusinessCalendar] = {c.id: c for c in calendars}

    async def get(self, calendar_id: str) -> Optional[BusinessCalendar]:
        return self.calendars.get(calendar_id)

    async def list_all(self) -> List[BusinessCalendar]:
        return [self.calendars[key] for key in sorted(self.calendars)]

    async def save(self, calendar: BusinessCalendar) -> BusinessCalendar:
        self.calendars[calendar.id] = calendar
        return calendar


class InMemoryCalculationStore(ISLACalculationStore):
    """
    Calculation history kept in a list.

    Every read and write yields to the event loop once so concurrent
    coroutines interleave the way they would against a database.
    """

    def __init__(self):
        self.rows: List[SLACalculation] = []

    def _current(self, ticket_id: str) -> Optional[SLACalculation]:
        for row in self.rows:
            if row.ticket_id == ticket_id and row.is_current:
                return row
        return None

    async def get_current(self, ticket_id: str) -> Optional[SLACalculation]:
        await asyncio.sleep(0)
        row = self._current(ticket_id)
        return replace(row) if row else None

    async def list_history(self, ticket_id: str) -> List[SLACalculation]:
        rows = [replace(row) for row in self.rows if row.ticket_id == ticket_id]
        return sorted(rows, key=lambda row: row.version, reverse=True)

    async def replace_current(
        self,
        calculation: SLACalculation,
        expected_current_id: Optional[str]
    ) -> Optional[SLACalculation]:
        await asyncio.sleep(0)
        current = self._current(calculation.ticket_id)
        if (current.id if current else None) != expected_current_id:
            return None

        if current is not None:
            current.is_current = False
        versions = [row.version for row in self.rows if row.ticket_id == calculation.ticket_id]
        stored = replace(calculation, is_current=True, version=max(versions, default=0) + 1)
        self.rows.append(replace(stored))
        return stored

    async def list_in_flight(self) -> List[SLACalculation]:
        return [
            replace(row) for row in self.rows
            if row.is_current and (
                row.response_state in TRACKED_STATES or row.solution_state in TRACKED_STATES
            )
        ]

    async def list_current_by_calendar(self, calendar_id: str) -> List[SLACalculation]:
        return [
            replace(row) for row in self.rows
            if row.is_current and row.calendar_id == calendar_id
        ]

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
        await asyncio.sleep(0)
        for index, row in enumerate(self.rows):
            if row.id != calculation_id or not row.is_current:
                continue
            if row.state_of(leg) != expected_state or row.level_of(leg) != expected_level:
                return False
            updated = row.with_leg(leg, new_state, new_level)
            if alert_sent_at is not None:
                updated = replace(updated, last_alert_sent_at=alert_sent_at)
            self.rows[index] = updated
            return True
        return False

    def current_rows(self, ticket_id: str) -> List[SLACalculation]:
        return [row for row in self.rows if row.ticket_id == ticket_id and row.is_current]


class RecordingNotifier(IEscalationNotifier):
    def __init__(self, succeed: bool = True):
        self.sent: List[tuple] = []
        self.succeed = succeed

    async def notify(self, event: StatusEvent, channels: List[str]) -> bool:
        self.sent.append((event, list(channels)))
        return self.succeed


# ========== Fixtures ==========

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(utc(2024, 3, 1, 20, 30))


@pytest.fixture
def config() -> SLAConfig:
    return make_config()


@pytest.fixture
def config_provider(config: SLAConfig) -> StaticConfigProvider:
    return StaticConfigProvider(config)


@pytest.fixture
def tickets() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def calendars() -> InMemoryCalendarRepository:
    return InMemoryCalendarRepository(business_hours_calendar(), around_the_clock_calendar())


@pytest.fixture
def store() -> InMemoryCalculationStore:
    return InMemoryCalculationStore()


@pytest.fixture
def sla_service(tickets, store, calendars, config_provider, clock) -> SLAService:
    return SLAService(tickets, store, calendars, config_provider, clock)


@pytest.fixture
def coordinator(sla_service, tickets, store, clock) -> RecalculationCoordinator:
    return RecalculationCoordinator(sla_service, tickets, store, clock, max_attempts=3)


@pytest.fixture
def escalation_engine(tickets, store, config_provider, clock) -> EscalationEngine:
    return EscalationEngine(tickets, store, config_provider, clock)


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async database session fixture for repository tests.

    Uses SQLite in-memory database for fast isolated tests.
    """
    from helpdesk_sla.sla.infrastructure import models  # noqa: F401

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        yield session

    await engine.dispose()
