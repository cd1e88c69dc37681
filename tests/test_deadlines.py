"""Tests for deadline computation and the SLA service."""

from datetime import datetime, timedelta

import pytest

from helpdesk_sla.config import LegState, Priority, RecalcReason, TicketStatus
from helpdesk_sla.core import ResourceNotFoundException
from helpdesk_sla.sla.domain import DeadlineCalculator, SLABudget

from conftest import business_hours_calendar, make_ticket, utc


FRIDAY_1730 = utc(2024, 3, 1, 20, 30)


class TestTicketSnapshot:

    def test_naive_datetimes_are_taken_as_utc(self):
        ticket = make_ticket(created_at=datetime(2024, 3, 1, 20, 30), first_response_at=utc(2024, 3, 4, 12, 0))

        assert ticket.created_at == FRIDAY_1730
        assert ticket.created_at.tzinfo is not None

    def test_response_before_creation_rejected_with_mixed_datetimes(self):
        with pytest.raises(ValueError):
            make_ticket(created_at=FRIDAY_1730, first_response_at=datetime(2024, 3, 1, 10, 0))


class TestDeadlineCalculator:

    def test_legs_run_in_parallel_from_creation(self):
        calendar = business_hours_calendar()
        due = DeadlineCalculator.compute_due_dates(
            FRIDAY_1730, calendar, SLABudget(response_minutes=60, solution_minutes=480)
        )
        assert due.response_due_at == utc(2024, 3, 4, 12, 30)
        # 480 minutes from creation, not from the response deadline
        assert due.solution_due_at == utc(2024, 3, 4, 19, 30)

    def test_no_budget_means_no_deadlines(self):
        due = DeadlineCalculator.compute_due_dates(FRIDAY_1730, business_hours_calendar(), None)
        assert due.response_due_at is None
        assert due.solution_due_at is None
        assert not due.has_sla


class TestComputeInitialSla:

    async def test_deadlines_from_default_template(self, sla_service, tickets, store):
        ticket = await tickets.upsert(make_ticket())

        calculation = await sla_service.compute_initial_sla(ticket)

        assert calculation.is_current
        assert calculation.version == 1
        assert calculation.reason == RecalcReason.CREATION
        assert calculation.template_id == "standard"
        assert calculation.calendar_id == "business-hours"
        assert calculation.response_due_at == utc(2024, 3, 4, 12, 30)
        assert calculation.solution_due_at == utc(2024, 3, 4, 19, 30)
        assert calculation.response_state == LegState.ON_TRACK
        assert len(store.rows) == 1

    async def test_contract_calendar_and_override(self, sla_service, tickets):
        ticket = await tickets.upsert(make_ticket(contract_id="acme-gold"))

        calculation = await sla_service.compute_initial_sla(ticket)

        assert calculation.contract_id == "acme-gold"
        assert calculation.calendar_id == "24x7"
        assert calculation.response_due_at == FRIDAY_1730 + timedelta(minutes=10)
        assert calculation.solution_due_at == FRIDAY_1730 + timedelta(minutes=120)

    async def test_unknown_contract_uses_defaults(self, sla_service, tickets):
        ticket = await tickets.upsert(make_ticket(contract_id="nobody"))

        calculation = await sla_service.compute_initial_sla(ticket)

        assert calculation.contract_id is None
        assert calculation.template_id == "standard"

    async def test_no_rule_writes_no_sla_row(self, sla_service, tickets, store, escalation_engine, clock):
        ticket = await tickets.upsert(make_ticket(priority=Priority.LOW))

        calculation = await sla_service.compute_initial_sla(ticket)

        assert calculation.response_due_at is None
        assert calculation.solution_due_at is None
        assert calculation.response_state == LegState.NO_SLA
        assert calculation.solution_state == LegState.NO_SLA
        assert len(store.rows) == 1

        status = await sla_service.get_current_status(ticket.id)
        assert not status.has_sla

        # Never escalated, however late it gets
        for _ in range(3):
            clock.advance(days=30)
            assert await escalation_engine.sweep() == []

    async def test_is_idempotent(self, sla_service, tickets, store):
        ticket = await tickets.upsert(make_ticket())

        first = await sla_service.compute_initial_sla(ticket)
        second = await sla_service.compute_initial_sla(ticket)

        assert first.id == second.id
        assert len(store.rows) == 1

    async def test_missing_calendar_raises(self, sla_service, tickets, calendars):
        del calendars.calendars["business-hours"]
        ticket = await tickets.upsert(make_ticket())

        with pytest.raises(ResourceNotFoundException):
            await sla_service.compute_initial_sla(ticket)

    async def test_already_answered_leg_starts_completed(self, sla_service, tickets):
        ticket = await tickets.upsert(make_ticket(first_response_at=utc(2024, 3, 1, 20, 45)))

        calculation = await sla_service.compute_initial_sla(ticket)

        assert calculation.response_state == LegState.COMPLETED
        assert calculation.solution_state == LegState.ON_TRACK


class TestCurrentStatus:

    async def test_live_status(self, sla_service, tickets, clock):
        ticket = await tickets.upsert(make_ticket())
        await sla_service.compute_initial_sla(ticket)

        # Monday 09:10 local, 20 minutes before the response deadline
        status = await sla_service.get_current_status(ticket.id, now=utc(2024, 3, 4, 12, 10))

        assert status.response_status == LegState.APPROACHING
        assert status.solution_status == LegState.ON_TRACK
        assert status.time_remaining_minutes == pytest.approx(20)
        assert status.business_minutes_remaining == pytest.approx(20)

    async def test_naive_now_is_taken_as_utc(self, sla_service, tickets):
        ticket = await tickets.upsert(make_ticket())
        await sla_service.compute_initial_sla(ticket)

        status = await sla_service.get_current_status(ticket.id, now=datetime(2024, 3, 4, 12, 10))

        assert status.response_status == LegState.APPROACHING
        assert status.time_remaining_minutes == pytest.approx(20)

    async def test_overdue_has_negative_remaining(self, sla_service, tickets):
        ticket = await tickets.upsert(make_ticket())
        await sla_service.compute_initial_sla(ticket)

        status = await sla_service.get_current_status(ticket.id, now=utc(2024, 3, 4, 13, 0))

        assert status.response_status == LegState.BREACHED
        assert status.time_remaining_minutes == pytest.approx(-30)
        assert status.business_minutes_remaining == pytest.approx(-30)

    async def test_completed_leg_is_not_counted(self, sla_service, tickets):
        ticket = await tickets.upsert(make_ticket())
        await sla_service.compute_initial_sla(ticket)
        await tickets.upsert(make_ticket(first_response_at=utc(2024, 3, 4, 12, 0)))

        status = await sla_service.get_current_status(ticket.id, now=utc(2024, 3, 4, 13, 0))

        assert status.response_status == LegState.COMPLETED
        assert status.solution_status == LegState.ON_TRACK
        # Remaining time now points at the solution deadline (19:30Z)
        assert status.time_remaining_minutes == pytest.approx(390)

    async def test_ticket_without_calculation(self, sla_service, tickets):
        await tickets.upsert(make_ticket(status=TicketStatus.PENDING))

        status = await sla_service.get_current_status("T-1")

        assert status.calculation_id is None
        assert not status.has_sla

    async def test_unknown_ticket(self, sla_service):
        with pytest.raises(ResourceNotFoundException):
            await sla_service.get_current_status("missing")

    async def test_history_newest_first(self, sla_service, coordinator, tickets):
        ticket = await tickets.upsert(make_ticket())
        first = await sla_service.compute_initial_sla(ticket)
        second = await coordinator.recalculate(ticket.id, RecalcReason.MANUAL)

        history = await sla_service.get_history(ticket.id)

        assert [c.id for c in history] == [second.id, first.id]
        assert [c.is_current for c in history] == [True, False]
