"""Tests for the SQLAlchemy repositories and YAML configuration loading.

Run against an in-memory SQLite database (aiosqlite).
"""

from pathlib import Path

import pytest
from sqlalchemy.exc import IntegrityError

from helpdesk_sla.config import LegState, Priority, RecalcReason, SLALeg, TicketStatus
from helpdesk_sla.core import ConfigurationException
from helpdesk_sla.sla.application import SLAService
from helpdesk_sla.sla.domain import SLACalculation
from helpdesk_sla.sla.infrastructure import (
    SLACalculationModel,
    SQLAlchemyCalendarRepository,
    SQLAlchemySLACalculationStore,
    SQLAlchemyTicketReader,
    YAMLConfigProvider,
    load_sla_config,
)
from helpdesk_sla.sla.infrastructure.external import SLAConfigManager

from conftest import (
    FixedClock,
    InMemoryCalendarRepository,
    StaticConfigProvider,
    business_hours_calendar,
    make_config,
    make_ticket,
    utc,
)


REPO_CONFIG = Path(__file__).resolve().parent.parent / "sla_config.yaml"


class UncheckedFirstRowStore(SQLAlchemySLACalculationStore):
    """Behaves as if another writer inserted the first row right after this one looked."""

    def __init__(self, session, hide_first_lookup: bool = False):
        super().__init__(session)
        self._hide_first_lookup = hide_first_lookup

    async def get_current(self, ticket_id: str):
        if self._hide_first_lookup:
            self._hide_first_lookup = False
            return None
        return await super().get_current(ticket_id)

    async def _has_current(self, ticket_id: str) -> bool:
        return False


def make_calculation(ticket_id: str = "T-1", **fields) -> SLACalculation:
    defaults = dict(
        ticket_id=ticket_id,
        priority=Priority.CRITICAL,
        baseline_at=utc(2024, 3, 1, 20, 30),
        reason=RecalcReason.CREATION,
        calendar_id="business-hours",
        template_id="standard",
        response_minutes=60,
        solution_minutes=480,
        response_due_at=utc(2024, 3, 4, 12, 30),
        solution_due_at=utc(2024, 3, 4, 19, 30),
        calculated_at=utc(2024, 3, 1, 20, 30),
    )
    defaults.update(fields)
    return SLACalculation(**defaults)


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------

class TestTicketReader:

    async def test_upsert_and_get(self, db_session):
        repo = SQLAlchemyTicketReader(db_session)
        await repo.upsert(make_ticket(contract_id="acme-gold"))

        ticket = await repo.get("T-1")

        assert ticket.priority == Priority.CRITICAL
        assert ticket.contract_id == "acme-gold"
        assert ticket.created_at == utc(2024, 3, 1, 20, 30)
        assert ticket.created_at.tzinfo is not None

    async def test_upsert_replaces_snapshot(self, db_session):
        repo = SQLAlchemyTicketReader(db_session)
        await repo.upsert(make_ticket())
        await repo.upsert(make_ticket(status=TicketStatus.RESOLVED, resolved_at=utc(2024, 3, 4, 15, 0)))

        ticket = await repo.get("T-1")

        assert ticket.status == TicketStatus.RESOLVED
        assert ticket.resolved_at == utc(2024, 3, 4, 15, 0)

    async def test_get_many(self, db_session):
        repo = SQLAlchemyTicketReader(db_session)
        for ticket_id in ("T-1", "T-2"):
            await repo.upsert(make_ticket(ticket_id))

        found = await repo.get_many(["T-1", "T-2", "T-3"])

        assert sorted(found) == ["T-1", "T-2"]
        assert await repo.get_many([]) == {}


# ---------------------------------------------------------------------------
# Calculation store
# ---------------------------------------------------------------------------

class TestCalculationStore:

    async def test_first_row(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)

        stored = await store.replace_current(make_calculation(), None)

        assert stored.version == 1
        current = await store.get_current("T-1")
        assert current.id == stored.id
        assert current.response_due_at == utc(2024, 3, 4, 12, 30)
        assert current.response_state == LegState.ON_TRACK

    async def test_second_first_row_is_stale(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        await store.replace_current(make_calculation(), None)

        assert await store.replace_current(make_calculation(), None) is None

    async def test_replace_with_expected_current(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        first = await store.replace_current(make_calculation(), None)

        second = await store.replace_current(
            make_calculation(reason=RecalcReason.MANUAL), first.id
        )

        assert second.version == 2
        history = await store.list_history("T-1")
        assert [(c.id, c.is_current) for c in history] == [(second.id, True), (first.id, False)]
        assert (await store.get_current("T-1")).id == second.id

    async def test_replace_with_wrong_expected_is_stale(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        first = await store.replace_current(make_calculation(), None)
        await store.replace_current(make_calculation(), first.id)

        assert await store.replace_current(make_calculation(), first.id) is None
        assert len(await store.list_history("T-1")) == 2

    async def test_no_sla_row_round_trip(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        await store.replace_current(
            make_calculation(response_due_at=None, solution_due_at=None, template_id=None), None
        )

        current = await store.get_current("T-1")

        assert current.response_state == LegState.NO_SLA
        assert current.solution_state == LegState.NO_SLA
        assert not current.has_sla

    async def test_advance_leg_is_compare_and_set(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        stored = await store.replace_current(make_calculation(), None)
        alert_at = utc(2024, 3, 4, 12, 0)

        won = await store.advance_leg(
            stored.id, SLALeg.RESPONSE, LegState.ON_TRACK, 0, LegState.APPROACHING, 1, alert_at
        )
        lost = await store.advance_leg(
            stored.id, SLALeg.RESPONSE, LegState.ON_TRACK, 0, LegState.APPROACHING, 1, alert_at
        )

        assert won is True
        assert lost is False
        current = await store.get_current("T-1")
        assert current.response_state == LegState.APPROACHING
        assert current.response_escalation_level == 1
        assert current.solution_state == LegState.ON_TRACK
        assert current.last_alert_sent_at == alert_at

    async def test_advance_leg_ignores_retired_rows(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        first = await store.replace_current(make_calculation(), None)
        await store.replace_current(make_calculation(), first.id)

        assert not await store.advance_leg(
            first.id, SLALeg.RESPONSE, LegState.ON_TRACK, 0, LegState.BREACHED, 2, None
        )

    async def test_list_in_flight(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        await store.replace_current(make_calculation("T-1"), None)
        await store.replace_current(
            make_calculation("T-2", response_due_at=None, solution_due_at=None), None
        )
        done = await store.replace_current(make_calculation("T-3"), None)
        for leg in (SLALeg.RESPONSE, SLALeg.SOLUTION):
            await store.advance_leg(done.id, leg, LegState.ON_TRACK, 0, LegState.COMPLETED, 0, None)

        in_flight = await store.list_in_flight()

        assert [c.ticket_id for c in in_flight] == ["T-1"]

    async def test_list_current_by_calendar(self, db_session):
        store = SQLAlchemySLACalculationStore(db_session)
        await store.replace_current(make_calculation("T-1"), None)
        await store.replace_current(make_calculation("T-2", calendar_id="24x7"), None)

        rows = await store.list_current_by_calendar("24x7")

        assert [c.ticket_id for c in rows] == ["T-2"]

    async def test_single_current_row_enforced_by_index(self, db_session):
        for version in (1, 2):
            db_session.add(SLACalculationModel(
                id=f"row-{version}",
                ticket_id="T-1",
                version=version,
                priority="critical",
                reason="creation",
                baseline_at=utc(2024, 3, 1, 20, 30),
                is_current=True,
                response_state="on_track",
                solution_state="on_track",
            ))

        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()

    async def test_lost_first_row_race_is_stale(self, db_session):
        winner = await SQLAlchemySLACalculationStore(db_session).replace_current(make_calculation(), None)
        late_writer = UncheckedFirstRowStore(db_session)

        assert await late_writer.replace_current(make_calculation(), None) is None

        # The savepoint was rolled back; the session is still usable
        assert (await late_writer.get_current("T-1")).id == winner.id
        assert len(await late_writer.list_history("T-1")) == 1

    async def test_initial_calculation_race_returns_winner(self, db_session):
        tickets = SQLAlchemyTicketReader(db_session)
        ticket = await tickets.upsert(make_ticket())
        winner = await SQLAlchemySLACalculationStore(db_session).replace_current(make_calculation(), None)
        service = SLAService(
            tickets,
            UncheckedFirstRowStore(db_session, hide_first_lookup=True),
            InMemoryCalendarRepository(business_hours_calendar()),
            StaticConfigProvider(make_config()),
            FixedClock(utc(2024, 3, 1, 20, 30)),
        )

        calculation = await service.compute_initial_sla(ticket)

        assert calculation.id == winner.id


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------

class TestCalendarRepository:

    async def test_round_trip(self, db_session):
        repo = SQLAlchemyCalendarRepository(db_session)
        calendar = business_hours_calendar(
            holidays=[{"date": "2024-12-25", "recurrence": "yearly", "name": "Christmas"}]
        )
        await repo.save(calendar)

        loaded = await repo.get("business-hours")

        assert loaded == calendar
        assert loaded.add_business_minutes(utc(2024, 3, 1, 20, 30), 60) == utc(2024, 3, 4, 12, 30)

    async def test_save_replaces(self, db_session):
        repo = SQLAlchemyCalendarRepository(db_session)
        await repo.save(business_hours_calendar())
        await repo.save(business_hours_calendar(name="Renamed", timezone="UTC"))

        calendars = await repo.list_all()

        assert len(calendars) == 1
        assert calendars[0].name == "Renamed"
        assert calendars[0].timezone == "UTC"

    async def test_missing(self, db_session):
        assert await SQLAlchemyCalendarRepository(db_session).get("missing") is None


# ---------------------------------------------------------------------------
# YAML configuration
# ---------------------------------------------------------------------------

class TestSLAConfigLoading:

    def test_bundled_config_is_valid(self):
        config = load_sla_config(REPO_CONFIG)

        assert config.default_template_id == "standard"
        assert {c.id for c in config.calendars} == {"business-hours", "24x7"}
        assert config.get_contract("acme-gold").override_for(Priority.CRITICAL).response_minutes == 10

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_sla_config(tmp_path / "absent.yaml")
        assert config.templates == []
        assert config.default_calendar_id == "business-hours"

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("templates: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationException):
            load_sla_config(path)

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("default_template_id: nowhere\n", encoding="utf-8")

        with pytest.raises(ConfigurationException):
            load_sla_config(path)

    def test_oversized_budget_rejected_at_load(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text(
            "templates:\n"
            "  - id: standard\n"
            "    rules:\n"
            "      - {priority: low, response_minutes: 60, solution_minutes: 2000000000}\n",
            encoding="utf-8",
        )

        with pytest.raises(ConfigurationException):
            load_sla_config(path)

    def test_duplicate_rules(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text(
            "templates:\n"
            "  - id: standard\n"
            "    rules:\n"
            "      - {priority: high, response_minutes: 10, solution_minutes: 20}\n"
            "      - {priority: high, response_minutes: 30, solution_minutes: 40}\n",
            encoding="utf-8",
        )

        with pytest.raises(ConfigurationException):
            load_sla_config(path)

    def test_yaml_provider(self):
        provider = YAMLConfigProvider(REPO_CONFIG)
        assert provider.get_config().get_template("premium") is not None


class TestSLAConfigManager:

    def test_reload_keeps_previous_on_error(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("default_calendar_id: office\n", encoding="utf-8")
        manager = SLAConfigManager()
        manager.load(path)

        path.write_text("templates: [unclosed", encoding="utf-8")

        assert manager.reload() is False
        assert manager.get_config().default_calendar_id == "office"

    def test_reload_applies_valid_change(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("default_calendar_id: office\n", encoding="utf-8")
        manager = SLAConfigManager()
        manager.load(path)

        path.write_text("default_calendar_id: 24x7\n", encoding="utf-8")

        assert manager.reload() is True
        assert manager.get_config().default_calendar_id == "24x7"

    def test_unloaded_manager_raises(self):
        with pytest.raises(RuntimeError):
            SLAConfigManager().get_config()
