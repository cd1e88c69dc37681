"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
domain objects from the database.
"""

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk_sla.config import LegState, Priority, RecalcReason, SLALeg, TicketStatus
from helpdesk_sla.core import ConfigurationException
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application import (
    ICalendarRepository,
    ISLACalculationStore,
    ISLAConfigProvider,
    ITicketRepository,
)
from helpdesk_sla.sla.domain import BusinessCalendar, SLACalculation, SLAConfig, Ticket, as_utc
from helpdesk_sla.sla.infrastructure.models import (
    BusinessCalendarModel,
    SLACalculationModel,
    TicketModel,
)

logger = get_logger(__name__)

TRACKED_STATES = [LegState.ON_TRACK, LegState.APPROACHING, LegState.BREACHED]


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything leaving a repository is UTC-aware."""
    return as_utc(value) if value is not None else None


class SQLAlchemyTicketReader(ITicketRepository):
    """
    SQLAlchemy implementation of the ticket read model.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        model = await self._session.get(TicketModel, ticket_id)
        return self._to_entity(model) if model else None

    async def get_many(self, ticket_ids: Sequence[str]) -> Dict[str, Ticket]:
        if not ticket_ids:
            return {}
        stmt = select(TicketModel).where(TicketModel.id.in_(set(ticket_ids)))
        result = await self._session.execute(stmt)
        return {model.id: self._to_entity(model) for model in result.scalars().all()}

    async def upsert(self, ticket: Ticket) -> Ticket:
        model = await self._session.get(TicketModel, ticket.id)
        if model is None:
            model = TicketModel(id=ticket.id)
            self._session.add(model)

        model.priority = ticket.priority.value
        model.status = ticket.status.value
        model.contract_id = ticket.contract_id
        model.created_at = ticket.created_at
        model.updated_at = ticket.updated_at
        model.first_response_at = ticket.first_response_at
        model.resolved_at = ticket.resolved_at

        await self._session.flush()
        return ticket

    @staticmethod
    def _to_entity(model: TicketModel) -> Ticket:
        return Ticket(
            id=model.id,
            priority=Priority(model.priority),
            status=TicketStatus(model.status),
            created_at=ensure_utc(model.created_at),
            contract_id=model.contract_id,
            first_response_at=ensure_utc(model.first_response_at),
            resolved_at=ensure_utc(model.resolved_at),
            updated_at=ensure_utc(model.updated_at),
        )


class SQLAlchemySLACalculationStore(ISLACalculationStore):
    """
    SQLAlchemy implementation of the calculation history.

    Switching the current row is an UPDATE ... WHERE id = expected AND
    is_current followed by the INSERT, inside a savepoint of the caller's
    transaction. The partial unique index on (ticket_id) WHERE is_current
    backs this up across processes: a write that trips it is rolled back to
    the savepoint and reported as stale, leaving the session usable.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_current(self, ticket_id: str) -> Optional[SLACalculation]:
        stmt = select(SLACalculationModel).where(
            SLACalculationModel.ticket_id == ticket_id,
            SLACalculationModel.is_current.is_(True),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_history(self, ticket_id: str) -> List[SLACalculation]:
        stmt = (
            select(SLACalculationModel)
            .where(SLACalculationModel.ticket_id == ticket_id)
            .order_by(SLACalculationModel.version.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [self._to_entity(model) for model in result.scalars().all()]

    async def replace_current(
        self,
        calculation: SLACalculation,
        expected_current_id: Optional[str]
    ) -> Optional[SLACalculation]:
        ticket_id = calculation.ticket_id

        try:
            async with self._session.begin_nested():
                if expected_current_id is None:
                    if await self._has_current(ticket_id):
                        return None
                elif not await self._retire(ticket_id, expected_current_id):
                    return None

                latest = await self._session.execute(
                    select(func.max(SLACalculationModel.version)).where(
                        SLACalculationModel.ticket_id == ticket_id
                    )
                )
                stored = replace(calculation, is_current=True, version=(latest.scalar() or 0) + 1)
                self._session.add(self._to_model(stored))
                await self._session.flush()
        except IntegrityError:
            # Another process switched the current row between our check and
            # insert; the savepoint is rolled back and the caller sees it as stale
            logger.warning(
                "Current SLA calculation taken by a concurrent writer",
                extra={"ticket_id": ticket_id, "expected_calculation_id": expected_current_id}
            )
            return None

        return stored

    async def _has_current(self, ticket_id: str) -> bool:
        existing = await self._session.execute(
            select(SLACalculationModel.id).where(
                SLACalculationModel.ticket_id == ticket_id,
                SLACalculationModel.is_current.is_(True),
            )
        )
        return existing.first() is not None

    async def _retire(self, ticket_id: str, calculation_id: str) -> bool:
        retired = await self._session.execute(
            update(SLACalculationModel)
            .where(
                SLACalculationModel.id == calculation_id,
                SLACalculationModel.ticket_id == ticket_id,
                SLACalculationModel.is_current.is_(True),
            )
            .values(is_current=False)
            .execution_options(synchronize_session=False)
        )
        return retired.rowcount == 1

    async def list_in_flight(self) -> List[SLACalculation]:
        stmt = (
            select(SLACalculationModel)
            .where(
                SLACalculationModel.is_current.is_(True),
                or_(
                    SLACalculationModel.response_state.in_([s.value for s in TRACKED_STATES]),
                    SLACalculationModel.solution_state.in_([s.value for s in TRACKED_STATES]),
                ),
            )
            .order_by(SLACalculationModel.ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [self._to_entity(model) for model in result.scalars().all()]

    async def list_current_by_calendar(self, calendar_id: str) -> List[SLACalculation]:
        stmt = (
            select(SLACalculationModel)
            .where(
                SLACalculationModel.is_current.is_(True),
                SLACalculationModel.calendar_id == calendar_id,
            )
            .order_by(SLACalculationModel.ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [self._to_entity(model) for model in result.scalars().all()]

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
        state_column = getattr(SLACalculationModel, f"{leg.value}_state")
        level_column = getattr(SLACalculationModel, f"{leg.value}_escalation_level")

        values = {
            f"{leg.value}_state": new_state.value,
            f"{leg.value}_escalation_level": new_level,
        }
        if alert_sent_at is not None:
            values["last_alert_sent_at"] = alert_sent_at

        result = await self._session.execute(
            update(SLACalculationModel)
            .where(
                SLACalculationModel.id == calculation_id,
                SLACalculationModel.is_current.is_(True),
                state_column == expected_state.value,
                level_column == expected_level,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _to_model(calculation: SLACalculation) -> SLACalculationModel:
        return SLACalculationModel(
            id=calculation.id,
            ticket_id=calculation.ticket_id,
            version=calculation.version,
            priority=calculation.priority.value,
            reason=calculation.reason.value,
            template_id=calculation.template_id,
            contract_id=calculation.contract_id,
            calendar_id=calculation.calendar_id,
            baseline_at=calculation.baseline_at,
            response_minutes=calculation.response_minutes,
            solution_minutes=calculation.solution_minutes,
            response_due_at=calculation.response_due_at,
            solution_due_at=calculation.solution_due_at,
            calculated_at=calculation.calculated_at,
            is_current=calculation.is_current,
            response_state=calculation.response_state.value,
            response_escalation_level=calculation.response_escalation_level,
            solution_state=calculation.solution_state.value,
            solution_escalation_level=calculation.solution_escalation_level,
            last_alert_sent_at=calculation.last_alert_sent_at,
        )

    @staticmethod
    def _to_entity(model: SLACalculationModel) -> SLACalculation:
        return SLACalculation(
            id=model.id,
            ticket_id=model.ticket_id,
            version=model.version,
            priority=Priority(model.priority),
            reason=RecalcReason(model.reason),
            template_id=model.template_id,
            contract_id=model.contract_id,
            calendar_id=model.calendar_id,
            baseline_at=ensure_utc(model.baseline_at),
            response_minutes=model.response_minutes,
            solution_minutes=model.solution_minutes,
            response_due_at=ensure_utc(model.response_due_at),
            solution_due_at=ensure_utc(model.solution_due_at),
            calculated_at=ensure_utc(model.calculated_at),
            is_current=model.is_current,
            response_state=LegState(model.response_state),
            response_escalation_level=model.response_escalation_level,
            solution_state=LegState(model.solution_state),
            solution_escalation_level=model.solution_escalation_level,
            last_alert_sent_at=ensure_utc(model.last_alert_sent_at),
        )


class SQLAlchemyCalendarRepository(ICalendarRepository):
    """
    SQLAlchemy implementation of business calendar storage.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, calendar_id: str) -> Optional[BusinessCalendar]:
        model = await self._session.get(BusinessCalendarModel, calendar_id)
        return self._to_entity(model) if model else None

    async def list_all(self) -> List[BusinessCalendar]:
        result = await self._session.execute(
            select(BusinessCalendarModel).order_by(BusinessCalendarModel.id)
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    async def save(self, calendar: BusinessCalendar) -> BusinessCalendar:
        document = calendar.model_dump(mode="json")

        model = await self._session.get(BusinessCalendarModel, calendar.id)
        if model is None:
            model = BusinessCalendarModel(id=calendar.id)
            self._session.add(model)

        model.name = calendar.name
        model.timezone = calendar.timezone
        model.working_hours = document["working_hours"]
        model.holidays = document["holidays"]

        await self._session.flush()
        return calendar

    @staticmethod
    def _to_entity(model: BusinessCalendarModel) -> BusinessCalendar:
        return BusinessCalendar.from_config({
            "id": model.id,
            "name": model.name,
            "timezone": model.timezone,
            "working_hours": model.working_hours,
            "holidays": model.holidays,
        })


def load_sla_config(path: Path) -> SLAConfig:
    """
    Load and validate the SLA YAML file.

    A missing file yields the default configuration.

    Raises:
        ConfigurationException: if the YAML is malformed or fails validation
    """
    if not path.exists():
        logger.warning("SLA config file not found, using defaults", extra={"path": str(path)})
        return SLAConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return SLAConfig.model_validate(data)
    except yaml.YAMLError as e:
        raise ConfigurationException(f"Invalid YAML in {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationException(
            f"Invalid SLA configuration in {path}",
            {"errors": e.errors(include_url=False, include_context=False, include_input=False)}
        ) from e


class YAMLConfigProvider(ISLAConfigProvider):
    """
    SLA configuration provider that loads once from YAML.

    Used where no hot-reloading SLAConfigManager is running.
    """

    def __init__(self, config_path: Path):
        self._config_path = Path(config_path)
        self._config = load_sla_config(self._config_path)

    def get_config(self) -> SLAConfig:
        return self._config

    def reload(self) -> None:
        self._config = load_sla_config(self._config_path)
