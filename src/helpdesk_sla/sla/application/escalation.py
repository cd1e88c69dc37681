"""
Escalation Engine
==================

Periodic sweep over current SLA calculations.

Each leg moves forward through on_track -> approaching -> breached ->
completed. A transition is written with a compare-and-set on the leg's
(state, escalation_level), so when several sweepers race only the winner
emits the event. The sweep never touches due dates.
"""

import zlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from helpdesk_sla.config import VALID_LEGS, LegState, SLALeg
from helpdesk_sla.shared.infrastructure.logging import get_logger, log_latency
from helpdesk_sla.sla.application.services import (
    Clock,
    ISLACalculationStore,
    ISLAConfigProvider,
    ITicketReader,
    utc_now,
)
from helpdesk_sla.sla.domain import (
    LegEvaluator,
    SLACalculation,
    SLAConfig,
    StatusEvent,
    Ticket,
    as_utc,
)

logger = get_logger(__name__)


class IEscalationNotifier(ABC):
    """Delivers escalation alerts to people."""

    @abstractmethod
    async def notify(self, event: StatusEvent, channels: List[str]) -> bool:
        """Send one alert; returns True when it was delivered."""


def in_shard(ticket_id: str, shard_index: int, shard_count: int) -> bool:
    """Stable assignment of a ticket to one of shard_count sweep workers."""
    if shard_count <= 1:
        return True
    return zlib.crc32(ticket_id.encode("utf-8")) % shard_count == shard_index


class EscalationEngine:
    """
    Evaluates in-flight calculations against wall-clock time and emits
    StatusEvents on forward state transitions only.
    """

    def __init__(
        self,
        ticket_reader: ITicketReader,
        store: ISLACalculationStore,
        config_provider: ISLAConfigProvider,
        clock: Clock = utc_now
    ):
        self._ticket_reader = ticket_reader
        self._store = store
        self._config_provider = config_provider
        self._clock = clock

    async def sweep(
        self,
        now: Optional[datetime] = None,
        shard_index: int = 0,
        shard_count: int = 1
    ) -> List[StatusEvent]:
        """
        Run one sweep.

        Calling it twice with the same `now` and no ticket changes emits
        nothing the second time.
        """
        now = as_utc(now or self._clock())
        config = self._config_provider.get_config()
        events: List[StatusEvent] = []

        with log_latency(logger, "escalation_sweep", shard_index=shard_index):
            calculations = [
                calculation for calculation in await self._store.list_in_flight()
                if in_shard(calculation.ticket_id, shard_index, shard_count)
            ]
            tickets = await self._ticket_reader.get_many(
                [calculation.ticket_id for calculation in calculations]
            )

            for calculation in calculations:
                ticket = tickets.get(calculation.ticket_id)
                if ticket is None:
                    logger.warning(
                        "Ticket missing for current SLA calculation",
                        extra={
                            "ticket_id": calculation.ticket_id,
                            "calculation_id": calculation.id,
                        }
                    )
                    continue

                for leg in VALID_LEGS:
                    event = await self._advance(calculation, ticket, leg, now, config)
                    if event is not None:
                        events.append(event)

        logger.info(
            "Escalation sweep finished",
            extra={
                "evaluated": len(calculations),
                "events": len(events),
                "shard_index": shard_index,
                "shard_count": shard_count,
            }
        )
        return events

    async def publish(
        self,
        events: List[StatusEvent],
        notifier: IEscalationNotifier
    ) -> int:
        """
        Forward approaching/breached events to the notifier.

        Call after the sweep's bookkeeping is committed. Returns the number
        of alerts delivered.
        """
        config = self._config_provider.get_config()
        delivered = 0
        for event in events:
            if not event.is_alert:
                continue
            channels = config.get_channels_for_level(event.escalation_level)
            if await notifier.notify(event, channels):
                delivered += 1
        return delivered

    async def _advance(
        self,
        calculation: SLACalculation,
        ticket: Ticket,
        leg: SLALeg,
        now: datetime,
        config: SLAConfig
    ) -> Optional[StatusEvent]:
        current_state = calculation.state_of(leg)
        current_level = calculation.level_of(leg)
        due_at = calculation.due_at(leg)

        target = LegEvaluator.evaluate(
            due_at,
            now,
            config.get_warning_minutes(calculation.priority),
            ticket.is_leg_completed(leg)
        )
        if not LegEvaluator.is_forward(current_state, target):
            return None

        new_level = LegEvaluator.level_for(target, current_level)
        alert_sent_at = now if target in (LegState.APPROACHING, LegState.BREACHED) else None

        won = await self._store.advance_leg(
            calculation.id, leg, current_state, current_level,
            target, new_level, alert_sent_at
        )
        if not won:
            logger.debug(
                "Escalation transition already applied elsewhere",
                extra={"calculation_id": calculation.id, "leg": leg.value}
            )
            return None

        event = StatusEvent(
            ticket_id=calculation.ticket_id,
            calculation_id=calculation.id,
            leg=leg,
            previous_state=current_state,
            state=target,
            escalation_level=new_level,
            priority=calculation.priority,
            due_at=due_at,
            occurred_at=now,
            met=self._met(ticket, leg, due_at) if target == LegState.COMPLETED else None,
        )

        logger.info(
            "SLA leg transition",
            extra={
                "ticket_id": event.ticket_id,
                "calculation_id": event.calculation_id,
                "leg": leg.value,
                "previous_state": current_state.value,
                "state": target.value,
                "escalation_level": new_level,
                "idempotency_key": event.idempotency_key,
            }
        )
        return event

    @staticmethod
    def _met(ticket: Ticket, leg: SLALeg, due_at: Optional[datetime]) -> Optional[bool]:
        """Whether a completed leg finished on time, when that is known."""
        if due_at is None:
            return None
        if leg == SLALeg.RESPONSE:
            finished_at = ticket.first_response_at
        else:
            finished_at = ticket.resolved_at or ticket.updated_at
        if finished_at is None:
            return None
        return as_utc(finished_at) <= as_utc(due_at)
