"""
SLA Domain Services
====================

Stateless business logic: rule resolution, deadline computation and
per-leg state evaluation.
"""

from datetime import datetime, timedelta
from typing import Optional

from helpdesk_sla.config import ESCALATION_LEVELS, LegState, Priority
from helpdesk_sla.core.exceptions import ConfigurationException
from helpdesk_sla.sla.domain.calendar import BusinessCalendar, as_utc
from helpdesk_sla.sla.domain.value_objects import (
    ContractSLA,
    DueDates,
    RuleSource,
    SLABudget,
    SLAConfig,
    SLATemplate,
)

# Forward order of leg states; completed is terminal
STATE_RANK = {
    LegState.NO_SLA: 0,
    LegState.ON_TRACK: 0,
    LegState.APPROACHING: 1,
    LegState.BREACHED: 2,
    LegState.COMPLETED: 3,
}


class SLARuleResolver:
    """
    Maps (contract or template, priority) to a response/solution budget.

    Precedence: the contract's own override rule, then the rule of the
    contract's template, then the configured default template. Nothing
    resolving is a normal "no SLA" outcome.
    """

    def __init__(self, config: SLAConfig):
        self._config = config

    def resolve(self, source: Optional[RuleSource], priority: Priority) -> Optional[SLABudget]:
        """
        Resolve the budget for a priority.

        Args:
            source: A contract, a template, or None for the default template
            priority: Ticket priority

        Returns:
            SLABudget, or None when no rule applies

        Raises:
            ConfigurationException: duplicate rules for the priority, or a
                contract pointing at an unknown template
        """
        if isinstance(source, SLATemplate):
            return self._from_template(source, priority)

        contract = source if isinstance(source, ContractSLA) else None

        if contract is not None:
            override = contract.override_for(priority)
            if override is not None:
                return SLABudget(
                    response_minutes=override.response_minutes,
                    solution_minutes=override.solution_minutes,
                    template_id=contract.template_id,
                    contract_id=contract.id,
                )

        template = self._template_for(contract)
        if template is None:
            return None

        budget = self._from_template(template, priority)
        if budget is not None and contract is not None:
            return SLABudget(
                response_minutes=budget.response_minutes,
                solution_minutes=budget.solution_minutes,
                template_id=budget.template_id,
                contract_id=contract.id,
            )
        return budget

    def _template_for(self, contract: Optional[ContractSLA]) -> Optional[SLATemplate]:
        if contract is not None and contract.template_id:
            template = self._config.get_template(contract.template_id)
            if template is None:
                raise ConfigurationException(
                    f"Contract '{contract.id}' references unknown template '{contract.template_id}'",
                    {"contract_id": contract.id, "template_id": contract.template_id}
                )
            return template
        return self._config.get_default_template()

    @staticmethod
    def _from_template(template: SLATemplate, priority: Priority) -> Optional[SLABudget]:
        rule = template.rule_for(priority)
        if rule is None:
            return None
        return SLABudget(
            response_minutes=rule.response_minutes,
            solution_minutes=rule.solution_minutes,
            template_id=template.id,
        )


class DeadlineCalculator:
    """
    Pure functions turning a budget into absolute due instants.

    The two legs run in parallel from the same start instant; the solution
    deadline is never measured from the response deadline.
    """

    @staticmethod
    def compute_due_dates(
        created_at: datetime,
        calendar: BusinessCalendar,
        budget: Optional[SLABudget]
    ) -> DueDates:
        if budget is None:
            return DueDates()

        return DueDates(
            response_due_at=calendar.add_business_minutes(created_at, budget.response_minutes),
            solution_due_at=calendar.add_business_minutes(created_at, budget.solution_minutes),
        )


class LegEvaluator:
    """
    Pure functions for the per-leg state machine
    on_track -> approaching -> breached -> completed.
    """

    @staticmethod
    def evaluate(
        due_at: Optional[datetime],
        now: datetime,
        warning_minutes: int,
        completed: bool
    ) -> LegState:
        """Derive the state a leg should be in at `now`."""
        if due_at is None:
            return LegState.NO_SLA
        if completed:
            return LegState.COMPLETED

        due_at, now = as_utc(due_at), as_utc(now)
        if now >= due_at:
            return LegState.BREACHED
        if now >= due_at - timedelta(minutes=warning_minutes):
            return LegState.APPROACHING
        return LegState.ON_TRACK

    @staticmethod
    def is_forward(current: LegState, target: LegState) -> bool:
        """True when moving from current to target advances the leg."""
        if current in (LegState.NO_SLA, LegState.COMPLETED):
            return False
        return STATE_RANK[target] > STATE_RANK[current]

    @staticmethod
    def level_for(state: LegState, current_level: int) -> int:
        """Escalation level after entering a state; it never decreases."""
        return max(current_level, ESCALATION_LEVELS.get(state, current_level))
