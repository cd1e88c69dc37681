"""
SLA Value Objects
==================

Immutable value objects for the SLA domain.

Value objects are defined by their attributes rather than an identity.
The configuration models (templates, contracts, the YAML-backed SLAConfig)
are pydantic models; computed results are frozen dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from helpdesk_sla.config import DEFAULT_WARNING_MINUTES, MAX_BUDGET_MINUTES, VALID_PRIORITIES, Priority
from helpdesk_sla.core.exceptions import ConfigurationException
from helpdesk_sla.sla.domain.calendar import BusinessCalendar
from helpdesk_sla.sla.domain.entities import SLACalculation


class SLARule(BaseModel):
    """Response and solution budgets, in business minutes, for one priority."""
    priority: Priority
    response_minutes: int = Field(ge=0, le=MAX_BUDGET_MINUTES, description="Business minutes to first response")
    solution_minutes: int = Field(ge=0, le=MAX_BUDGET_MINUTES, description="Business minutes to resolution")


def find_rule(rules: Sequence[SLARule], priority: Priority, owner: str) -> Optional[SLARule]:
    """
    Return the single rule for a priority, or None.

    Raises:
        ConfigurationException: if more than one rule exists for the priority
    """
    matches = [rule for rule in rules if rule.priority == priority]
    if len(matches) > 1:
        raise ConfigurationException(
            f"Duplicate SLA rules for priority '{priority.value}' in {owner}",
            {"owner": owner, "priority": priority.value, "count": len(matches)}
        )
    return matches[0] if matches else None


class SLATemplate(BaseModel):
    """A named rule set with at most one rule per priority."""
    id: str
    name: str = ""
    rules: List[SLARule] = Field(default_factory=list)

    def rule_for(self, priority: Priority) -> Optional[SLARule]:
        return find_rule(self.rules, priority, f"template '{self.id}'")


class ContractSLA(BaseModel):
    """
    Contract view used by the SLA engine.

    A contract may point at a template and a calendar, and may override
    individual priorities with its own rules.
    """
    id: str
    name: str = ""
    template_id: Optional[str] = None
    calendar_id: Optional[str] = None
    overrides: List[SLARule] = Field(default_factory=list)

    def override_for(self, priority: Priority) -> Optional[SLARule]:
        return find_rule(self.overrides, priority, f"contract '{self.id}'")


RuleSource = Union[ContractSLA, SLATemplate]


class EscalationLevelConfig(BaseModel):
    """Notification targets for a single escalation level."""
    level: int = Field(ge=1, description="Escalation level (1 = approaching, 2 = breached)")
    notify: List[str] = Field(default_factory=list, description="Slack channels")


class SLAConfig(BaseModel):
    """
    SLA configuration loaded from YAML.

    Holds the templates and contracts the rule resolver works on, the
    defaults used when a ticket has no contract, warning windows per
    priority and the seed calendars written at startup.
    """
    templates: List[SLATemplate] = Field(default_factory=list)
    contracts: List[ContractSLA] = Field(default_factory=list)
    default_template_id: Optional[str] = Field(
        default=None,
        description="Template used for tickets without a contract-specific template"
    )
    default_calendar_id: str = Field(
        default="business-hours",
        description="Calendar used when the contract does not name one"
    )
    warning_minutes: Dict[Priority, int] = Field(
        default_factory=lambda: dict(DEFAULT_WARNING_MINUTES),
        description="Minutes before the due date at which a leg becomes approaching"
    )
    escalation_levels: List[EscalationLevelConfig] = Field(
        default_factory=lambda: [
            EscalationLevelConfig(level=1, notify=["#support-alerts"]),
            EscalationLevelConfig(level=2, notify=["#support-alerts", "#support-leads"]),
        ]
    )
    calendars: List[BusinessCalendar] = Field(
        default_factory=list,
        description="Calendar definitions seeded into storage when absent"
    )

    @field_validator("warning_minutes")
    @classmethod
    def validate_warning_minutes(cls, v: Dict[Priority, int]) -> Dict[Priority, int]:
        """Fill missing priorities with the defaults."""
        for priority in VALID_PRIORITIES:
            if priority not in v:
                v[priority] = DEFAULT_WARNING_MINUTES[priority]
            elif v[priority] < 0:
                raise ValueError(f"warning_minutes for {priority.value} must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "SLAConfig":
        template_ids = [template.id for template in self.templates]
        if len(set(template_ids)) != len(template_ids):
            raise ValueError("template ids must be unique")

        contract_ids = [contract.id for contract in self.contracts]
        if len(set(contract_ids)) != len(contract_ids):
            raise ValueError("contract ids must be unique")

        if self.default_template_id and self.default_template_id not in template_ids:
            raise ValueError(f"default_template_id '{self.default_template_id}' is not a template")

        for contract in self.contracts:
            if contract.template_id and contract.template_id not in template_ids:
                raise ValueError(
                    f"contract '{contract.id}' references unknown template '{contract.template_id}'"
                )

        # Duplicate priorities surface as ConfigurationException at load time
        for priority in VALID_PRIORITIES:
            for template in self.templates:
                template.rule_for(priority)
            for contract in self.contracts:
                contract.override_for(priority)
        return self

    def get_template(self, template_id: Optional[str]) -> Optional[SLATemplate]:
        for template in self.templates:
            if template.id == template_id:
                return template
        return None

    def get_contract(self, contract_id: Optional[str]) -> Optional[ContractSLA]:
        for contract in self.contracts:
            if contract.id == contract_id:
                return contract
        return None

    def get_default_template(self) -> Optional[SLATemplate]:
        return self.get_template(self.default_template_id)

    def get_warning_minutes(self, priority: Priority) -> int:
        return self.warning_minutes.get(priority, DEFAULT_WARNING_MINUTES[priority])

    def get_channels_for_level(self, level: int) -> List[str]:
        """Get Slack channels to notify for given escalation level."""
        for esc in self.escalation_levels:
            if esc.level == level:
                return esc.notify
        return []


@dataclass(frozen=True)
class SLABudget:
    """Resolved response/solution budget and where it came from."""
    response_minutes: int
    solution_minutes: int
    template_id: Optional[str] = None
    contract_id: Optional[str] = None


@dataclass(frozen=True)
class DueDates:
    """Absolute due instants of both legs; both None means no SLA applies."""
    response_due_at: Optional[datetime] = None
    solution_due_at: Optional[datetime] = None

    @property
    def has_sla(self) -> bool:
        return self.response_due_at is not None or self.solution_due_at is not None


# ========== Recalculation outcomes ==========

@dataclass(frozen=True)
class Applied:
    """A new current calculation was written."""
    calculation: SLACalculation


@dataclass(frozen=True)
class Stale:
    """The current calculation changed underneath the attempt; retry."""
    expected_calculation_id: Optional[str]


@dataclass(frozen=True)
class Rejected:
    """Nothing was written; the existing current calculation stands."""
    reason: str
    calculation: Optional[SLACalculation] = None


RecalcResult = Union[Applied, Stale, Rejected]
