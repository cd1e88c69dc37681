"""
SLA Domain Layer
================

Domain layer for the SLA engine.

Contains:
- Calendar: working windows, holidays and business-time arithmetic
- Entities: Ticket snapshots, SLACalculation rows, StatusEvent, SLAStatus
- Value Objects: templates, contracts, SLAConfig, budgets, RecalcResult
- Domain Services: SLARuleResolver, DeadlineCalculator, LegEvaluator

This layer has no dependencies on infrastructure.
"""

from helpdesk_sla.sla.domain.calendar import BusinessCalendar, Holiday, WorkingInterval, as_utc
from helpdesk_sla.sla.domain.entities import SLACalculation, SLAStatus, StatusEvent, Ticket
from helpdesk_sla.sla.domain.services import DeadlineCalculator, LegEvaluator, SLARuleResolver
from helpdesk_sla.sla.domain.value_objects import (
    Applied,
    ContractSLA,
    DueDates,
    EscalationLevelConfig,
    RecalcResult,
    Rejected,
    SLABudget,
    SLAConfig,
    SLARule,
    SLATemplate,
    Stale,
)

__all__ = [
    # Calendar
    "BusinessCalendar",
    "Holiday",
    "WorkingInterval",
    "as_utc",
    # Entities
    "Ticket",
    "SLACalculation",
    "StatusEvent",
    "SLAStatus",
    # Value Objects
    "SLARule",
    "SLATemplate",
    "ContractSLA",
    "EscalationLevelConfig",
    "SLAConfig",
    "SLABudget",
    "DueDates",
    "Applied",
    "Stale",
    "Rejected",
    "RecalcResult",
    # Services
    "SLARuleResolver",
    "DeadlineCalculator",
    "LegEvaluator",
]
