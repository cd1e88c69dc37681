"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for the SLA engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and YAML config loading
- External: Slack notifications, config watcher, scheduler
"""

from helpdesk_sla.sla.infrastructure.models import (
    BusinessCalendarModel,
    SLACalculationModel,
    TicketModel,
)
from helpdesk_sla.sla.infrastructure.repositories import (
    SQLAlchemyCalendarRepository,
    SQLAlchemySLACalculationStore,
    SQLAlchemyTicketReader,
    YAMLConfigProvider,
    load_sla_config,
)

__all__ = [
    "TicketModel",
    "BusinessCalendarModel",
    "SLACalculationModel",
    "SQLAlchemyTicketReader",
    "SQLAlchemySLACalculationStore",
    "SQLAlchemyCalendarRepository",
    "YAMLConfigProvider",
    "load_sla_config",
]
