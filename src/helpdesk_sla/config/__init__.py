"""
Configuration Module
====================

Application settings and domain constants using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-sla", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Engine ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA templates/contracts/calendars YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=60,
        description="Seconds between escalation sweeps (0 disables the scheduler)",
        ge=0
    )
    sla_sweep_shard_count: int = Field(
        default=1,
        description="Total number of sweep workers",
        ge=1
    )
    sla_sweep_shard_index: int = Field(
        default=0,
        description="Shard handled by this worker's sweep",
        ge=0
    )
    recalculation_max_attempts: int = Field(
        default=3,
        description="Retries for a recalculation that lost an optimistic race",
        ge=1,
        le=20
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#support-escalations",
        description="Default Slack channel for SLA notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    slack_max_retries: int = Field(default=3, description="Delivery attempts per alert", ge=1, le=10)
    slack_backoff_seconds: float = Field(
        default=1.0,
        description="Base delay between delivery attempts, doubled each retry",
        ge=0
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("sla_sweep_shard_index")
    @classmethod
    def validate_shard_index(cls, v: int, info) -> int:
        """Shard index must fall inside the shard count."""
        count = info.data.get("sla_sweep_shard_count", 1)
        if v >= count:
            raise ValueError("sla_sweep_shard_index must be < sla_sweep_shard_count")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Priority(str, Enum):
    """Ticket priority levels (closed set)."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses as reported by the system of record."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class SLALeg(str, Enum):
    """The two independent SLA clocks of a ticket."""
    RESPONSE = "response"
    SOLUTION = "solution"


class LegState(str, Enum):
    """Escalation state of a single leg."""
    NO_SLA = "no_sla"
    ON_TRACK = "on_track"
    APPROACHING = "approaching"
    BREACHED = "breached"
    COMPLETED = "completed"


class RecalcReason(str, Enum):
    """Why an SLA calculation row was written."""
    CREATION = "creation"
    PRIORITY_CHANGE = "priority_change"
    CONTRACT_CHANGE = "contract_change"
    CALENDAR_CHANGE = "calendar_change"
    MANUAL = "manual"
    REOPEN = "reopen"


class HolidayRecurrence(str, Enum):
    """How a holiday date repeats."""
    NONE = "none"
    YEARLY = "yearly"
    MONTHLY = "monthly"


# ========== Lists for validation ==========

VALID_PRIORITIES = [
    Priority.CRITICAL, Priority.HIGH,
    Priority.MEDIUM, Priority.LOW
]
CLOSED_STATUSES = [TicketStatus.RESOLVED, TicketStatus.CLOSED]
OPEN_STATUSES = [TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.PENDING]
VALID_LEGS = [SLALeg.RESPONSE, SLALeg.SOLUTION]

# Minutes before the due date at which a leg becomes "approaching"
DEFAULT_WARNING_MINUTES = {
    Priority.CRITICAL: 60,
    Priority.HIGH: 120,
    Priority.MEDIUM: 240,
    Priority.LOW: 480,
}

# Largest response or solution budget a rule may declare: ten years of minutes
MAX_BUDGET_MINUTES = 10 * 366 * 24 * 60

# Escalation level reached when a leg enters the given state
ESCALATION_LEVELS = {
    LegState.NO_SLA: 0,
    LegState.ON_TRACK: 0,
    LegState.APPROACHING: 1,
    LegState.BREACHED: 2,
}
