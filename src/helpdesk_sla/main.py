"""
Helpdesk SLA Engine - Main Application
======================================

Computes response and solution deadlines for helpdesk tickets in business
time and escalates tickets whose deadlines approach or pass.

Modules:
- SLA: deadline calculation, recalculation, escalation sweep, calendars

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, business-time arithmetic
- Infrastructure: Database, YAML config, Slack, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration
from helpdesk_sla.config import settings

# Infrastructure
from helpdesk_sla.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
)

# SLA Module
from helpdesk_sla.sla.application import (
    CalendarService,
    EscalationEngine,
    RecalculationCoordinator,
    SLAService,
)
from helpdesk_sla.sla.infrastructure import (
    SQLAlchemyCalendarRepository,
    SQLAlchemySLACalculationStore,
    SQLAlchemyTicketReader,
)
from helpdesk_sla.sla.infrastructure.external import SLAConfigManager, SlackClient, SLAScheduler
from helpdesk_sla.sla.interfaces import sla_router

# Shared
from helpdesk_sla.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    MetricsMiddleware,
    register_exception_handlers,
)
from helpdesk_sla.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def seed_calendars(config_manager: SLAConfigManager) -> int:
    """Store the calendars declared in the YAML config that the database lacks."""
    async with get_session_context() as session:
        tickets = SQLAlchemyTicketReader(session)
        store = SQLAlchemySLACalculationStore(session)
        calendars = SQLAlchemyCalendarRepository(session)
        coordinator = RecalculationCoordinator(
            SLAService(tickets, store, calendars, config_manager),
            tickets,
            store,
            max_attempts=settings.recalculation_max_attempts
        )
        return await CalendarService(calendars, coordinator).seed(
            config_manager.get_config().calendars
        )


def build_sweep_job(config_manager: SLAConfigManager, slack_client: SlackClient):
    """Background escalation sweep bound to this process' shard."""

    async def sla_escalation_job():
        async with get_session_context() as session:
            engine = EscalationEngine(
                SQLAlchemyTicketReader(session),
                SQLAlchemySLACalculationStore(session),
                config_manager
            )
            events = await engine.sweep(
                shard_index=settings.sla_sweep_shard_index,
                shard_count=settings.sla_sweep_shard_count
            )
        # Session committed; alerts go out only for persisted transitions
        await engine.publish(events, slack_client)

    return sla_escalation_job


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and watch it for changes
    4. Seed business calendars from the configuration
    5. Start the escalation scheduler

    SHUTDOWN:
    1. Stop the escalation scheduler
    2. Stop the config watcher
    3. Close Slack client and database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Helpdesk SLA Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Schema is created here for development; the server still starts
    # without a database and the SLA endpoints fail until it is reachable
    database_available = True
    try:
        await create_tables()
    except Exception as e:
        database_available = False
        logger.warning(
            "Database not available - running in degraded mode",
            extra={"error": str(e)}
        )

    logger.info("Loading SLA configuration", extra={"path": str(settings.sla_config_path)})
    sla_config_manager = SLAConfigManager()
    sla_config_manager.load(settings.sla_config_path)
    sla_config_manager.start_watching()

    if database_available:
        await seed_calendars(sla_config_manager)

    slack_client = SlackClient()

    sla_scheduler = None
    if settings.sla_evaluation_interval > 0:
        sla_scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        await sla_scheduler.start(build_sweep_job(sla_config_manager, slack_client))
    else:
        logger.info("SLA scheduler disabled")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.database_available = database_available
    app.state.sla_config_manager = sla_config_manager
    app.state.slack_client = slack_client
    app.state.sla_scheduler = sla_scheduler

    logger.info("Helpdesk SLA Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Helpdesk SLA Engine")

    if sla_scheduler:
        await sla_scheduler.stop()

    sla_config_manager.stop_watching()
    await slack_client.close()
    await close_database()

    logger.info("Helpdesk SLA Engine shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Helpdesk SLA Engine API",
    description="""
    ## Helpdesk SLA Engine

    Computes response and solution deadlines in business time and escalates
    tickets whose deadlines are approaching or breached.

    ---

    ### SLA Module

    **Endpoints:**
    - `POST /sla/tickets` - Ingest ticket snapshots
    - `GET /sla/tickets/{id}` - Current SLA status of a ticket
    - `GET /sla/tickets/{id}/calculations` - Calculation history
    - `POST /sla/tickets/{id}/recalculate` - Re-derive deadlines
    - `POST /sla/sweep` - Run an escalation sweep now
    - `GET /sla/templates` - SLA templates and contracts
    - `GET|PUT /sla/calendars/{id}` - Business calendars

    **Features:**
    - Business-hours arithmetic with timezones, weekly windows and holidays
    - Template and contract-override rule resolution per priority
    - Append-only calculation history with exactly one current row per ticket
    - Forward-only escalation states: on_track, approaching, breached
    - Background escalation sweep (every 60 seconds by default)

    ---

    ### Configuration

    Templates, contracts, warning thresholds, escalation channels and
    default calendars live in `sla_config.yaml` and are hot-reloaded.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)
app.state.settings = settings

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
# Last added runs first, so the correlation ID is set before logging
app.add_middleware(LoggingMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(CorrelationIDMiddleware)
register_exception_handlers(app)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "sla_config": "loaded",
                        "sla_scheduler": "running",
                        "slack": "configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database availability at startup
    - SLA configuration status
    - Scheduler state
    - Slack webhook configuration
    """
    state = request.app.state
    scheduler = getattr(state, "sla_scheduler", None)
    config_manager = getattr(state, "sla_config_manager", None)
    database_available = getattr(state, "database_available", True)

    if config_manager is None:
        config_check = "static"
    elif config_manager.last_error:
        config_check = "reload_failed"
    else:
        config_check = "loaded"

    checks = {
        "database": "connected" if database_available else "unavailable",
        "sla_config": config_check,
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "slack": "configured" if settings.slack_webhook_url else "not_configured"
    }

    return {
        "status": "healthy" if database_available else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "sla": {
                "prefix": "/sla",
                "endpoints": [
                    "POST /sla/tickets - Ingest ticket snapshots",
                    "GET /sla/tickets/{id} - Get ticket SLA status",
                    "GET /sla/tickets/{id}/calculations - Get calculation history",
                    "POST /sla/tickets/{id}/recalculate - Recalculate deadlines",
                    "POST /sla/sweep - Run escalation sweep",
                    "GET /sla/templates - List SLA templates",
                    "GET /sla/calendars - List business calendars",
                    "PUT /sla/calendars/{id} - Create or replace a calendar"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "helpdesk_sla.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
