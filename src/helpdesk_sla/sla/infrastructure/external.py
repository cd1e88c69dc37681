"""
SLA External Service Integrations
==================================

Adapters around the SLA engine's runtime collaborators:
- SLAConfigManager: live YAML configuration, swapped on file change (watchdog)
- SlackClient: escalation alerts to a Slack incoming webhook (httpx)
- SLAScheduler: periodic escalation sweep (APScheduler)
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from helpdesk_sla.config import LegState, settings
from helpdesk_sla.core import ConfigurationException, NotificationException
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application import IEscalationNotifier, ISLAConfigProvider
from helpdesk_sla.sla.domain import SLAConfig, StatusEvent
from helpdesk_sla.sla.infrastructure.repositories import load_sla_config

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigFileHandler(FileSystemEventHandler):
    """Calls back when the watched file is written, created or renamed into place."""

    RELEVANT_EVENTS = ("modified", "created", "moved")

    def __init__(self, on_change: Callable[[], bool], config_path: Path):
        super().__init__()
        self._on_change = on_change
        self._target = config_path.resolve()

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in self.RELEVANT_EVENTS:
            return
        # Editors often save by writing a temp file and renaming it over the original
        paths = [event.src_path, getattr(event, "dest_path", None)]
        if any(p and Path(p).resolve() == self._target for p in paths):
            logger.info("SLA config file changed", extra={"path": str(self._target)})
            self._on_change()


class SLAConfigManager(ISLAConfigProvider):
    """
    Holds the live SLA configuration and swaps it when the YAML file changes.

    Readers always get a complete, validated SLAConfig. An edit that fails
    validation is logged, recorded in ``last_error`` and ignored until the
    file is fixed; ``generation`` counts the configurations installed so far.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path is not None else None
        self._current: Optional[SLAConfig] = None
        self._swap_lock = threading.Lock()
        self._observer = None
        self.generation = 0
        self.last_error: Optional[str] = None

    def load(self, path: Optional[Path] = None) -> SLAConfig:
        """Initial load; unlike reload(), an invalid file raises."""
        if path is not None:
            self._path = Path(path)
        if self._path is None:
            raise RuntimeError("No SLA config path given")

        config = load_sla_config(self._path)
        self._install(config)
        return config

    def reload(self) -> bool:
        if self._path is None:
            return False

        try:
            config = load_sla_config(self._path)
        except ConfigurationException as e:
            self.last_error = e.message
            logger.error(
                "Rejected SLA config change, previous configuration stays active",
                extra={"path": str(self._path), "error": e.message, "generation": self.generation}
            )
            return False

        self._install(config)
        logger.info(
            "SLA configuration reloaded",
            extra={
                "generation": self.generation,
                "templates": len(config.templates),
                "contracts": len(config.contracts),
                "calendars": len(config.calendars),
            }
        )
        return True

    def _install(self, config: SLAConfig) -> None:
        with self._swap_lock:
            self._current = config
            self.generation += 1
            self.last_error = None

    def start_watching(self) -> None:
        """Watch the config file's directory; a no-op when the file is absent."""
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("No SLA config file to watch", extra={"path": str(self._path)})
            return

        observer = Observer()
        observer.schedule(
            ConfigFileHandler(self.reload, self._path),
            str(self._path.resolve().parent),
            recursive=False
        )
        try:
            observer.start()
        except OSError as e:
            # e.g. inotify watch limit reached; the config stays static
            logger.warning(
                "File watching not available, SLA config will not hot-reload",
                extra={"path": str(self._path), "error": str(e)}
            )
            return

        self._observer = observer
        logger.info("Watching SLA config file", extra={"path": str(self._path)})

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None

    def get_config(self) -> SLAConfig:
        with self._swap_lock:
            if self._current is None:
                raise RuntimeError("SLA configuration not loaded")
            return self._current


# ---------------------------------------------------------------------------
# Slack
# ---------------------------------------------------------------------------

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling Slack after repeated failed deliveries.

    ``failure_threshold`` consecutive failures open the circuit. Once
    ``recovery_timeout`` seconds have passed it turns half-open and lets a
    single trial call through: success closes it, failure opens it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        was_trial = self._trial_in_flight
        self._trial_in_flight = False

        if was_trial or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                "Slack circuit opened",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "recovery_timeout": self.recovery_timeout
                }
            )


@dataclass
class SlackMessage:
    """Flattened escalation event, ready to render as Block Kit."""
    ticket_id: str
    priority: str
    leg: str
    state: str
    escalation_level: int
    due_at: Optional[str]
    occurred_at: str
    idempotency_key: str

    @classmethod
    def from_event(cls, event: StatusEvent) -> "SlackMessage":
        return cls(
            ticket_id=event.ticket_id,
            priority=event.priority.value,
            leg=event.leg.value,
            state=event.state.value,
            escalation_level=event.escalation_level,
            due_at=event.due_at.isoformat() if event.due_at else None,
            occurred_at=event.occurred_at.isoformat(),
            idempotency_key=event.idempotency_key,
        )


HEADERS = {
    LegState.BREACHED.value: ":rotating_light: SLA Breached",
    LegState.APPROACHING.value: ":warning: SLA Approaching",
}


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After", "")
    return float(value) if value.isdigit() else None


class SlackClient(IEscalationNotifier):
    """
    Posts escalation alerts to a Slack incoming webhook.

    Transport errors, 5xx and 429 answers are retried with exponential
    backoff (429 waits for Retry-After when Slack sends one); any other
    non-200 answer is permanent and fails at once. Every undelivered alert
    counts towards the circuit breaker.
    """

    RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        default_channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._default_channel = default_channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._max_retries = max_retries or settings.slack_max_retries
        self._backoff = backoff_seconds if backoff_seconds is not None else settings.slack_backoff_seconds
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _build_message(self, data: SlackMessage, channel: str) -> Dict[str, Any]:
        fields = [
            ("Ticket", data.ticket_id),
            ("Priority", data.priority.title()),
            ("Leg", data.leg.title()),
            ("Escalation Level", str(data.escalation_level)),
            ("Due", data.due_at or "n/a"),
        ]
        return {
            "channel": channel,
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": HEADERS[data.state], "emoji": True}
                },
                {
                    "type": "section",
                    "fields": [{"type": "mrkdwn", "text": f"*{label}:*\n{value}"} for label, value in fields]
                },
                {
                    "type": "context",
                    "elements": [
                        {"type": "mrkdwn", "text": f"Detected {data.occurred_at} | key {data.idempotency_key}"}
                    ]
                }
            ]
        }

    async def notify(self, event: StatusEvent, channels: List[str]) -> bool:
        """Deliver the event to each distinct channel; True when all succeeded."""
        message = SlackMessage.from_event(event)
        results = [
            await self.send_alert(message, channel)
            for channel in dict.fromkeys(channels or [self._default_channel])
        ]
        return all(results)

    async def _post(self, payload: Dict[str, Any]) -> None:
        client = await self._get_client()
        response = await client.post(self._webhook_url, json=payload)
        if response.status_code != 200:
            raise NotificationException(
                "Slack webhook rejected the alert",
                {
                    "status_code": response.status_code,
                    "retryable": response.status_code in self.RETRYABLE_STATUS,
                    "retry_after": _retry_after_seconds(response),
                }
            )

    async def send_alert(
        self,
        data: SlackMessage,
        channel: Optional[str] = None,
        max_retries: Optional[int] = None
    ) -> bool:
        """
        Deliver one alert to one channel.

        Returns:
            True if Slack accepted the alert, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping alert")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Slack circuit open, alert dropped",
                extra={"ticket_id": data.ticket_id, "idempotency_key": data.idempotency_key}
            )
            return False

        payload = self._build_message(data, channel or self._default_channel)
        attempts = max_retries or self._max_retries

        for attempt in range(1, attempts + 1):
            try:
                await self._post(payload)
            except httpx.HTTPError as e:
                error, retryable, delay = str(e), True, None
            except NotificationException as e:
                error = f"{e.message} ({e.details['status_code']})"
                retryable = e.details["retryable"]
                delay = e.details["retry_after"]
            else:
                self._circuit_breaker.record_success()
                logger.info(
                    "Slack alert delivered",
                    extra={
                        "ticket_id": data.ticket_id,
                        "channel": payload["channel"],
                        "idempotency_key": data.idempotency_key
                    }
                )
                return True

            logger.warning(
                "Slack delivery attempt failed",
                extra={"ticket_id": data.ticket_id, "attempt": attempt, "error": error}
            )
            if not retryable or attempt == attempts:
                break
            await asyncio.sleep(delay if delay is not None else self._backoff * 2 ** (attempt - 1))

        self._circuit_breaker.record_failure()
        logger.error(
            "Slack alert not delivered",
            extra={"ticket_id": data.ticket_id, "idempotency_key": data.idempotency_key}
        )
        return False

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class SLAScheduler:
    """
    Runs the escalation sweep on an APScheduler interval trigger.

    At most one sweep runs at a time and ticks missed while one was running
    are coalesced. Failed runs are logged by a job listener; the next tick
    still fires.
    """

    JOB_ID = "sla_escalation_sweep"

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    async def start(self, job_func: Callable[[], Awaitable[None]]) -> None:
        if self.is_running:
            logger.warning("SLA scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_listener(self._on_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        scheduler.add_job(
            job_func,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="SLA escalation sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds
        )
        scheduler.start()
        self._scheduler = scheduler

        logger.info("SLA scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("SLA scheduler stopped")

    @staticmethod
    def _on_job_event(event: JobExecutionEvent) -> None:
        if event.exception is not None:
            logger.error(
                "Escalation sweep failed",
                extra={"job_id": event.job_id, "error": repr(event.exception)}
            )
        else:
            logger.warning(
                "Escalation sweep run missed",
                extra={"job_id": event.job_id, "scheduled_at": event.scheduled_run_time.isoformat()}
            )

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
