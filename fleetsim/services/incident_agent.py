"""
Incident detection over fleet snapshots.

Pipeline per server:
1. Evaluate the ordered failure predicates
2. Group matches into one candidate incident, id = hostname + condition ids
3. Suppress ids already reported within the last hour
4. Ask the narrative provider for an analysis (bounded by a timeout)
5. Record the incident and notify handlers

Architecture pattern: injected narrative capability behind a circuit breaker,
with a fixed fallback narrative on any failure.
"""

import asyncio
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from fleetsim.config import DetectionConfig
from fleetsim.domain.models import (
    FailedCondition,
    Incident,
    IncidentReport,
    ServerState,
    ServiceStatus,
)
from fleetsim.services.narrative import NarrativeProvider, Result

logger = structlog.get_logger(__name__)

NARRATIVE_FALLBACK_MESSAGE = (
    "AI analysis unavailable: the narrative service failed or timed out. "
    "Review the problem summary above and the server's recent metrics directly."
)

DEDUP_WINDOW = timedelta(seconds=3600)
ACTIVE_RETENTION = timedelta(hours=24)
LATEST_INCIDENTS_LIMIT = 10

CRITICAL_SERVICES = frozenset({"mysql", "nginx", "rabbitmq"})

IncidentHandler = Callable[[Incident], object]


def _percent(value: float) -> str:
    return f"{value:.1f}%"


def _stopped_critical_services(server: ServerState) -> list[str]:
    return [
        name
        for name, status in server.services.items()
        if name in CRITICAL_SERVICES and status == ServiceStatus.STOPPED
    ]


@dataclass(frozen=True)
class FailureCondition:
    """Named predicate over a server snapshot plus a formatter for its value."""

    id: str
    name: str
    check: Callable[[ServerState], bool]
    describe: Callable[[ServerState], str]

    def evaluate(self, server: ServerState) -> FailedCondition | None:
        if not self.check(server):
            return None
        return FailedCondition(id=self.id, name=self.name, value=self.describe(server))


FAILURE_CONDITIONS: tuple[FailureCondition, ...] = (
    FailureCondition(
        id="high_cpu",
        name="High CPU usage",
        check=lambda s: s.cpu_usage > 90,
        describe=lambda s: _percent(s.cpu_usage),
    ),
    FailureCondition(
        id="high_memory",
        name="High memory usage",
        check=lambda s: s.memory_usage_percent > 85,
        describe=lambda s: _percent(s.memory_usage_percent),
    ),
    FailureCondition(
        id="high_disk",
        name="High disk usage",
        check=lambda s: s.disk_usage_percent > 80,
        describe=lambda s: _percent(s.disk_usage_percent),
    ),
    FailureCondition(
        id="network_errors",
        name="Network errors",
        check=lambda s: s.network.rx_errors > 0 or s.network.tx_errors > 0,
        describe=lambda s: str(s.network.rx_errors + s.network.tx_errors),
    ),
    FailureCondition(
        id="zombie_processes",
        name="Zombie processes",
        check=lambda s: s.zombie_count > 0,
        describe=lambda s: str(s.zombie_count),
    ),
    FailureCondition(
        id="service_stopped",
        name="Critical service stopped",
        check=lambda s: bool(_stopped_critical_services(s)),
        describe=lambda s: ", ".join(_stopped_critical_services(s)),
    ),
)


class CircuitBreakerState:
    """
    Trips after consecutive narrative failures.

    Once open, calls are refused until recovery_timeout seconds have passed
    since the last failure; the next call is then a half-open trial whose
    failure re-opens the breaker immediately.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open

    def _cooled_down(self) -> bool:
        if self.last_failure_time is None:
            return False
        elapsed = datetime.now(UTC) - self.last_failure_time
        return elapsed.total_seconds() >= self.recovery_timeout

    def can_execute(self) -> bool:
        if self.state == "open" and self._cooled_down():
            self.state = "half-open"
        return self.state != "open"

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = datetime.now(UTC)
        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"


class IncidentDetectionAgent:
    """
    Scans fleet snapshots, deduplicates incidents and attaches narratives.

    Servers are evaluated one at a time; each new incident awaits its own
    narrative before the next server is examined.
    """

    def __init__(
        self,
        provider: NarrativeProvider | None = None,
        config: DetectionConfig | None = None,
        conditions: Sequence[FailureCondition] = FAILURE_CONDITIONS,
    ) -> None:
        self.provider = provider
        self.config = config or DetectionConfig()
        self.conditions = tuple(conditions)
        self.logger = logger.bind(component="incident_agent")

        self.circuit_breaker = CircuitBreakerState(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_seconds,
        )

        self._active: list[Incident] = []
        self._latest: deque[Incident] = deque(maxlen=LATEST_INCIDENTS_LIMIT)
        self._last_reported: dict[str, datetime] = {}
        self._handlers: list[IncidentHandler] = []

    def add_handler(self, handler: IncidentHandler) -> None:
        """Register a callback (sync or async) invoked for every new incident."""
        self._handlers.append(handler)

    def evaluate(self, server: ServerState) -> list[FailedCondition]:
        """Return the failed conditions for one server, in predicate order."""
        failed = []
        for condition in self.conditions:
            result = condition.evaluate(server)
            if result is not None:
                failed.append(result)
        return failed

    @staticmethod
    def incident_id(hostname: str, failed: Iterable[FailedCondition]) -> str:
        return "-".join([hostname, *(c.id for c in failed)])

    def is_duplicate(self, incident_id: str, now: datetime) -> bool:
        last = self._last_reported.get(incident_id)
        return last is not None and now - last < DEDUP_WINDOW

    async def check_fleet(
        self, servers: Sequence[ServerState], now: datetime | None = None
    ) -> list[Incident]:
        """
        Run one detection pass. Returns the incidents recorded in this pass.

        Never raises for bad snapshots or narrative failures.
        """
        now = now or datetime.now(UTC)

        if not servers:
            self.logger.warning("incident_check_skipped", reason="empty_fleet")
            return []

        new_incidents: list[Incident] = []
        for server in servers:
            if not server.hostname or not server.hostname.strip():
                self.logger.warning("server_skipped", reason="missing_hostname", role=server.role)
                continue

            failed = self.evaluate(server)
            if not failed:
                continue

            incident_id = self.incident_id(server.hostname, failed)
            if self.is_duplicate(incident_id, now):
                self.logger.debug("incident_suppressed", incident_id=incident_id)
                continue

            report = await self._build_report(server, failed, now)
            incident = Incident(
                id=incident_id,
                hostname=server.hostname,
                detected_at=now,
                conditions=failed,
                report=report,
            )
            self._record(incident)
            new_incidents.append(incident)

            self.logger.info(
                "incident_detected",
                incident_id=incident_id,
                hostname=server.hostname,
                conditions=[c.id for c in failed],
                narrative_available=report.narrative_available,
            )
            await self._dispatch(incident)

        # Newest pass first, detection order kept within the pass
        self._latest.extendleft(reversed(new_incidents))

        self.logger.debug(
            "incident_check_completed",
            servers=len(servers),
            new_incidents=len(new_incidents),
            active_incidents=len(self._active),
        )
        return new_incidents

    def _record(self, incident: Incident) -> None:
        self._active.append(incident)
        self._last_reported[incident.id] = incident.detected_at

    def build_prompt(self, server: ServerState, failed: Sequence[FailedCondition]) -> str:
        problems = "\n".join(f"- {c.name}: {c.value}" for c in failed)
        return f"""Server: {server.hostname} (role: {server.role}, region: {server.region})

Detected problems:
{problems}

Analyze the likely causes of these problems and recommend remediation steps."""

    async def _build_report(
        self, server: ServerState, failed: Sequence[FailedCondition], now: datetime
    ) -> IncidentReport:
        result = await self._request_narrative(self.build_prompt(server, failed), server.hostname)
        if result.is_err():
            self.logger.info(
                "narrative_fallback_used",
                hostname=server.hostname,
                reason=str(result.unwrap_err()),
            )
        return IncidentReport(
            hostname=server.hostname,
            detected_at=now,
            problems=list(failed),
            narrative=result.unwrap_or(NARRATIVE_FALLBACK_MESSAGE),
            narrative_available=result.is_ok(),
        )

    async def _request_narrative(self, prompt: str, hostname: str) -> Result[str]:
        """Call the provider through the circuit breaker with a timeout."""
        if self.provider is None:
            return Result.err(RuntimeError("No narrative provider configured"))

        if not self.circuit_breaker.can_execute():
            self.logger.warning("narrative_circuit_open", hostname=hostname)
            return Result.err(RuntimeError("Narrative circuit breaker is open"))

        timeout = self.config.narrative_timeout_seconds
        try:
            narrative = await asyncio.wait_for(
                self.provider.generate_narrative(prompt), timeout=timeout
            )
        except TimeoutError as e:
            self.logger.error(
                "narrative_generation_timeout", hostname=hostname, timeout_seconds=timeout
            )
            self.circuit_breaker.record_failure()
            return Result.err(e)
        except Exception as e:
            self.logger.error("narrative_generation_failed", hostname=hostname, error=str(e))
            self.circuit_breaker.record_failure()
            return Result.err(e)

        self.circuit_breaker.record_success()
        if not narrative:
            return Result.err(ValueError("Narrative provider returned an empty response"))
        return Result.ok(narrative)

    async def _dispatch(self, incident: Incident) -> None:
        for handler in self._handlers:
            try:
                outcome = handler(incident)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                self.logger.error(
                    "incident_dispatch_failed", error=str(e), incident_id=incident.id
                )

    def latest_incidents(self) -> list[Incident]:
        """The most recent incidents: newest pass first, detection order within a pass."""
        return list(self._latest)

    def active_incidents(self) -> list[Incident]:
        return list(self._active)

    def prune_expired(self, now: datetime | None = None) -> int:
        """Drop incidents older than 24 hours. Returns how many were removed."""
        now = now or datetime.now(UTC)
        cutoff = now - ACTIVE_RETENTION

        before = len(self._active)
        self._active = [i for i in self._active if i.detected_at > cutoff]
        self._last_reported = {k: v for k, v in self._last_reported.items() if v > cutoff}
        removed = before - len(self._active)

        if removed:
            self.logger.info("incidents_pruned", removed=removed, remaining=len(self._active))
        return removed
