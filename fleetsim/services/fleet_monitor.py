"""
Fleet monitor service: wires the simulator, state store and incident agent.

One cycle:
1. Advance the fleet one tick
2. Scan the fresh snapshot for incidents (on the detection cadence)
3. Prune incidents older than 24 hours

Architecture pattern: composition root with a continuously running loop,
degrading to fallback narratives when the AI provider is unavailable.
"""

import asyncio
import random
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from fleetsim.config import AppConfig, get_config
from fleetsim.domain.models import DatasetRecord, Incident
from fleetsim.services.alerts import AlertSynthesizer
from fleetsim.services.fleet_simulator import FleetSimulator, TickSummary
from fleetsim.services.incident_agent import IncidentDetectionAgent, IncidentHandler
from fleetsim.services.narrative import NarrativeProvider, build_narrative_provider
from fleetsim.services.scenario_overlay import ScenarioOverlay
from fleetsim.services.state_store import ServerStateStore

logger = structlog.get_logger(__name__)


@dataclass
class CycleSummary:
    """Outcome of one monitor cycle."""

    tick: TickSummary | None
    new_incidents: list[Incident] = field(default_factory=list)
    pruned_incidents: int = 0
    detection_ran: bool = False
    circuit_state: str = "closed"
    duration_seconds: float = 0.0

    @property
    def degraded(self) -> bool:
        """True when any new incident fell back to the fixed narrative."""
        return any(not i.report.narrative_available for i in self.new_incidents)


class FleetMonitorService:
    """
    Main service that owns the simulated fleet and its incident detection.

    Collaborators can be injected for tests; otherwise they are built from
    the application config.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        provider: NarrativeProvider | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="fleet_monitor")

        self.rng = rng or random.Random(self.config.simulation.seed)
        self.store = ServerStateStore()
        self.simulator = FleetSimulator(
            self.config.simulation,
            store=self.store,
            synthesizer=AlertSynthesizer(self.rng),
            rng=self.rng,
        )

        if provider is None:
            provider = build_narrative_provider(self.config.narrative)
        self.incident_agent = IncidentDetectionAgent(provider, self.config.detection)

        self.demo_store = ServerStateStore()
        self.overlay = ScenarioOverlay(self.config.overlay)

        self._last_detection: float | None = None
        self._is_running = False

        self.logger.info(
            "fleet_monitor_initialized",
            fleet_size=self.config.simulation.fleet_size,
            catalog=self.config.simulation.profile_catalog,
            narrative_enabled=provider is not None,
        )

    def add_incident_handler(self, handler: IncidentHandler) -> None:
        self.incident_agent.add_handler(handler)

    async def start(self) -> int:
        """Populate the fleet. Returns the number of servers."""
        return await self.simulator.populate()

    async def run_cycle(self, detect: bool = True) -> CycleSummary:
        """
        Execute one complete cycle. Incident timestamps follow the simulated
        clock so deduplication and pruning line up with simulated time.
        """
        cycle_start = time.perf_counter()

        tick = self.simulator.tick()
        summary = CycleSummary(tick=tick)

        if detect and len(self.store):
            now: datetime = self.simulator.clock
            summary.new_incidents = await self.incident_agent.check_fleet(
                self.store.current(), now=now
            )
            summary.pruned_incidents = self.incident_agent.prune_expired(now)
            summary.detection_ran = True
            self._last_detection = time.perf_counter()

        summary.circuit_state = self.incident_agent.circuit_breaker.state
        summary.duration_seconds = time.perf_counter() - cycle_start

        self.logger.info(
            "monitor_cycle_completed",
            tick=tick.tick if tick else None,
            new_incidents=len(summary.new_incidents),
            active_incidents=len(self.incident_agent.active_incidents()),
            narrative_circuit_state=summary.circuit_state,
            degraded=summary.degraded,
            duration_seconds=round(summary.duration_seconds, 3),
        )
        return summary

    def _detection_due(self) -> bool:
        if self._last_detection is None:
            return True
        elapsed = time.perf_counter() - self._last_detection
        return elapsed >= self.config.detection.check_interval_seconds

    async def run_continuously(self) -> AsyncIterator[CycleSummary]:
        """
        Populate the fleet if needed, then cycle every tick interval.

        Detection runs at most once per check_interval_seconds.
        """
        interval = self.config.simulation.tick_interval_seconds
        self.logger.info(
            "continuous_monitoring_starting",
            tick_interval=interval,
            detection_interval=self.config.detection.check_interval_seconds,
        )

        if len(self.simulator.servers) < self.config.simulation.fleet_size:
            await self.start()

        self._is_running = True
        try:
            while self._is_running:
                cycle_start = time.perf_counter()

                yield await self.run_cycle(detect=self._detection_due())

                elapsed = time.perf_counter() - cycle_start
                sleep_time = max(0, interval - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)

        except asyncio.CancelledError:
            self.logger.info("continuous_monitoring_cancelled")
            raise
        finally:
            self._is_running = False

    def stop(self) -> None:
        self._is_running = False

    def load_demo_dataset(self, end: datetime | None = None) -> list[DatasetRecord]:
        """Generate the pre-baked 24h dataset and load it into demo_store."""
        dataset = self.overlay.generate(end)
        self.overlay.load_into(self.demo_store, dataset)
        return dataset

    async def check_demo_dataset(self, now: datetime | None = None) -> list[Incident]:
        """Run incident detection over the latest demo dataset snapshot."""
        return await self.incident_agent.check_fleet(self.demo_store.current(), now=now)
