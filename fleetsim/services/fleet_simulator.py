"""
Tick evolution engine for the simulated fleet.

Each tick advances every server one step:
1. Decide a health transition (hysteresis + severity ratio control)
2. Drift metrics with noise, time-of-day load and a pull toward the baseline
3. Force the decided health state onto the metrics
4. Churn services, network counters and alerts
5. Classify, record history, notify subscribers

Ticks are synchronous and run to completion; the only suspension points are
between population batches and between ticks.
"""

import asyncio
import random
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from fleetsim.config import SimulationConfig
from fleetsim.domain.health import (
    CRITICAL_THRESHOLD,
    WARNING_THRESHOLD,
    clamp_metric,
    classify_state,
)
from fleetsim.domain.load_model import load_multiplier_at
from fleetsim.domain.models import (
    AlertSeverity,
    HealthStatus,
    NetworkStats,
    ServerProfile,
    ServerState,
    ServiceStatus,
)
from fleetsim.domain.profiles import (
    draw_baseline,
    find_profile,
    get_profile_catalog,
    select_profile,
)
from fleetsim.services.alerts import AlertSynthesizer, dedupe_alerts
from fleetsim.services.state_store import ServerStateStore

logger = structlog.get_logger(__name__)

REGIONS = ("kr", "us", "eu", "jp", "sg")
OS_TYPES = (
    "Ubuntu 20.04 LTS",
    "Ubuntu 22.04 LTS",
    "CentOS 7",
    "Rocky Linux 8",
    "Amazon Linux 2",
    "Debian 11",
    "RHEL 8",
)

METRICS = ("cpu_usage", "memory_usage_percent", "disk_usage_percent")
MEBIBYTE = 1024 * 1024

# Transition policy
CRITICAL_EXIT_PROBABILITY = 0.2
WARNING_CHANGE_PROBABILITY = 0.3
WARNING_RECOVERY_SHARE = 0.7
NORMAL_TO_CRITICAL_PROBABILITY = 0.05
NORMAL_TO_WARNING_PROBABILITY = 0.10

# Per-tick churn
SERVICE_REFRESH_PROBABILITY = 0.3
SERVICE_RESTART_PROBABILITY = 0.7
SERVICE_STOP_PROBABILITY = 0.2
ALERT_REFRESH_PROBABILITY = 0.3
ALERT_RESOLUTION_PROBABILITY = 0.7
NETWORK_ERROR_PROBABILITY = 0.2
ZOMBIE_PROBABILITY = 0.1

# Metric drift: (noise range, share of the CPU time influence)
METRIC_NOISE = {
    "cpu_usage": (-15, 15),
    "memory_usage_percent": (-10, 10),
    "disk_usage_percent": (-5, 7),
}
TIME_INFLUENCE_SHARE = {
    "cpu_usage": 1.0,
    "memory_usage_percent": 0.8,
    "disk_usage_percent": 0.4,
}
TIME_INFLUENCE_FACTOR = 0.8
CPU_DELTA_LIMIT = 20.0
MEAN_REVERSION = 0.5

# Creation-time probabilities
INITIAL_CRITICAL_SPIKE_PROBABILITY = 0.02
INITIAL_WARNING_SPIKE_PROBABILITY = 0.04
INITIAL_CRITICAL_ALERT_PROBABILITY = 0.01
INITIAL_ALERT_PROBABILITY = 0.03
DB_SLOW_QUERY_PROBABILITY = 0.1
INITIAL_SERVICE_STOPPED_PROBABILITY = 0.01


@dataclass
class TickSummary:
    """Outcome of one tick, handed to observers."""

    tick: int
    simulated_time: datetime
    load_multiplier: float
    status_counts: dict[HealthStatus, int]
    transitions: int
    duration_seconds: float

    @property
    def critical_count(self) -> int:
        return self.status_counts[HealthStatus.CRITICAL]

    @property
    def warning_count(self) -> int:
        return self.status_counts[HealthStatus.WARNING]


def _aligned_now(step_minutes: int) -> datetime:
    now = datetime.now(UTC).replace(second=0, microsecond=0)
    return now - timedelta(minutes=now.minute % step_minutes)


class FleetSimulator:
    """
    Owns the simulated fleet and advances it one tick at a time.

    Design principles:
    - One writer: only this class mutates ServerState during a tick
    - Readers see only fully formed snapshots via the ServerStateStore
    - All randomness flows through one injectable random.Random
    """

    def __init__(
        self,
        config: SimulationConfig | None = None,
        store: ServerStateStore | None = None,
        synthesizer: AlertSynthesizer | None = None,
        rng: random.Random | None = None,
        start_time: datetime | None = None,
    ) -> None:
        self.config = config or SimulationConfig()
        self.rng = rng or random.Random(self.config.seed)
        self.store = store or ServerStateStore()
        self.synthesizer = synthesizer or AlertSynthesizer(self.rng)
        self.profiles: tuple[ServerProfile, ...] = get_profile_catalog(self.config.profile_catalog)
        self.step = timedelta(minutes=self.config.simulated_step_minutes)
        self.clock = start_time or _aligned_now(self.config.simulated_step_minutes)
        self.logger = logger.bind(component="fleet_simulator")

        self.servers: list[ServerState] = []
        self.tick_count = 0
        self._baselines: dict[str, dict[str, float]] = {}
        self._is_populating = False
        self._is_running = False

    # Fleet creation

    def create_server(self, index: int) -> ServerState:
        """Create one server for fleet position index."""
        rng = self.rng
        profile = select_profile(index, self.profiles)
        region = rng.choice(REGIONS)
        hostname = f"{profile.role}-{region}-{index + 1:03d}"

        baseline = {
            "cpu_usage": draw_baseline(profile.cpu, rng),
            "memory_usage_percent": draw_baseline(profile.memory, rng),
            "disk_usage_percent": draw_baseline(profile.disk, rng),
        }
        self._baselines[hostname] = dict(baseline)
        metrics = dict(baseline)

        # Occasional resource spikes at creation
        if rng.random() < INITIAL_CRITICAL_SPIKE_PROBABILITY:
            metrics[rng.choice(METRICS)] = float(90 + rng.randint(0, 8))
        elif rng.random() < INITIAL_WARNING_SPIKE_PROBABILITY:
            metrics[rng.choice(METRICS)] = float(70 + rng.randint(0, 19))

        alerts = []
        if rng.random() < INITIAL_CRITICAL_ALERT_PROBABILITY:
            alerts.append(
                self.synthesizer.synthesize(profile.role, AlertSeverity.CRITICAL, timestamp=self.clock)
            )
        elif rng.random() < INITIAL_ALERT_PROBABILITY:
            severity = AlertSeverity.ERROR if rng.random() < 0.5 else AlertSeverity.WARNING
            alerts.append(self.synthesizer.synthesize(profile.role, severity, timestamp=self.clock))
        if profile.role == "db" and rng.random() < DB_SLOW_QUERY_PROBABILITY:
            alerts.append(
                self.synthesizer.synthesize(
                    "db", AlertSeverity.WARNING, "Slow query detected", timestamp=self.clock
                )
            )

        services: dict[str, ServiceStatus] = {}
        service_count = min(
            rng.randint(profile.min_services, profile.max_services), len(profile.services)
        )
        has_critical_alert = any(a.severity == AlertSeverity.CRITICAL for a in alerts)
        for position, name in enumerate(rng.sample(profile.services, service_count)):
            stopped = (
                position == 0
                and not has_critical_alert
                and rng.random() < INITIAL_SERVICE_STOPPED_PROBABILITY
            )
            services[name] = ServiceStatus.STOPPED if stopped else ServiceStatus.RUNNING

        network = NetworkStats(
            rx_bytes=rng.randint(100_000, 50_000_000),
            tx_bytes=rng.randint(100_000, 50_000_000),
            rx_errors=rng.randint(1, 50) if alerts and rng.random() < 0.2 else 0,
            tx_errors=rng.randint(1, 20) if alerts and rng.random() < 0.1 else 0,
        )

        cpu = clamp_metric(metrics["cpu_usage"])
        state = ServerState(
            hostname=hostname,
            ip=f"10.{index % 25}.{index // 25}.{(index % 50) + 10}",
            os=rng.choice(OS_TYPES),
            region=region,
            role=profile.role,
            cpu_usage=cpu,
            memory_usage_percent=clamp_metric(metrics["memory_usage_percent"]),
            disk_usage_percent=clamp_metric(metrics["disk_usage_percent"]),
            network=network,
            process_count=rng.randint(50, 300),
            load_avg_1m=round(cpu / 100 * rng.randint(80, 120) / 100, 2),
            services=services,
            alerts=dedupe_alerts(alerts),
            last_updated=self.clock,
        )
        state.status = classify_state(state)
        return state

    def grow(self, count: int) -> list[ServerState]:
        """Add count servers to the fleet and notify subscribers."""
        created = self._create_batch(count)
        if created:
            self.store.notify()
        return created

    def _create_batch(self, count: int) -> list[ServerState]:
        created = []
        for _ in range(max(0, count)):
            server = self.create_server(len(self.servers))
            self.servers.append(server)
            self.store.record(server)
            created.append(server)
        return created

    async def populate(self, batch_delay_seconds: float = 0.0) -> int:
        """
        Create the configured fleet: a quick initial batch, then the rest in
        smaller batches, yielding to the event loop in between.
        """
        if self._is_populating:
            self.logger.warning("population_already_in_progress")
            return len(self.servers)

        self._is_populating = True
        target = self.config.fleet_size
        try:
            initial = min(self.config.initial_batch_size, target - len(self.servers))
            self._create_batch(initial)
            self.store.notify()
            self.logger.info("initial_batch_created", servers=len(self.servers), target=target)

            while len(self.servers) < target:
                await asyncio.sleep(batch_delay_seconds)
                batch = min(self.config.growth_batch_size, target - len(self.servers))
                self._create_batch(batch)
                self.store.notify()
                self.logger.debug("server_batch_created", servers=len(self.servers), target=target)
        finally:
            self._is_populating = False

        self.logger.info("fleet_populated", servers=len(self.servers))
        return len(self.servers)

    @property
    def is_populating(self) -> bool:
        return self._is_populating

    # Tick evolution

    def tick(self) -> TickSummary | None:
        """Advance every server one step. Returns None when the tick is skipped."""
        if self._is_populating:
            self.logger.info("tick_skipped", reason="population_in_progress")
            return None
        if not self.servers:
            self.logger.warning("tick_skipped", reason="empty_fleet")
            return None

        start_time = time.perf_counter()
        self.clock += self.step
        load = load_multiplier_at(self.clock)

        fleet_size = len(self.servers)
        target_critical = int(fleet_size * self.config.target_critical_ratio)
        target_warning = int(fleet_size * self.config.target_warning_ratio)

        # Running counts: pre-tick status for servers not yet visited,
        # decided status for servers already visited.
        counts = {status: 0 for status in HealthStatus}
        for server in self.servers:
            counts[server.status] += 1

        transitions = 0
        for server in self.servers:
            previous = server.status
            target = self._decide_transition(previous, counts, target_critical, target_warning)
            if target != previous:
                counts[previous] -= 1
                counts[target] += 1
                transitions += 1

            self._evolve(server, target, changed=target != previous, load=load)
            self.store.record(server)

        self.tick_count += 1
        self.store.notify()

        summary = TickSummary(
            tick=self.tick_count,
            simulated_time=self.clock,
            load_multiplier=load,
            status_counts=self.status_counts(),
            transitions=transitions,
            duration_seconds=time.perf_counter() - start_time,
        )
        self.logger.debug(
            "tick_completed",
            tick=summary.tick,
            simulated_time=summary.simulated_time.isoformat(),
            critical=summary.critical_count,
            warning=summary.warning_count,
            transitions=transitions,
            duration_seconds=round(summary.duration_seconds, 4),
        )
        return summary

    def _decide_transition(
        self,
        current: HealthStatus,
        counts: dict[HealthStatus, int],
        target_critical: int,
        target_warning: int,
    ) -> HealthStatus:
        """Hysteresis for unhealthy servers, ratio control for healthy ones."""
        rng = self.rng

        if current == HealthStatus.CRITICAL:
            if rng.random() < CRITICAL_EXIT_PROBABILITY:
                return HealthStatus.NORMAL if rng.random() < 0.5 else HealthStatus.WARNING
            return current

        if current == HealthStatus.WARNING:
            if rng.random() < WARNING_CHANGE_PROBABILITY:
                if rng.random() < WARNING_RECOVERY_SHARE:
                    return HealthStatus.NORMAL
                return HealthStatus.CRITICAL
            return current

        # Promotions compete independently; there is no shared budget.
        # A failed critical roll still gets its chance at Warning.
        if (
            counts[HealthStatus.CRITICAL] < target_critical
            and rng.random() < NORMAL_TO_CRITICAL_PROBABILITY
        ):
            return HealthStatus.CRITICAL
        if (
            counts[HealthStatus.WARNING] < target_warning
            and rng.random() < NORMAL_TO_WARNING_PROBABILITY
        ):
            return HealthStatus.WARNING
        return current

    def _evolve(
        self, server: ServerState, target: HealthStatus, changed: bool, load: float
    ) -> None:
        self._drift_metrics(server, load)
        self._force_health(server, target, changed)
        server.status = classify_state(server)

        self._update_network(server, load)
        self._update_services(server)
        self._update_alerts(server)

        server.zombie_count = (
            self.rng.randint(1, 6) if self.rng.random() < ZOMBIE_PROBABILITY else 0
        )
        server.process_count = max(10, server.process_count + self.rng.randint(-5, 5))
        server.load_avg_1m = round(server.cpu_usage / 100 * self.rng.randint(80, 120) / 100, 2)
        server.last_updated = self.clock

    def _drift_metrics(self, server: ServerState, load: float) -> None:
        profile = find_profile(server.role, self.profiles)
        baseline = self._baselines.get(server.hostname)
        influence = profile.cpu.base * (load - 0.5) * TIME_INFLUENCE_FACTOR

        for metric in METRICS:
            current = getattr(server, metric)
            low, high = METRIC_NOISE[metric]
            delta = self.rng.randint(low, high) + influence * TIME_INFLUENCE_SHARE[metric]
            if metric == "cpu_usage":
                delta = max(min(delta, CPU_DELTA_LIMIT), -CPU_DELTA_LIMIT)
            if baseline:
                delta += (baseline[metric] - current) * MEAN_REVERSION
            setattr(server, metric, clamp_metric(current + delta))

    def _force_health(self, server: ServerState, target: HealthStatus, changed: bool) -> None:
        """
        Push metrics so that classify() yields target.

        A transition overrides one randomly chosen metric; holding a state
        keeps the currently worst metric past the threshold.
        """
        rng = self.rng
        values = {metric: clamp_metric(getattr(server, metric)) for metric in METRICS}
        worst = max(values, key=lambda m: values[m])
        chosen = rng.choice(METRICS) if changed else worst

        if target == HealthStatus.CRITICAL:
            if values[worst] < CRITICAL_THRESHOLD:
                values[chosen] = max(values[chosen], CRITICAL_THRESHOLD + rng.uniform(0, 8))

        elif target == HealthStatus.WARNING:
            for metric, value in values.items():
                if value >= CRITICAL_THRESHOLD:
                    values[metric] = min(value - rng.randint(10, 30), CRITICAL_THRESHOLD - 0.1)
            if max(values.values()) < WARNING_THRESHOLD:
                values[chosen] = WARNING_THRESHOLD + rng.uniform(0, 19.9)

        else:
            for metric, value in values.items():
                if value >= WARNING_THRESHOLD:
                    values[metric] = min(
                        value - rng.randint(10, 30), WARNING_THRESHOLD - rng.uniform(0.5, 5.0)
                    )

        for metric, value in values.items():
            setattr(server, metric, clamp_metric(value))

    def _update_network(self, server: ServerState, load: float) -> None:
        rng = self.rng
        profile = find_profile(server.role, self.profiles)
        net = server.network

        rx_delta = rng.randint(-10, 20) * MEBIBYTE * load * profile.traffic_multiplier
        tx_delta = rng.randint(-10, 20) * MEBIBYTE * load * profile.traffic_multiplier
        net.rx_bytes = int(max(MEBIBYTE, net.rx_bytes + rx_delta))
        net.tx_bytes = int(max(MEBIBYTE, net.tx_bytes + tx_delta))

        if server.alerts and rng.random() < NETWORK_ERROR_PROBABILITY:
            net.rx_errors += rng.randint(0, 10)
            net.tx_errors += rng.randint(0, 5)
        else:
            net.rx_errors = max(0, net.rx_errors - rng.randint(0, 5))
            net.tx_errors = max(0, net.tx_errors - rng.randint(0, 3))

    def _update_services(self, server: ServerState) -> None:
        rng = self.rng
        if rng.random() >= SERVICE_REFRESH_PROBABILITY:
            return

        for name, status in server.services.items():
            if status == ServiceStatus.STOPPED:
                if rng.random() < SERVICE_RESTART_PROBABILITY:
                    server.services[name] = ServiceStatus.RUNNING
            elif rng.random() < SERVICE_STOP_PROBABILITY:
                server.services[name] = ServiceStatus.STOPPED

    def _update_alerts(self, server: ServerState) -> None:
        rng = self.rng
        if rng.random() >= ALERT_REFRESH_PROBABILITY:
            return

        alerts = [a for a in server.alerts if rng.random() >= ALERT_RESOLUTION_PROBABILITY]
        if rng.random() < self.config.new_alert_probability:
            for _ in range(rng.randint(1, 2)):
                alerts.append(
                    self.synthesizer.synthesize(
                        server.role, self.synthesizer.random_severity(), timestamp=self.clock
                    )
                )
        server.alerts = dedupe_alerts(alerts)

    # Observation and scheduling

    def status_counts(self) -> dict[HealthStatus, int]:
        counts = {status: 0 for status in HealthStatus}
        for server in self.servers:
            counts[server.status] += 1
        return counts

    def snapshot(self) -> list[ServerState]:
        return [server.snapshot() for server in self.servers]

    @asynccontextmanager
    async def simulation_session(self) -> AsyncIterator["FleetSimulator"]:
        """Populate the fleet on entry and stop ticking on exit."""
        self.logger.info("simulation_session_started")
        if len(self.servers) < self.config.fleet_size:
            await self.populate()
        self._is_running = True
        try:
            yield self
        finally:
            self._is_running = False
            self.logger.info("simulation_session_ended", ticks=self.tick_count)

    async def run_continuously(self) -> AsyncIterator[TickSummary]:
        """
        Tick every tick_interval_seconds and yield each summary.

        Runs until stop() is called or the consumer stops iterating.
        """
        interval = self.config.tick_interval_seconds
        self.logger.info("simulation_started", interval_seconds=interval)
        self._is_running = True

        try:
            while self._is_running:
                tick_start = time.perf_counter()

                summary = self.tick()
                if summary:
                    yield summary

                elapsed = time.perf_counter() - tick_start
                sleep_time = max(0, interval - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)
                else:
                    self.logger.warning(
                        "tick_slower_than_interval",
                        elapsed_seconds=round(elapsed, 3),
                        interval_seconds=interval,
                    )
        finally:
            self._is_running = False

    def stop(self) -> None:
        self._is_running = False
