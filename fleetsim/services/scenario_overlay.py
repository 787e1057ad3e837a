"""
Deterministic scenario overlay for pre-baked 24h datasets.

Instead of evolving a fleet tick by tick, the overlay walks a fixed timeline
and draws every server independently at every timestamp. ScenarioWindows then
force chosen servers past health thresholds during chosen intervals, so a demo
dataset always contains the same incident story regardless of randomness.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Iterable, Sequence
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import TypeAdapter

from fleetsim.config import OverlayConfig
from fleetsim.domain.health import clamp_metric, classify
from fleetsim.domain.models import (
    HISTORY_LIMIT,
    HISTORY_RESOLUTION_MINUTES,
    AlertSeverity,
    AlertTemplate,
    DatasetRecord,
    DatasetStats,
    InventoryServer,
    NetworkStats,
    ScenarioWindow,
    ServerProfile,
    ServerState,
)
from fleetsim.domain.profiles import STANDARD_PROFILES, draw_baseline, find_profile
from fleetsim.services.alerts import dedupe_alerts, render_template
from fleetsim.services.state_store import ServerStateStore

logger = structlog.get_logger(__name__)

ENVIRONMENTS = ("prod", "stg", "dev")
LOCATIONS = ("Seoul-IDC", "Busan-IDC", "US-West-Oregon", "EU-Frankfurt", "APAC-Singapore")
HOSTNAME_DOMAIN = "opm-cloud.com"

CPU_MEMORY_JITTER = 2.5
DISK_JITTER = 1.5

# Roles that run batch jobs get more processes and the batch failure scenario
BATCH_ROLES = frozenset({"app", "batch"})
MAX_AFFECTED_SERVERS = 22
MEBIBYTE = 1024 * 1024


def _template(alert_type: str, severity: AlertSeverity, message: str) -> AlertTemplate:
    return AlertTemplate(type=alert_type, severity=severity, message=message)


CPU_CRITICAL = _template(
    "CPU", AlertSeverity.CRITICAL, "CPU usage at {cpu}% exceeds the critical threshold. Check now."
)
CPU_WARNING = _template("CPU", AlertSeverity.WARNING, "CPU load sustained at {cpu}% on {hostname}.")
MEMORY_CRITICAL = _template(
    "Memory", AlertSeverity.CRITICAL, "Available memory below 100MB ({memory}% used). OOM risk."
)
MEMORY_WARNING = _template(
    "Memory", AlertSeverity.WARNING, "Memory usage holding at {memory}%, possible leak."
)
DISK_CRITICAL = _template(
    "Disk", AlertSeverity.CRITICAL, "Disk /data partition reached {disk}% usage."
)
DISK_WARNING = _template(
    "Disk", AlertSeverity.WARNING, "Disk I/O wait spiking (avg 600ms) with {disk}% used."
)
NETWORK_ERROR = _template(
    "Network", AlertSeverity.ERROR, "Outbound traffic at {network_out}Mbps, abnormal pattern."
)
PROCESS_CRITICAL = _template(
    "Process", AlertSeverity.CRITICAL, "Payment process (PaymentGateway) is not responding."
)
SECURITY_CRITICAL = _template(
    "Security", AlertSeverity.CRITICAL, "Admin login attempts from multiple countries detected."
)
BATCH_ERROR = _template(
    "Batch",
    AlertSeverity.ERROR,
    "Daily settlement batch (BATCH_DAILY_SETTLE_01) failed. Cause: DB timeout.",
)
DATABASE_CRITICAL = _template(
    "Database",
    AlertSeverity.CRITICAL,
    "Database on {hostname} refusing connections. Pool exhausted or instance down.",
)
APPLICATION_ERROR = _template(
    "Application",
    AlertSeverity.ERROR,
    "Authentication service (AuthService) failing with 503 Service Unavailable.",
)

_dataset_adapter = TypeAdapter(list[DatasetRecord])


def build_inventory(
    count: int, profiles: Sequence[ServerProfile] = STANDARD_PROFILES
) -> list[InventoryServer]:
    """
    Build the dataset fleet: roles round-robin over the catalog, environments
    and locations cycling independently.
    """
    if not profiles:
        raise ValueError("Profile catalog is empty")

    roles = [p.role for p in profiles]
    inventory = []
    for i in range(count):
        env = ENVIRONMENTS[i % len(ENVIRONMENTS)]
        role = roles[i % len(roles)]
        instance = i // len(roles) + 1
        inventory.append(
            InventoryServer(
                hostname=f"{env}-{role}-{instance:02d}.{HOSTNAME_DOMAIN}",
                ip=f"10.{i % 8}.{i // 8}.{(i % 50) + 10}",
                role=role,
                location=LOCATIONS[i % len(LOCATIONS)],
                environment=env,
            )
        )
    return inventory


def default_scenario_windows(
    inventory: Sequence[InventoryServer], rng: random.Random
) -> list[ScenarioWindow]:
    """
    The demo incident story, most recent first:

    - last hour: critical CPU and memory on servers 0-4
    - 1-3h ago: disk pressure and abnormal outbound traffic on servers 5-9
    - 3-6h ago: CPU/memory warnings plus an app or security incident on 10-14
    - 6-12h ago: incidents concentrated on database and batch servers
    - 12-24h ago: light CPU warnings on the rest, up to 22 affected servers
    """
    windows: list[ScenarioWindow] = []
    affected: set[str] = set()

    def add(server: InventoryServer, **fields: object) -> None:
        affected.add(server.hostname)
        windows.append(ScenarioWindow(hostname=server.hostname, **fields))  # type: ignore[arg-type]

    for server in inventory[0:5]:
        add(
            server,
            start_hours_ago=1,
            end_hours_ago=0,
            cpu_floor=90 + rng.random() * 9,
            memory_floor=85 + rng.random() * 10,
            alerts=(CPU_CRITICAL, MEMORY_CRITICAL if rng.random() < 0.5 else PROCESS_CRITICAL),
        )

    for server in inventory[5:10]:
        add(
            server,
            start_hours_ago=3,
            end_hours_ago=1,
            disk_floor=85 + rng.random() * 10,
            network_out_floor=300 + rng.random() * 100,
            alerts=(DISK_WARNING, NETWORK_ERROR),
        )

    for server in inventory[10:15]:
        add(
            server,
            start_hours_ago=6,
            end_hours_ago=3,
            cpu_floor=70 + rng.random() * 15,
            memory_floor=75 + rng.random() * 10,
            alerts=(
                CPU_WARNING,
                MEMORY_WARNING,
                APPLICATION_ERROR if server.role == "api" else SECURITY_CRITICAL,
            ),
        )

    # Prefer database and batch servers for the role-specific incidents
    remaining = [s for s in inventory[15:] if s.hostname not in affected]
    remaining.sort(key=lambda s: 0 if s.role == "db" else 1 if s.role in BATCH_ROLES else 2)
    for server in remaining[:5]:
        if server.role == "db":
            add(
                server,
                start_hours_ago=12,
                end_hours_ago=6,
                disk_floor=92,
                alerts=(DISK_CRITICAL, DATABASE_CRITICAL),
            )
        elif server.role in BATCH_ROLES:
            add(server, start_hours_ago=12, end_hours_ago=6, alerts=(BATCH_ERROR,))
        else:
            add(
                server,
                start_hours_ago=12,
                end_hours_ago=6,
                memory_floor=85,
                alerts=(MEMORY_WARNING,),
            )

    for server in inventory:
        if len(affected) >= MAX_AFFECTED_SERVERS:
            break
        if server.hostname in affected:
            continue
        add(
            server,
            start_hours_ago=18 + rng.random() * 6,
            end_hours_ago=12 + rng.random() * 6,
            cpu_floor=60 + rng.random() * 20,
            alerts=(CPU_WARNING,),
        )

    return windows


def incident_lifecycle(
    hostname: str,
    onset_hours_ago: float,
    escalation_hours_ago: float,
    resolution_hours_ago: float,
    end_hours_ago: float = 0.0,
) -> list[ScenarioWindow]:
    """
    Three disjoint windows telling one incident: a CPU warning, escalation to
    critical CPU with memory pressure, then a warning while it resolves.
    """
    if not onset_hours_ago > escalation_hours_ago > resolution_hours_ago > end_hours_ago >= 0:
        raise ValueError(
            "incident lifecycle requires onset > escalation > resolution > end >= 0 hours ago"
        )

    return [
        ScenarioWindow(
            hostname=hostname,
            start_hours_ago=onset_hours_ago,
            end_hours_ago=escalation_hours_ago,
            cpu_floor=75,
            alerts=(CPU_WARNING,),
        ),
        ScenarioWindow(
            hostname=hostname,
            start_hours_ago=escalation_hours_ago,
            end_hours_ago=resolution_hours_ago,
            cpu_floor=93,
            memory_floor=88,
            alerts=(CPU_CRITICAL, MEMORY_WARNING),
        ),
        ScenarioWindow(
            hostname=hostname,
            start_hours_ago=resolution_hours_ago,
            end_hours_ago=end_hours_ago,
            cpu_floor=74,
            alerts=(CPU_WARNING,),
        ),
    ]


def to_json(dataset: Sequence[DatasetRecord]) -> str:
    """Serialize a dataset as a JSON array with camelCase stats keys."""
    return _dataset_adapter.dump_json(list(dataset), by_alias=True).decode()


def from_json(payload: str | bytes) -> list[DatasetRecord]:
    return _dataset_adapter.validate_json(payload)


class ScenarioOverlay:
    """
    Generates pre-baked datasets and can feed them into a ServerStateStore.

    Windows are fixed at construction; only baseline noise differs between
    generate() calls.
    """

    def __init__(
        self,
        config: OverlayConfig | None = None,
        profiles: Sequence[ServerProfile] = STANDARD_PROFILES,
        rng: random.Random | None = None,
        inventory: Sequence[InventoryServer] | None = None,
        windows: Iterable[ScenarioWindow] | None = None,
    ) -> None:
        self.config = config or OverlayConfig()
        self.profiles = tuple(profiles)
        self.rng = rng or random.Random(self.config.seed)
        self.inventory = list(inventory) if inventory is not None else build_inventory(
            self.config.server_count, self.profiles
        )
        self.windows = (
            list(windows)
            if windows is not None
            else default_scenario_windows(self.inventory, self.rng)
        )
        self.step = timedelta(minutes=HISTORY_RESOLUTION_MINUTES)
        self.logger = logger.bind(component="scenario_overlay")
        self._is_running = False

        known = {s.hostname for s in self.inventory}
        for window in self.windows:
            if window.hostname not in known:
                self.logger.warning("scenario_window_unknown_host", hostname=window.hostname)

    def timeline(self, end: datetime) -> list[datetime]:
        """144 timestamps, 10 minutes apart, the last one equal to end."""
        return [end - self.step * offset for offset in range(HISTORY_LIMIT - 1, -1, -1)]

    def windows_for(self, hostname: str) -> list[ScenarioWindow]:
        return [w for w in self.windows if w.hostname == hostname]

    def generate(self, end: datetime | None = None) -> list[DatasetRecord]:
        """Produce one record per server per timestamp, ordered by timestamp."""
        end = end or datetime.now(UTC).replace(second=0, microsecond=0)
        windows_by_host = {s.hostname: self.windows_for(s.hostname) for s in self.inventory}

        dataset = []
        for timestamp in self.timeline(end):
            hours_before_end = (end - timestamp).total_seconds() / 3600
            for server in self.inventory:
                dataset.append(
                    self._record(server, timestamp, hours_before_end, windows_by_host[server.hostname])
                )

        self.logger.info(
            "dataset_generated",
            records=len(dataset),
            servers=len(self.inventory),
            windows=len(self.windows),
            end=end.isoformat(),
        )
        return dataset

    def _record(
        self,
        server: InventoryServer,
        timestamp: datetime,
        hours_before_end: float,
        windows: Sequence[ScenarioWindow],
    ) -> DatasetRecord:
        rng = self.rng
        profile = find_profile(server.role, self.profiles)

        cpu = draw_baseline(profile.cpu, rng)
        memory = draw_baseline(profile.memory, rng)
        disk = draw_baseline(profile.disk, rng)
        network_in = float(rng.randint(5, 55))
        network_out = float(rng.randint(10, 80))
        process_count = 30 + rng.randint(0, 29) + (15 if server.role in BATCH_ROLES else 0)

        active = [w for w in windows if w.is_active(hours_before_end)]
        for window in active:
            if window.cpu_floor is not None:
                cpu = max(cpu, window.cpu_floor + rng.uniform(-CPU_MEMORY_JITTER, CPU_MEMORY_JITTER))
            if window.memory_floor is not None:
                memory = max(
                    memory, window.memory_floor + rng.uniform(-CPU_MEMORY_JITTER, CPU_MEMORY_JITTER)
                )
            if window.disk_floor is not None:
                disk = max(disk, window.disk_floor + rng.uniform(-DISK_JITTER, DISK_JITTER))
            if window.network_out_floor is not None:
                network_out = max(network_out, window.network_out_floor)
            if window.network_in_floor is not None:
                network_in = max(network_in, window.network_in_floor)

        cpu, memory, disk = clamp_metric(cpu), clamp_metric(memory), clamp_metric(disk)

        values = {
            "cpu": cpu,
            "memory": memory,
            "disk": disk,
            "network_in": network_in,
            "network_out": network_out,
            "hostname": server.hostname,
            "role": server.role,
        }
        alerts = dedupe_alerts(
            render_template(template, values, timestamp)
            for window in active
            for template in window.alerts
        )

        return DatasetRecord(
            hostname=server.hostname,
            ip=server.ip,
            role=server.role,
            location=server.location,
            timestamp=timestamp,
            stats=DatasetStats(
                cpu_usage=cpu,
                memory_usage=memory,
                disk_usage=disk,
                network_traffic_in=network_in,
                network_traffic_out=network_out,
                process_count=process_count,
            ),
            status=classify(cpu, memory, disk),
            alerts=alerts,
        )

    def to_server_state(self, record: DatasetRecord) -> ServerState:
        """Convert a dataset record to the live ServerState shape."""
        return ServerState(
            hostname=record.hostname,
            ip=record.ip,
            region=record.location,
            role=record.role,
            cpu_usage=record.stats.cpu_usage,
            memory_usage_percent=record.stats.memory_usage,
            disk_usage_percent=record.stats.disk_usage,
            network=NetworkStats(
                rx_bytes=int(record.stats.network_traffic_in * MEBIBYTE),
                tx_bytes=int(record.stats.network_traffic_out * MEBIBYTE),
            ),
            process_count=record.stats.process_count,
            alerts=list(record.alerts),
            status=record.status,
            last_updated=record.timestamp,
        )

    def load_into(self, store: ServerStateStore, dataset: Sequence[DatasetRecord]) -> int:
        """
        Replace the store's contents with the dataset, oldest timestamp first,
        so each server's history ends with its latest record.
        """
        store.clear()
        for record in sorted(dataset, key=lambda r: r.timestamp):
            store.record(self.to_server_state(record))
        store.notify()
        self.logger.info("dataset_loaded", servers=len(store), records=len(dataset))
        return len(store)

    async def refresh_continuously(
        self, store: ServerStateStore | None = None
    ) -> AsyncIterator[list[DatasetRecord]]:
        """
        Regenerate the dataset every demo_refresh_interval_seconds, loading
        each one into store when given.
        """
        interval = self.config.demo_refresh_interval_seconds
        self.logger.info("dataset_refresh_started", interval_seconds=interval)
        self._is_running = True

        try:
            while self._is_running:
                dataset = self.generate()
                if store is not None:
                    self.load_into(store, dataset)
                yield dataset
                await asyncio.sleep(interval)
        finally:
            self._is_running = False

    def stop(self) -> None:
        self._is_running = False
