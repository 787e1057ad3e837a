"""
Domain models for the simulated server fleet.

These models represent the core simulation concepts and are framework-agnostic.
They use Pydantic for validation but could be swapped to dataclasses if needed.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Metric bounds applied after every update
METRIC_FLOOR = 5.0
METRIC_CEILING = 98.0

# 24 hours at 10-minute resolution
HISTORY_LIMIT = 144
HISTORY_RESOLUTION_MINUTES = 10


class HealthStatus(str, Enum):
    """Derived health state of a server."""

    NORMAL = "Normal"
    WARNING = "Warning"
    CRITICAL = "Critical"


class AlertSeverity(str, Enum):
    """Alert severity levels used by the alert template pools."""

    CRITICAL = "Critical"
    ERROR = "Error"
    WARNING = "Warning"


class ServiceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class MetricBaseline(BaseModel):
    """Baseline usage for one resource: base value plus/minus variation."""

    model_config = ConfigDict(frozen=True)

    base: float = Field(ge=0.0, le=100.0)
    variation: float = Field(ge=0.0, le=100.0)


class ServerProfile(BaseModel):
    """Static per-role baseline ranges and population count."""

    model_config = ConfigDict(frozen=True)  # Catalog entries never change after startup

    role: str = Field(min_length=1, description="Role tag, e.g. web, db, k8s-worker")
    count: int = Field(ge=0, description="Number of servers of this role in the fleet")
    cpu: MetricBaseline
    memory: MetricBaseline
    disk: MetricBaseline
    services: tuple[str, ...] = Field(min_length=1)
    min_services: int = Field(ge=1)
    max_services: int = Field(ge=1)
    traffic_multiplier: float = Field(
        default=1.0, gt=0.0, description="Network traffic scaling (higher for web/API roles)"
    )


class NetworkStats(BaseModel):
    rx_bytes: int = Field(default=0, ge=0)
    tx_bytes: int = Field(default=0, ge=0)
    rx_errors: int = Field(default=0, ge=0)
    tx_errors: int = Field(default=0, ge=0)


class Alert(BaseModel):
    """Human-readable alert attached to a server snapshot."""

    model_config = ConfigDict(frozen=True)

    type: str
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """Two alerts sharing this key are duplicates."""
        return (self.type, self.severity.value, self.message[:15])


class AlertTemplate(BaseModel):
    """Alert blueprint whose message may carry {placeholder} tokens."""

    model_config = ConfigDict(frozen=True)

    type: str
    severity: AlertSeverity
    message: str


class ServerState(BaseModel):
    """
    Mutable state of one simulated server.

    Only the tick engine and the scenario overlay mutate instances; consumers
    receive deep copies via snapshot().
    """

    hostname: str
    ip: str = ""
    os: str = ""
    region: str
    role: str
    cpu_usage: float = Field(ge=METRIC_FLOOR, le=METRIC_CEILING)
    memory_usage_percent: float = Field(ge=METRIC_FLOOR, le=METRIC_CEILING)
    disk_usage_percent: float = Field(ge=METRIC_FLOOR, le=METRIC_CEILING)
    network: NetworkStats = Field(default_factory=NetworkStats)
    zombie_count: int = Field(default=0, ge=0)
    process_count: int = Field(default=0, ge=0)
    load_avg_1m: float = Field(default=0.0, ge=0.0)
    services: dict[str, ServiceStatus] = Field(default_factory=dict)
    alerts: list[Alert] = Field(default_factory=list)
    status: HealthStatus = HealthStatus.NORMAL
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def snapshot(self) -> "ServerState":
        """Return a fully independent copy safe to hand to readers."""
        return self.model_copy(deep=True)


class InventoryServer(BaseModel):
    """Static identity of one server in a pre-baked dataset."""

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    ip: str
    role: str
    location: str
    environment: str


class ScenarioWindow(BaseModel):
    """
    Forces one server into a health state during a relative time interval.

    The window is active while the time before dataset end lies in
    [end_hours_ago, start_hours_ago).
    """

    model_config = ConfigDict(frozen=True)

    hostname: str
    start_hours_ago: float = Field(gt=0.0)
    end_hours_ago: float = Field(ge=0.0)
    cpu_floor: float | None = None
    memory_floor: float | None = None
    disk_floor: float | None = None
    network_out_floor: float | None = None
    network_in_floor: float | None = None
    alerts: tuple[AlertTemplate, ...] = ()

    def is_active(self, hours_before_end: float) -> bool:
        return self.end_hours_ago <= hours_before_end < self.start_hours_ago


class FailedCondition(BaseModel):
    """One failure predicate that matched a server."""

    id: str
    name: str
    value: str


class IncidentReport(BaseModel):
    """Structured incident report wrapping the generated narrative."""

    hostname: str
    detected_at: datetime
    problems: list[FailedCondition]
    narrative: str
    narrative_available: bool = True

    def render(self) -> str:
        """Render the report as plain text for consoles and chat panes."""
        lines = [
            f"Incident on {self.hostname}",
            f"Detected at: {self.detected_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            "Problem summary:",
        ]
        lines.extend(f"  - {p.name}: {p.value}" for p in self.problems)
        lines.append("")
        lines.append("Analysis and recommendations:")
        lines.append(self.narrative)
        return "\n".join(lines)


class Incident(BaseModel):
    """A detected incident, deduplicated by id within a time window."""

    id: str
    hostname: str
    detected_at: datetime
    conditions: list[FailedCondition]
    report: IncidentReport

    @property
    def condition_names(self) -> list[str]:
        return [c.name for c in self.conditions]


class DatasetStats(BaseModel):
    """Metric block of one pre-baked dataset record (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    cpu_usage: float = Field(alias="cpuUsage")
    memory_usage: float = Field(alias="memoryUsage")
    disk_usage: float = Field(alias="diskUsage")
    network_traffic_in: float = Field(alias="networkTrafficIn")
    network_traffic_out: float = Field(alias="networkTrafficOut")
    process_count: int = Field(alias="processCount")


class DatasetRecord(BaseModel):
    """One server at one timestamp in a pre-baked historical dataset."""

    hostname: str
    ip: str
    role: str
    location: str
    timestamp: datetime
    stats: DatasetStats
    status: HealthStatus
    alerts: list[Alert] = Field(default_factory=list)
