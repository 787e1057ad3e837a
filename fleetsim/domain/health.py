"""
Health classification shared by every producer of server state.

The tick engine and the scenario overlay both call classify(); thresholds
must not be applied anywhere else.
"""

from fleetsim.domain.models import METRIC_CEILING, METRIC_FLOOR, HealthStatus, ServerState

CRITICAL_THRESHOLD = 90.0
WARNING_THRESHOLD = 70.0


def classify(cpu: float, memory: float, disk: float) -> HealthStatus:
    """Worst-of classification over CPU, memory and disk usage percentages."""
    if cpu >= CRITICAL_THRESHOLD or memory >= CRITICAL_THRESHOLD or disk >= CRITICAL_THRESHOLD:
        return HealthStatus.CRITICAL
    if cpu >= WARNING_THRESHOLD or memory >= WARNING_THRESHOLD or disk >= WARNING_THRESHOLD:
        return HealthStatus.WARNING
    return HealthStatus.NORMAL


def classify_state(state: ServerState) -> HealthStatus:
    return classify(state.cpu_usage, state.memory_usage_percent, state.disk_usage_percent)


def clamp_metric(value: float) -> float:
    """Clamp a usage percentage to the simulated range and round to 2 decimals."""
    return round(min(max(value, METRIC_FLOOR), METRIC_CEILING), 2)
