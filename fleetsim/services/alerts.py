"""
Alert synthesis from severity-keyed message templates.

Templates reference the originating role; placeholders such as {cpu} or
{disk} are filled with the computed metric value before an alert is
attached to a snapshot.
"""

import random
import string
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

import structlog

from fleetsim.domain.models import Alert, AlertSeverity, AlertTemplate

logger = structlog.get_logger(__name__)

# (type, message) pairs; {role} / {ROLE} are filled with the server role
ALERT_TEMPLATE_POOLS: dict[AlertSeverity, tuple[tuple[str, str], ...]] = {
    AlertSeverity.CRITICAL: (
        (
            "Service",
            "CRITICAL: Core service {ROLE}_SERVICE_01 failed to start. System integrity "
            "compromised. (check: systemctl status {role}-service01)",
        ),
        (
            "Hardware",
            "CRITICAL: Unrecoverable hardware error detected on {role}. Immediate action "
            "required. (check: dmesg | grep -i hardware)",
        ),
        (
            "Security",
            "CRITICAL: Security breach attempt detected on {role}! System locked down. "
            "(check: journalctl -p err)",
        ),
        (
            "Kernel",
            "CRITICAL: Kernel panic - not syncing: Fatal exception in interrupt on {role}. "
            "(check: dmesg | tail -50)",
        ),
    ),
    AlertSeverity.ERROR: (
        (
            "Application",
            "ERROR: {ROLE}_APP_MODULE_X crashed due to an unhandled exception. "
            "(check: journalctl -u {role}-app)",
        ),
        (
            "Database",
            "ERROR: Failed to connect to remote DB from {role}. Timeout occurred. "
            "(check: ping DB_HOST and telnet DB_HOST DB_PORT)",
        ),
        (
            "Configuration",
            "ERROR: Configuration file for {ROLE}_SERVICE_02 is corrupted. "
            "(check: cat /etc/conf.d/{role}-service02.conf)",
        ),
        (
            "Disk",
            "ERROR: High number of I/O errors on /dev/sdX on {role}. Disk may be failing. "
            "(check: smartctl -a /dev/sdX)",
        ),
    ),
    AlertSeverity.WARNING: (
        (
            "CPU",
            "WARNING: High CPU load average on {role} for the last 15 minutes. "
            "(check: top -b -n 1)",
        ),
        (
            "Memory",
            "WARNING: Memory usage on {role} is approaching critical levels (85%). "
            "(check: free -m)",
        ),
        (
            "Disk",
            "WARNING: Disk space on /var/log on {role} is running low (currently 80% full). "
            "(check: df -h /var/log)",
        ),
        (
            "Network",
            "WARNING: Unexpected spike in network latency for {role}. (check: ping -c 5 GATEWAY_IP)",
        ),
    ),
}


class _KeepMissing(dict[str, object]):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_message(message: str, values: Mapping[str, object]) -> str:
    """
    Substitute {placeholder} tokens with concrete values.

    Floats are rendered with one decimal. Unknown placeholders are left as-is
    so a template can be rendered in several passes.
    """
    formatted = {
        key: f"{value:.1f}" if isinstance(value, float) else value for key, value in values.items()
    }
    field_names = {name for _, name, _, _ in string.Formatter().parse(message) if name}
    if not field_names:
        return message
    return message.format_map(_KeepMissing(formatted))


def render_template(
    template: AlertTemplate, values: Mapping[str, object], timestamp: datetime
) -> Alert:
    return Alert(
        type=template.type,
        severity=template.severity,
        message=render_message(template.message, values),
        timestamp=timestamp,
    )


def dedupe_alerts(alerts: Iterable[Alert]) -> list[Alert]:
    """Keep only the first alert of each (type, severity, message[:15]) key."""
    seen: set[tuple[str, str, str]] = set()
    unique: list[Alert] = []
    for alert in alerts:
        if alert.dedup_key in seen:
            continue
        seen.add(alert.dedup_key)
        unique.append(alert)
    return unique


class AlertSynthesizer:
    """
    Generates human-readable alerts for simulated servers.

    Selection is uniform within the pool of the requested severity.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        pools: Mapping[AlertSeverity, tuple[tuple[str, str], ...]] | None = None,
    ) -> None:
        self.rng = rng or random.Random()
        self.pools = dict(pools or ALERT_TEMPLATE_POOLS)
        self.logger = logger.bind(component="alert_synthesizer")

    def synthesize(
        self,
        role: str,
        severity: AlertSeverity = AlertSeverity.WARNING,
        custom_message: str | None = None,
        timestamp: datetime | None = None,
    ) -> Alert:
        """Create one alert for a server of the given role."""
        timestamp = timestamp or datetime.now(UTC)

        if custom_message:
            return Alert(
                type="Custom",
                severity=severity,
                message=f"{severity.value.upper()}: {custom_message} on {role}. (check: journalctl -f)",
                timestamp=timestamp,
            )

        pool = self.pools.get(severity)
        if not pool:
            self.logger.warning("alert_pool_missing", severity=severity.value)
            return Alert(
                type="Unknown",
                severity=severity,
                message=f"{severity.value.upper()}: Unknown issue on {role}. (check: journalctl -f)",
                timestamp=timestamp,
            )

        alert_type, message = self.rng.choice(pool)
        return Alert(
            type=alert_type,
            severity=severity,
            message=render_message(message, {"role": role.lower(), "ROLE": role.upper()}),
            timestamp=timestamp,
        )

    def random_severity(self) -> AlertSeverity:
        """Pick a severity for a spontaneous alert, mostly warnings."""
        return self.rng.choices(
            [AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL],
            weights=[0.6, 0.3, 0.1],
        )[0]
