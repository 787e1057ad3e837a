"""
Console demo of the complete simulation pipeline.

This script walks through:
1. Configuration loading and validation
2. Fleet population
3. One simulated day of ticks with incident detection
4. The pre-baked 24h scenario dataset

Run with: uv run python run_simulation.py
"""

import asyncio
from datetime import UTC, datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fleetsim.config import AppConfig, get_config, print_config_summary
from fleetsim.domain.models import HealthStatus, Incident
from fleetsim.observability import configure_logging
from fleetsim.services.fleet_monitor import FleetMonitorService
from fleetsim.services.scenario_overlay import to_json

console = Console()

STATUS_STYLES = {
    HealthStatus.NORMAL: "green",
    HealthStatus.WARNING: "yellow",
    HealthStatus.CRITICAL: "red",
}

# One simulated day at the default 10-minute step
DEMO_TICKS = 144


def console_incident_handler(incident: Incident) -> None:
    """Development incident handler that prints to the console."""
    console.print(
        f"🚨 {incident.hostname}: {', '.join(incident.condition_names)}",
        style="red" if "high_cpu" in incident.id else "yellow",
    )


def show_fleet(service: FleetMonitorService, limit: int = 15) -> None:
    table = Table(title=f"Fleet snapshot (first {limit} servers)")
    table.add_column("Hostname", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("CPU", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Disk", justify="right")
    table.add_column("Alerts", justify="right")
    table.add_column("Status")

    for server in service.store.current()[:limit]:
        table.add_row(
            server.hostname,
            server.role,
            f"{server.cpu_usage:.1f}%",
            f"{server.memory_usage_percent:.1f}%",
            f"{server.disk_usage_percent:.1f}%",
            str(len(server.alerts)),
            f"[{STATUS_STYLES[server.status]}]{server.status.value}[/]",
        )
    console.print(table)


async def demo_population(service: FleetMonitorService) -> None:
    console.print(Panel("🏗️  Populating Fleet", style="blue"))
    count = await service.start()
    counts = service.simulator.status_counts()
    console.print(
        f"✅ Created {count} servers "
        f"({counts[HealthStatus.CRITICAL]} critical, {counts[HealthStatus.WARNING]} warning)",
        style="green",
    )
    show_fleet(service)


async def demo_simulated_day(service: FleetMonitorService) -> None:
    console.print(Panel("⏱️  Simulating One Day", style="blue"))

    history = Table(title="Fleet health every 2 simulated hours")
    history.add_column("Simulated time", style="cyan")
    history.add_column("Load", justify="right")
    history.add_column("Normal", style="green", justify="right")
    history.add_column("Warning", style="yellow", justify="right")
    history.add_column("Critical", style="red", justify="right")
    history.add_column("New incidents", justify="right")

    total_incidents = 0
    for _ in range(DEMO_TICKS):
        summary = await service.run_cycle()
        total_incidents += len(summary.new_incidents)
        tick = summary.tick
        if tick and tick.tick % 12 == 0:
            history.add_row(
                tick.simulated_time.strftime("%Y-%m-%d %H:%M"),
                f"{tick.load_multiplier:.2f}",
                str(tick.status_counts[HealthStatus.NORMAL]),
                str(tick.status_counts[HealthStatus.WARNING]),
                str(tick.status_counts[HealthStatus.CRITICAL]),
                str(len(summary.new_incidents)),
            )

    console.print(history)
    console.print(f"Incidents recorded during the day: {total_incidents}", style="bold")

    latest = service.incident_agent.latest_incidents()
    if latest:
        console.print(Panel(latest[0].report.render(), title="Most recent incident report"))


async def demo_scenario_dataset(service: FleetMonitorService) -> None:
    console.print(Panel("📼 Pre-baked Scenario Dataset", style="blue"))

    end = datetime.now(UTC).replace(second=0, microsecond=0)
    dataset = service.load_demo_dataset(end)
    latest = [r for r in dataset if r.timestamp == end]

    table = Table(title="Dataset end snapshot (servers with alerts)")
    table.add_column("Hostname", style="cyan")
    table.add_column("Location", style="magenta")
    table.add_column("Status")
    table.add_column("Alerts")

    for record in latest:
        if record.alerts:
            table.add_row(
                record.hostname,
                record.location,
                f"[{STATUS_STYLES[record.status]}]{record.status.value}[/]",
                "; ".join(a.type for a in record.alerts),
            )
    console.print(table)
    console.print(
        f"{len(dataset)} records, {len(to_json(dataset)) // 1024} KiB as JSON", style="green"
    )

    incidents = await service.check_demo_dataset(now=end)
    console.print(f"Incidents detected in the dataset's final snapshot: {len(incidents)}")


async def run_demo(config: AppConfig) -> None:
    console.print(Panel("🖥️  Fleet Simulation Demo", style="bold blue"))
    print_config_summary()

    service = FleetMonitorService(config)
    service.add_incident_handler(console_incident_handler)

    demos = [
        ("Population", demo_population),
        ("Simulated Day", demo_simulated_day),
        ("Scenario Dataset", demo_scenario_dataset),
    ]
    for name, demo in demos:
        console.print(f"\n{'=' * 60}")
        try:
            await demo(service)
        except Exception as e:
            console.print(f"❌ {name} demo failed: {e}", style="red")
            raise


if __name__ == "__main__":
    app_config = get_config()
    configure_logging(app_config.logging)
    try:
        asyncio.run(run_demo(app_config))
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
