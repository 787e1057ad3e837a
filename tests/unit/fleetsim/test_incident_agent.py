"""
Tests for the incident detection agent.

Covers:
- Predicate evaluation order and value formatting
- Deduplication window and 24h pruning
- Narrative fallback on failure, timeout, missing provider and open circuit
- Bounded incident history, newest pass first
- Incident handlers

Narratives come from fake providers; no model is ever called.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from structlog.testing import capture_logs

from fleetsim.config import DetectionConfig
from fleetsim.domain.models import Incident, NetworkStats, ServerState, ServiceStatus
from fleetsim.services.incident_agent import (
    NARRATIVE_FALLBACK_MESSAGE,
    CircuitBreakerState,
    IncidentDetectionAgent,
)

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)


class FakeProvider:
    def __init__(self, narrative: str = "Disk filled by runaway logs. Rotate /var/log.") -> None:
        self.narrative = narrative
        self.prompts: list[str] = []

    async def generate_narrative(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.narrative


class FailingProvider:
    def __init__(self) -> None:
        self.calls = 0

    async def generate_narrative(self, prompt: str) -> str:
        self.calls += 1
        raise ConnectionError("model endpoint unreachable")


class SlowProvider:
    async def generate_narrative(self, prompt: str) -> str:
        await asyncio.sleep(5)
        return "too late"


def make_server(hostname: str = "web-kr-001", **overrides: object) -> ServerState:
    fields: dict[str, object] = {
        "hostname": hostname,
        "region": "kr",
        "role": "web",
        "cpu_usage": 40.0,
        "memory_usage_percent": 50.0,
        "disk_usage_percent": 45.0,
    }
    fields.update(overrides)
    return ServerState(**fields)  # type: ignore[arg-type]


class TestEvaluate:
    def test_all_conditions_in_order(self) -> None:
        server = make_server(
            cpu_usage=95.0,
            memory_usage_percent=90.0,
            disk_usage_percent=85.0,
            network=NetworkStats(rx_errors=3, tx_errors=2),
            zombie_count=4,
            services={
                "nginx": ServiceStatus.STOPPED,
                "mysql": ServiceStatus.STOPPED,
                "varnish": ServiceStatus.STOPPED,
            },
        )

        failed = IncidentDetectionAgent().evaluate(server)

        assert [c.id for c in failed] == [
            "high_cpu",
            "high_memory",
            "high_disk",
            "network_errors",
            "zombie_processes",
            "service_stopped",
        ]
        values = {c.id: c.value for c in failed}
        assert values["high_cpu"] == "95.0%"
        assert values["network_errors"] == "5"
        assert values["zombie_processes"] == "4"
        assert values["service_stopped"] == "nginx, mysql"

    def test_thresholds_are_strict(self) -> None:
        server = make_server(cpu_usage=90.0, memory_usage_percent=85.0, disk_usage_percent=80.0)
        assert IncidentDetectionAgent().evaluate(server) == []

    def test_non_critical_service_ignored(self) -> None:
        server = make_server(services={"varnish": ServiceStatus.STOPPED})
        assert IncidentDetectionAgent().evaluate(server) == []


class TestCheckFleet:
    @pytest.mark.asyncio
    async def test_incident_id_and_report(self) -> None:
        provider = FakeProvider()
        agent = IncidentDetectionAgent(provider)
        server = make_server(cpu_usage=96.0, disk_usage_percent=88.0)

        incidents = await agent.check_fleet([server], now=T0)

        assert len(incidents) == 1
        incident = incidents[0]
        assert incident.id == "web-kr-001-high_cpu-high_disk"
        assert incident.detected_at == T0
        assert incident.condition_names == ["High CPU usage", "High disk usage"]
        assert incident.report.narrative == provider.narrative
        assert incident.report.narrative_available

        prompt = provider.prompts[0]
        assert "web-kr-001" in prompt
        assert "High CPU usage: 96.0%" in prompt
        assert "remediation" in prompt

        rendered = incident.report.render()
        assert "Incident on web-kr-001" in rendered
        assert provider.narrative in rendered

    @pytest.mark.asyncio
    async def test_healthy_servers_produce_nothing(self) -> None:
        provider = FakeProvider()
        agent = IncidentDetectionAgent(provider)

        assert await agent.check_fleet([make_server()], now=T0) == []
        assert provider.prompts == []

    @pytest.mark.asyncio
    async def test_duplicate_suppressed_within_an_hour(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())
        server = make_server(cpu_usage=96.0)

        assert len(await agent.check_fleet([server], now=T0)) == 1
        assert await agent.check_fleet([server], now=T0 + timedelta(seconds=3599)) == []
        assert len(await agent.check_fleet([server], now=T0 + timedelta(seconds=3600))) == 1
        assert len(agent.active_incidents()) == 2

    @pytest.mark.asyncio
    async def test_different_condition_set_is_a_new_incident(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())

        await agent.check_fleet([make_server(cpu_usage=96.0)], now=T0)
        incidents = await agent.check_fleet(
            [make_server(cpu_usage=96.0, zombie_count=2)], now=T0 + timedelta(minutes=10)
        )

        assert [i.id for i in incidents] == ["web-kr-001-high_cpu-zombie_processes"]

    @pytest.mark.asyncio
    async def test_empty_fleet_is_skipped(self) -> None:
        assert await IncidentDetectionAgent(FakeProvider()).check_fleet([], now=T0) == []

    @pytest.mark.asyncio
    async def test_blank_hostname_skipped_others_processed(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())
        fleet = [make_server(hostname="  ", cpu_usage=97.0), make_server(cpu_usage=97.0)]

        incidents = await agent.check_fleet(fleet, now=T0)

        assert [i.hostname for i in incidents] == ["web-kr-001"]

    @pytest.mark.asyncio
    async def test_latest_history_keeps_first_ten_of_a_pass_in_order(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())
        fleet = [make_server(f"web-kr-{i:03d}", cpu_usage=95.0) for i in range(12)]

        await agent.check_fleet(fleet, now=T0)

        latest = agent.latest_incidents()
        assert len(latest) == 10
        assert [i.hostname for i in latest] == [f"web-kr-{i:03d}" for i in range(10)]
        assert len(agent.active_incidents()) == 12

    @pytest.mark.asyncio
    async def test_latest_history_puts_newest_pass_first(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())
        first = [make_server(f"web-kr-{i:03d}", cpu_usage=95.0) for i in range(3)]
        second = [make_server(f"db-kr-{i:03d}", disk_usage_percent=88.0) for i in range(2)]

        await agent.check_fleet(first, now=T0)
        await agent.check_fleet(second, now=T0 + timedelta(minutes=10))

        assert [i.hostname for i in agent.latest_incidents()] == [
            "db-kr-000",
            "db-kr-001",
            "web-kr-000",
            "web-kr-001",
            "web-kr-002",
        ]


class TestNarrativeFallback:
    @pytest.mark.asyncio
    async def test_provider_failure_still_records_incident(self) -> None:
        agent = IncidentDetectionAgent(FailingProvider())

        incidents = await agent.check_fleet([make_server(cpu_usage=99.0)], now=T0)

        assert len(incidents) == 1
        assert incidents[0].report.narrative == NARRATIVE_FALLBACK_MESSAGE
        assert not incidents[0].report.narrative_available

    @pytest.mark.asyncio
    async def test_fallback_logs_the_failure_reason(self) -> None:
        with capture_logs() as logs:
            agent = IncidentDetectionAgent(FailingProvider())
            await agent.check_fleet([make_server(cpu_usage=99.0)], now=T0)

        fallbacks = [e for e in logs if e["event"] == "narrative_fallback_used"]
        assert len(fallbacks) == 1
        assert fallbacks[0]["hostname"] == "web-kr-001"
        assert fallbacks[0]["reason"] == "model endpoint unreachable"

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self) -> None:
        agent = IncidentDetectionAgent(
            SlowProvider(), DetectionConfig(narrative_timeout_seconds=0.01)
        )

        incidents = await agent.check_fleet([make_server(cpu_usage=99.0)], now=T0)

        assert incidents[0].report.narrative == NARRATIVE_FALLBACK_MESSAGE

    @pytest.mark.asyncio
    async def test_missing_provider_falls_back(self) -> None:
        incidents = await IncidentDetectionAgent(None).check_fleet(
            [make_server(zombie_count=1)], now=T0
        )
        assert incidents[0].report.narrative == NARRATIVE_FALLBACK_MESSAGE

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_pass(self) -> None:
        agent = IncidentDetectionAgent(FailingProvider())
        fleet = [make_server(f"db-kr-{i:03d}", cpu_usage=95.0) for i in range(3)]

        incidents = await agent.check_fleet(fleet, now=T0)

        assert len(incidents) == 3

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self) -> None:
        provider = FailingProvider()
        agent = IncidentDetectionAgent(provider, DetectionConfig(circuit_failure_threshold=2))
        fleet = [make_server(f"db-kr-{i:03d}", cpu_usage=95.0) for i in range(5)]

        incidents = await agent.check_fleet(fleet, now=T0)

        assert len(incidents) == 5
        assert provider.calls == 2
        assert agent.circuit_breaker.state == "open"


class TestPruning:
    @pytest.mark.asyncio
    async def test_incidents_older_than_a_day_are_pruned(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())
        await agent.check_fleet([make_server("old-host", cpu_usage=95.0)], now=T0)
        await agent.check_fleet(
            [make_server("new-host", cpu_usage=95.0)], now=T0 + timedelta(hours=20)
        )

        assert agent.prune_expired(T0 + timedelta(hours=23)) == 0
        assert agent.prune_expired(T0 + timedelta(hours=25)) == 1
        assert [i.hostname for i in agent.active_incidents()] == ["new-host"]
        assert len(agent.latest_incidents()) == 2


class TestHandlers:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_receive_incidents(self) -> None:
        agent = IncidentDetectionAgent(FakeProvider())
        seen_sync: list[str] = []
        seen_async: list[str] = []

        async def async_handler(incident: Incident) -> None:
            seen_async.append(incident.id)

        def broken_handler(incident: Incident) -> None:
            raise RuntimeError("pager down")

        agent.add_handler(broken_handler)
        agent.add_handler(lambda incident: seen_sync.append(incident.id))
        agent.add_handler(async_handler)

        await agent.check_fleet([make_server(cpu_usage=95.0)], now=T0)

        assert seen_sync == ["web-kr-001-high_cpu"]
        assert seen_async == ["web-kr-001-high_cpu"]


class TestCircuitBreaker:
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreakerState(failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == "open"
        assert not breaker.can_execute()

    def test_half_open_after_recovery_timeout(self) -> None:
        breaker = CircuitBreakerState(failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        breaker.last_failure_time = datetime.now(UTC) - timedelta(seconds=61)

        assert breaker.can_execute()
        assert breaker.state == "half-open"

        breaker.record_success()
        assert breaker.state == "closed"
        assert breaker.failure_count == 0
