"""
Tests for ServerStateStore: ring-buffer history, snapshot isolation and
subscriber notification.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from structlog.testing import capture_logs

from fleetsim.domain.models import HealthStatus, ServerState
from fleetsim.services.state_store import ServerStateStore

START = datetime(2025, 1, 1, tzinfo=UTC)


def make_state(hostname: str = "web-kr-001", minutes: int = 0, cpu: float = 40.0) -> ServerState:
    return ServerState(
        hostname=hostname,
        region="kr",
        role="web",
        cpu_usage=cpu,
        memory_usage_percent=50.0,
        disk_usage_percent=45.0,
        last_updated=START + timedelta(minutes=minutes),
    )


def test_history_keeps_the_144_most_recent_snapshots() -> None:
    store = ServerStateStore()

    for step in range(145):
        store.record(make_state(minutes=10 * step))

    history = store.history("web-kr-001")
    assert len(history) == 144
    assert history[0].last_updated == START + timedelta(minutes=10)
    assert history[-1].last_updated == START + timedelta(minutes=1440)
    assert [h.last_updated for h in history] == sorted(h.last_updated for h in history)


def test_current_reflects_latest_record() -> None:
    store = ServerStateStore()
    store.record(make_state(cpu=40.0))
    store.record(make_state(cpu=95.0, minutes=10))

    current = store.get("web-kr-001")
    assert current is not None
    assert current.cpu_usage == 95.0
    assert len(store) == 1
    assert "web-kr-001" in store


def test_snapshots_are_isolated_from_the_writer() -> None:
    store = ServerStateStore()
    state = make_state()
    store.record(state)

    state.cpu_usage = 97.0
    state.services["nginx"] = "stopped"  # type: ignore[assignment]
    assert store.current()[0].cpu_usage == 40.0
    assert store.current()[0].services == {}

    copy = store.current()[0]
    copy.cpu_usage = 11.0
    assert store.current()[0].cpu_usage == 40.0


def test_fleet_keeps_creation_order_and_counts_statuses() -> None:
    store = ServerStateStore()
    store.record(make_state("b-host"))
    critical = make_state("a-host", cpu=95.0)
    critical.status = HealthStatus.CRITICAL
    store.record(critical)

    assert [s.hostname for s in store.current()] == ["b-host", "a-host"]
    counts = store.status_counts()
    assert counts[HealthStatus.CRITICAL] == 1
    assert counts[HealthStatus.NORMAL] == 1
    assert set(store.all_history()) == {"a-host", "b-host"}


def test_unknown_hostname_has_no_history() -> None:
    store = ServerStateStore()
    assert store.history("missing") == []
    assert store.get("missing") is None


def test_clear_drops_everything() -> None:
    store = ServerStateStore()
    store.record(make_state())
    store.clear()
    assert len(store) == 0
    assert store.all_history() == {}


def test_rejects_non_positive_history_limit() -> None:
    with pytest.raises(ValueError):
        ServerStateStore(history_limit=0)


class TestSubscriptions:
    def test_listeners_receive_current_snapshot(self) -> None:
        store = ServerStateStore()
        received: list[list[ServerState]] = []
        store.subscribe(received.append)

        store.record(make_state())
        store.notify()

        assert len(received) == 1
        assert received[0][0].hostname == "web-kr-001"

    def test_unsubscribe_stops_delivery(self) -> None:
        store = ServerStateStore()
        received: list[list[ServerState]] = []
        unsubscribe = store.subscribe(received.append)

        unsubscribe()
        store.notify()

        assert received == []

    def test_failing_listener_does_not_block_others(self) -> None:
        store = ServerStateStore()
        received: list[int] = []

        def broken(_: list[ServerState]) -> None:
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(lambda fleet: received.append(len(fleet)))
        store.record(make_state())

        store.notify()

        assert received == [1]

    @pytest.mark.asyncio
    async def test_async_listeners_are_scheduled(self) -> None:
        store = ServerStateStore()
        received: list[int] = []

        async def listener(fleet: list[ServerState]) -> None:
            received.append(len(fleet))

        store.subscribe(listener)
        store.record(make_state())
        store.notify()
        await asyncio.sleep(0)

        assert received == [1]

    @pytest.mark.asyncio
    async def test_async_listener_failure_is_logged(self) -> None:
        with capture_logs() as logs:
            store = ServerStateStore()
            received: list[int] = []

            async def broken(fleet: list[ServerState]) -> None:
                raise RuntimeError("boom")

            store.subscribe(broken)
            store.subscribe(lambda fleet: received.append(len(fleet)))
            store.record(make_state())
            store.notify()
            await asyncio.sleep(0.01)

        failures = [entry for entry in logs if entry["event"] == "fleet_listener_failed"]
        assert len(failures) == 1
        assert failures[0]["error"] == "boom"
        assert failures[0]["listener"] == "broken"
        assert received == [1]
        assert not store._pending

    def test_async_listener_skipped_without_running_loop(self) -> None:
        with capture_logs() as logs:
            store = ServerStateStore()
            calls: list[int] = []

            async def listener(fleet: list[ServerState]) -> None:
                calls.append(len(fleet))

            store.subscribe(listener)
            store.record(make_state())
            store.notify()

        assert calls == []
        assert [entry["event"] for entry in logs] == ["fleet_listener_skipped"]
