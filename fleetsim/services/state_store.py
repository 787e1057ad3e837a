"""
Server state store: current snapshots plus a bounded history per hostname.

The store is the explicit owner of fleet state. Readers get deep copies and
register callbacks to be told when a new set of snapshots is available.
"""

import asyncio
from collections import deque
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

import structlog

from fleetsim.domain.models import HISTORY_LIMIT, HealthStatus, ServerState

logger = structlog.get_logger(__name__)

FleetListener = Callable[[list[ServerState]], object]


class ServerStateStore:
    """
    Holds the latest ServerState per hostname and a ring buffer of past ones.

    Insertion order of hostnames is preserved so the fleet is always
    reported in creation order.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self.history_limit = history_limit
        self._current: dict[str, ServerState] = {}
        self._history: dict[str, deque[ServerState]] = {}
        self._listeners: list[FleetListener] = []
        self._pending: set[asyncio.Task[object]] = set()
        self.logger = logger.bind(component="server_state_store")

    def __len__(self) -> int:
        return len(self._current)

    def __contains__(self, hostname: object) -> bool:
        return hostname in self._current

    def record(self, state: ServerState) -> None:
        """Store a new snapshot as current and append it to the history."""
        snapshot = state.snapshot()
        self._current[snapshot.hostname] = snapshot
        series = self._history.setdefault(snapshot.hostname, deque(maxlen=self.history_limit))
        series.append(snapshot)

    def record_many(self, states: Iterable[ServerState]) -> None:
        for state in states:
            self.record(state)

    def current(self) -> list[ServerState]:
        """Return copies of the current snapshot of every server."""
        return [state.snapshot() for state in self._current.values()]

    def get(self, hostname: str) -> ServerState | None:
        state = self._current.get(hostname)
        return state.snapshot() if state else None

    def history(self, hostname: str) -> list[ServerState]:
        """Return the history of one server, oldest first."""
        return [state.snapshot() for state in self._history.get(hostname, ())]

    def all_history(self) -> dict[str, list[ServerState]]:
        return {hostname: self.history(hostname) for hostname in self._history}

    def status_counts(self) -> dict[HealthStatus, int]:
        counts = {status: 0 for status in HealthStatus}
        for state in self._current.values():
            counts[state.status] += 1
        return counts

    def clear(self) -> None:
        self._current.clear()
        self._history.clear()

    def subscribe(self, listener: FleetListener) -> Callable[[], None]:
        """Register a fleet update callback. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        """
        Deliver the current snapshot to every subscriber.

        Async listeners run as tasks on the running loop; their failures are
        logged when the task finishes. Without a running loop they are skipped.
        """
        if not self._listeners:
            return

        for listener in list(self._listeners):
            name = getattr(listener, "__name__", repr(listener))
            try:
                outcome = listener(self.current())
            except Exception as e:
                self.logger.error("fleet_listener_failed", error=str(e), listener=name)
                continue

            if asyncio.iscoroutine(outcome):
                self._schedule(outcome, name)

    def _schedule(self, coroutine: Coroutine[Any, Any, object], name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coroutine.close()
            self.logger.warning("fleet_listener_skipped", reason="no_running_loop", listener=name)
            return

        task = loop.create_task(coroutine, name=name)
        self._pending.add(task)
        task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task[object]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("fleet_listener_failed", error=str(error), listener=task.get_name())
