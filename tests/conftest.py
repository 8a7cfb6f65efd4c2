from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from jobfleet.coordinator.state import CoordinatorState
from jobfleet.coordinator.storage import CoordinatorStore
from jobfleet.model import AutomatonPayload, ShellPayload


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class LoopCheckingStore(CoordinatorStore):
    """Records, per write, whether it ran on an event loop thread."""

    def __init__(self):
        self.writes = []

    def _record(self):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.writes.append("worker")
        else:
            self.writes.append("event-loop")

    def save_host(self, host):
        self._record()

    def save_job(self, job):
        self._record()

    def load_hosts(self):
        return []

    def load_jobs(self):
        return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def state(clock):
    return CoordinatorState(lease_ms=10_000, clock=clock, node_id="coord-test")


@pytest.fixture
def shell():
    return ShellPayload(command="bash", args=["-lc", "echo hi"])


@pytest.fixture
def automaton():
    return AutomatonPayload(args=["--run"])
