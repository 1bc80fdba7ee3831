"""
Shared fixtures for the service recovery tests
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from service_recovery import OrchestrationConfig, build_recovery_system
from service_recovery.error_recovery import CircuitBreakerManager, ErrorAggregator
from service_recovery.messaging import InMemoryNotificationSink
from service_recovery.monitoring import ProbeResult
from service_recovery.recovery import default_step_registry
from service_recovery.storage import InMemoryRecoveryStore


class FakeClock:
    """Controllable clock; ``sleep`` advances time instead of waiting"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)


class ScriptedProbe:
    """Returns scripted outcomes in order, repeating the last one"""

    def __init__(self, outcomes: List[bool], error: str = "503 Service Unavailable: api error"):
        self.outcomes = list(outcomes)
        self.error = error
        self.calls = 0

    def set(self, outcomes: List[bool]) -> None:
        self.outcomes = list(outcomes)

    async def __call__(self, config) -> ProbeResult:
        index = min(self.calls, len(self.outcomes) - 1)
        self.calls += 1
        if self.outcomes[index]:
            return ProbeResult(success=True, latency_ms=50.0)
        return ProbeResult(success=False, latency_ms=50.0, error=self.error)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryRecoveryStore()


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def aggregator(store, clock):
    return ErrorAggregator(store, clock=clock)


@pytest.fixture
def breakers(aggregator, clock):
    return CircuitBreakerManager(aggregator=aggregator, clock=clock)


@pytest.fixture
def api_probe():
    return ScriptedProbe([True])


@pytest.fixture
def orchestration_config():
    return OrchestrationConfig(service_delay_seconds=0, poll_interval_seconds=0)


@pytest.fixture
def make_system(store, sink, api_probe, clock, orchestration_config):
    def build(**overrides):
        options = dict(
            config=orchestration_config,
            store=store,
            sink=sink,
            api_probe=api_probe,
            step_registry=default_step_registry(stage_delay_seconds=0),
            clock=clock,
            sleep=clock.sleep,
        )
        options.update(overrides)
        return build_recovery_system(**options)
    return build


@pytest.fixture
def system(make_system):
    return make_system()
