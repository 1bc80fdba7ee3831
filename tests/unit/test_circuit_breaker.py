"""
Unit tests for per-service circuit breakers
"""

import pytest

from service_recovery.config import CircuitBreakerConfig
from service_recovery.error_recovery import CircuitBreakerManager
from service_recovery.exceptions import CircuitOpenError
from service_recovery.models import CircuitState, ErrorCategory, ErrorSeverity


@pytest.fixture
def config():
    return CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        timeout_seconds=60.0,
        monitoring_window_seconds=300.0,
        half_open_max_attempts=2,
    )


@pytest.fixture
def manager(config, aggregator, clock):
    return CircuitBreakerManager(config, aggregator=aggregator, clock=clock)


async def open_breaker(manager, service="svc", failures=3):
    for _ in range(failures):
        await manager.record_failure(service, "connection refused")


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_new_breaker_is_closed_and_healthy(self, manager):
        health = await manager.get_health("svc")

        assert health.state == CircuitState.CLOSED
        assert health.is_healthy
        assert health.failure_rate == 0.0
        assert await manager.can_execute("svc")

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self, manager):
        await open_breaker(manager, failures=2)
        assert (await manager.get_health("svc")).state == CircuitState.CLOSED

        await manager.record_failure("svc", "connection refused")

        health = await manager.get_health("svc")
        assert health.state == CircuitState.OPEN
        assert not health.is_healthy
        assert not await manager.can_execute("svc")

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(self, manager, clock):
        await open_breaker(manager, failures=2)
        clock.advance(301)

        await manager.record_failure("svc", "connection refused")

        assert (await manager.get_health("svc")).state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cooldown_moves_to_half_open_with_limited_probes(self, manager, clock):
        await open_breaker(manager)
        clock.advance(59)
        assert not await manager.can_execute("svc")

        clock.advance(1)

        assert await manager.can_execute("svc")
        assert (await manager.get_health("svc")).state == CircuitState.HALF_OPEN
        assert await manager.can_execute("svc")
        assert not await manager.can_execute("svc")

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, manager, clock):
        await open_breaker(manager)
        clock.advance(60)
        assert await manager.can_execute("svc")

        await manager.record_failure("svc", "still down")

        health = await manager.get_health("svc")
        assert health.state == CircuitState.OPEN
        assert health.time_until_next_attempt == 60.0

    @pytest.mark.asyncio
    async def test_half_open_successes_close(self, manager, clock):
        await open_breaker(manager)
        clock.advance(60)

        await manager.record_success("svc", 20.0)
        assert (await manager.get_health("svc")).state == CircuitState.HALF_OPEN
        await manager.record_success("svc", 20.0)

        health = await manager.get_health("svc")
        assert health.state == CircuitState.CLOSED
        assert health.failure_rate == 0.0
        assert health.is_healthy

    @pytest.mark.asyncio
    async def test_force_close_and_force_open(self, manager):
        await manager.force_open("svc", "maintenance")
        assert (await manager.get_health("svc")).state == CircuitState.OPEN

        await manager.force_close("svc")

        health = await manager.get_health("svc")
        assert health.state == CircuitState.CLOSED
        assert health.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_high_failure_rate_is_unhealthy_while_closed(self, manager):
        await manager.record_success("svc")
        await manager.record_failure("svc", "boom")
        await manager.record_failure("svc", "boom")

        health = await manager.get_health("svc")
        assert health.state == CircuitState.CLOSED
        assert not health.is_healthy

    @pytest.mark.asyncio
    async def test_cooling_down_does_not_change_state(self, manager, clock):
        await open_breaker(manager)
        breaker = manager.get_circuit_breaker("svc")
        assert breaker.cooling_down()

        clock.advance(60)

        assert not breaker.cooling_down()
        assert breaker.state.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_transitions_are_reported(self, manager, aggregator):
        await open_breaker(manager)
        await manager.force_close("svc")

        result = await aggregator.query_error_logs(service="svc", category=ErrorCategory.CIRCUIT_BREAKER)
        transitions = [log.metadata["to_state"] for log in result["logs"]]
        severities = {log.metadata["to_state"]: log.error.severity for log in result["logs"]}

        assert transitions == ["open", "closed"]
        assert severities["open"] == ErrorSeverity.CRITICAL
        assert severities["closed"] == ErrorSeverity.LOW


class TestCircuitBreakerManager:

    @pytest.mark.asyncio
    async def test_call_records_outcomes(self, manager):
        async def ok():
            return "done"

        assert await manager.call("svc", ok) == "done"
        health = await manager.get_health("svc")
        assert health.consecutive_successes == 1

    @pytest.mark.asyncio
    async def test_call_rejected_when_open(self, manager):
        await open_breaker(manager)

        with pytest.raises(CircuitOpenError):
            await manager.call("svc", lambda: "never")

    @pytest.mark.asyncio
    async def test_call_failure_propagates(self, manager):
        def fail():
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await manager.call("svc", fail)
        assert (await manager.get_health("svc")).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_service_specific_config(self, aggregator, clock):
        manager = CircuitBreakerManager(
            aggregator=aggregator,
            clock=clock,
            service_configs={"fragile": CircuitBreakerConfig(failure_threshold=1)},
        )
        await manager.record_failure("fragile", "boom")
        await manager.record_failure("sturdy", "boom")

        summary = await manager.summary()
        assert summary["total_services"] == 2
        assert summary["open_breakers"] == 1
        assert [s["service"] for s in summary["services"]] == ["fragile", "sturdy"]
