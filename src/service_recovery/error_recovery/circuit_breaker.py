"""
Per-service circuit breakers

A breaker tracks outcomes over a trailing window and gates calls to a
failing dependency:
- CLOSED: calls pass; opens once failures in the window reach the threshold
- OPEN: calls are rejected until the cooldown has elapsed
- HALF_OPEN: a bounded number of probe calls pass; any failure reopens,
  enough successes close
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..config import CircuitBreakerConfig
from ..exceptions import CircuitOpenError
from ..models import CircuitState, ErrorCategory, ErrorSeverity, utc_now
from .error_classifier import ErrorAggregator

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerState:
    """Mutable state of a circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    half_open_attempts: int = 0
    total_requests: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    last_transition_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    outcomes: Deque[Tuple[datetime, bool]] = field(default_factory=deque)


@dataclass
class BreakerHealth:
    service: str
    is_healthy: bool
    state: CircuitState
    failure_rate: float
    consecutive_failures: int
    consecutive_successes: int
    recent_failure_count: int
    last_transition_time: Optional[datetime] = None
    time_until_next_attempt: float = 0.0


class CircuitBreaker:
    """Circuit breaker for a single service"""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig = None,
        clock: Callable[[], datetime] = utc_now,
        on_transition: Optional[Callable] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState()
        self.clock = clock
        self.on_transition = on_transition
        self.lock = asyncio.Lock()

    async def record_success(self, latency_ms: Optional[float] = None) -> None:
        async with self.lock:
            now = self.clock()
            await self._check_cooldown(now)
            self.state.outcomes.append((now, True))
            self.state.total_requests += 1
            self.state.last_success_time = now
            self.state.consecutive_successes += 1
            self.state.consecutive_failures = 0

            if (self.state.state == CircuitState.HALF_OPEN and
                    self.state.consecutive_successes >= self.config.success_threshold):
                await self._transition(
                    CircuitState.CLOSED, now,
                    f"{self.state.consecutive_successes} successful probes"
                )

    async def record_failure(self, reason: Optional[str] = None) -> None:
        async with self.lock:
            now = self.clock()
            await self._check_cooldown(now)
            self.state.outcomes.append((now, False))
            self.state.total_requests += 1
            self.state.last_failure_time = now
            self.state.last_failure_reason = reason
            self.state.consecutive_failures += 1
            self.state.consecutive_successes = 0

            if self.state.state == CircuitState.HALF_OPEN:
                await self._transition(CircuitState.OPEN, now, f"probe failed while half-open: {reason}")
            elif self.state.state == CircuitState.CLOSED:
                failures = self._window_counts(now)[1]
                if failures >= self.config.failure_threshold:
                    await self._transition(
                        CircuitState.OPEN, now,
                        f"{failures} failures in {self.config.monitoring_window_seconds:.0f}s window: {reason}"
                    )

    async def can_execute(self) -> bool:
        async with self.lock:
            now = self.clock()
            await self._check_cooldown(now)
            if self.state.state == CircuitState.CLOSED:
                return True
            if self.state.state == CircuitState.OPEN:
                return False
            if self.state.half_open_attempts < self.config.half_open_max_attempts:
                self.state.half_open_attempts += 1
                return True
            return False

    async def force_close(self) -> None:
        async with self.lock:
            now = self.clock()
            self.state.consecutive_failures = 0
            if self.state.state != CircuitState.CLOSED:
                await self._transition(CircuitState.CLOSED, now, "forced closed")
            self.state.outcomes.clear()

    async def force_open(self, reason: Optional[str] = None) -> None:
        async with self.lock:
            now = self.clock()
            if self.state.state != CircuitState.OPEN:
                await self._transition(CircuitState.OPEN, now, reason or "forced open")
            else:
                self.state.opened_at = now

    async def get_health(self) -> BreakerHealth:
        async with self.lock:
            now = self.clock()
            await self._check_cooldown(now)
            total, failures = self._window_counts(now)
            failure_rate = (failures / total * 100) if total else 0.0

            time_until_next_attempt = 0.0
            if self.state.state == CircuitState.OPEN and self.state.opened_at:
                elapsed = (now - self.state.opened_at).total_seconds()
                time_until_next_attempt = max(0.0, self.config.timeout_seconds - elapsed)

            return BreakerHealth(
                service=self.name,
                is_healthy=(
                    self.state.state != CircuitState.OPEN and
                    failure_rate <= self.config.unhealthy_failure_rate
                ),
                state=self.state.state,
                failure_rate=failure_rate,
                consecutive_failures=self.state.consecutive_failures,
                consecutive_successes=self.state.consecutive_successes,
                recent_failure_count=failures,
                last_transition_time=self.state.last_transition_time,
                time_until_next_attempt=time_until_next_attempt,
            )

    def cooling_down(self) -> bool:
        """True while open and the cooldown has not elapsed; does not change state"""
        if self.state.state != CircuitState.OPEN or self.state.opened_at is None:
            return False
        elapsed = (self.clock() - self.state.opened_at).total_seconds()
        return elapsed < self.config.timeout_seconds

    async def _check_cooldown(self, now: datetime) -> None:
        if (self.state.state == CircuitState.OPEN and self.state.opened_at and
                (now - self.state.opened_at).total_seconds() >= self.config.timeout_seconds):
            await self._transition(CircuitState.HALF_OPEN, now, "cooldown elapsed")

    def _window_counts(self, now: datetime) -> Tuple[int, int]:
        """(total, failures) over the trailing monitoring window"""
        cutoff = now - timedelta(seconds=self.config.monitoring_window_seconds)
        while self.state.outcomes and self.state.outcomes[0][0] < cutoff:
            self.state.outcomes.popleft()
        failures = sum(1 for _, success in self.state.outcomes if not success)
        return len(self.state.outcomes), failures

    async def _transition(self, new_state: CircuitState, now: datetime, reason: str) -> None:
        old_state = self.state.state
        self.state.state = new_state
        self.state.last_transition_time = now

        if new_state == CircuitState.OPEN:
            self.state.opened_at = now
            self.state.consecutive_successes = 0
            logger.warning(f"Circuit breaker {self.name} transitioning to OPEN: {reason}")
        elif new_state == CircuitState.HALF_OPEN:
            self.state.half_open_attempts = 0
            self.state.consecutive_successes = 0
            logger.warning(f"Circuit breaker {self.name} transitioning to HALF_OPEN")
        else:
            self.state.opened_at = None
            self.state.half_open_attempts = 0
            self.state.consecutive_failures = 0
            self.state.outcomes.clear()
            logger.info(f"Circuit breaker {self.name} transitioning to CLOSED: {reason}")

        if self.on_transition:
            await self.on_transition(self.name, old_state, new_state, reason)


class CircuitBreakerManager:
    """Owns one circuit breaker per service and reports transitions"""

    def __init__(
        self,
        config: CircuitBreakerConfig = None,
        aggregator: Optional[ErrorAggregator] = None,
        clock: Callable[[], datetime] = utc_now,
        service_configs: Optional[Dict[str, CircuitBreakerConfig]] = None,
    ):
        self.default_config = config or CircuitBreakerConfig()
        self.service_configs = dict(service_configs or {})
        self.aggregator = aggregator
        self.clock = clock
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}

    def get_circuit_breaker(self, service: str) -> CircuitBreaker:
        """Get or create the breaker for a service"""
        if service not in self.circuit_breakers:
            self.circuit_breakers[service] = CircuitBreaker(
                service,
                self.service_configs.get(service, self.default_config),
                clock=self.clock,
                on_transition=self._report_transition,
            )
        return self.circuit_breakers[service]

    async def record_success(self, service: str, latency_ms: Optional[float] = None) -> None:
        await self.get_circuit_breaker(service).record_success(latency_ms)

    async def record_failure(self, service: str, reason: Optional[str] = None) -> None:
        await self.get_circuit_breaker(service).record_failure(reason)

    async def can_execute(self, service: str) -> bool:
        return await self.get_circuit_breaker(service).can_execute()

    async def force_close(self, service: str) -> None:
        await self.get_circuit_breaker(service).force_close()

    async def force_open(self, service: str, reason: Optional[str] = None) -> None:
        await self.get_circuit_breaker(service).force_open(reason)

    async def get_health(self, service: str) -> BreakerHealth:
        return await self.get_circuit_breaker(service).get_health()

    async def call(self, service: str, operation: Callable, *args, **kwargs) -> Any:
        """Execute operation through the service's circuit breaker"""
        breaker = self.get_circuit_breaker(service)
        if not await breaker.can_execute():
            raise CircuitOpenError(service)

        started = time.monotonic()
        try:
            if asyncio.iscoroutinefunction(operation):
                result = await operation(*args, **kwargs)
            else:
                result = operation(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    result = await result
        except Exception as e:
            await breaker.record_failure(str(e) or type(e).__name__)
            raise

        await breaker.record_success((time.monotonic() - started) * 1000)
        return result

    async def snapshot(self) -> List[Dict[str, Any]]:
        """Health of every known breaker"""
        result = []
        for service, breaker in sorted(self.circuit_breakers.items()):
            health = await breaker.get_health()
            result.append({
                "service": service,
                "state": health.state.value,
                "is_healthy": health.is_healthy,
                "failure_rate": health.failure_rate,
                "consecutive_failures": health.consecutive_failures,
                "last_transition_time": health.last_transition_time,
                "time_until_next_attempt": health.time_until_next_attempt,
            })
        return result

    async def summary(self) -> Dict[str, Any]:
        services = await self.snapshot()
        return {
            "services": services,
            "total_services": len(services),
            "healthy_services": sum(1 for s in services if s["is_healthy"]),
            "open_breakers": sum(1 for s in services if s["state"] == CircuitState.OPEN.value),
            "half_open_breakers": sum(1 for s in services if s["state"] == CircuitState.HALF_OPEN.value),
        }

    async def _report_transition(
        self, service: str, old_state: CircuitState, new_state: CircuitState, reason: str
    ) -> None:
        if self.aggregator is None:
            return
        await self.aggregator.report(
            f"Circuit breaker {service} transitioned {old_state.value} -> {new_state.value}: {reason}",
            service=service,
            operation="circuit_breaker_transition",
            metadata={"from_state": old_state.value, "to_state": new_state.value, "reason": reason},
            category=ErrorCategory.CIRCUIT_BREAKER,
            severity=None if new_state == CircuitState.OPEN else ErrorSeverity.LOW,
        )
