"""
Wiring for the service recovery subsystem

``build_recovery_system`` is the one place default configuration is
supplied; every component receives its collaborators explicitly.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .config import (
    CircuitBreakerConfig,
    HealthCheckConfig,
    OrchestrationConfig,
    ServiceDependency,
    default_health_checks,
    default_service_dependencies,
)
from .error_recovery.circuit_breaker import CircuitBreakerManager
from .error_recovery.error_classifier import ErrorAggregator, ErrorClassifier
from .error_recovery.retry import RetryManager
from .messaging.redis_client import NotificationSink, RedisNotificationSink
from .models import utc_now
from .monitoring.health_checks import CheckResult, HealthCheckEvaluator
from .monitoring.probes import Probe, ProbeRegistry
from .recovery.orchestrator import RecoveryOrchestrator
from .recovery.status import RecoveryStatusService
from .recovery.steps import StepContext, StepRegistry, default_step_registry
from .recovery.workflow_engine import RecoveryWorkflowEngine, StepExecution
from .storage.memory_store import InMemoryRecoveryStore, RecoveryStore

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """What one scheduler invocation did"""
    checks: List[CheckResult] = field(default_factory=list)
    steps: List[StepExecution] = field(default_factory=list)


@dataclass
class RecoverySystem:
    config: OrchestrationConfig
    store: RecoveryStore
    aggregator: ErrorAggregator
    breakers: CircuitBreakerManager
    probes: ProbeRegistry
    evaluator: HealthCheckEvaluator
    engine: RecoveryWorkflowEngine
    orchestrator: RecoveryOrchestrator
    status: RecoveryStatusService
    retry: RetryManager
    sink: NotificationSink

    async def start(self) -> None:
        if isinstance(self.sink, RedisNotificationSink):
            await self.sink.connect()

    async def stop(self) -> None:
        if isinstance(self.sink, RedisNotificationSink):
            await self.sink.disconnect()

    async def tick(self, forced: bool = False) -> TickResult:
        """
        One scheduler invocation

        Runs every due health check, then advances each active workflow
        with auto recovery enabled by a single step.
        """
        result = TickResult(checks=await self.evaluator.run_all_checks(forced=forced))
        for workflow in await self.store.list_active_workflows():
            if not workflow.auto_recovery_enabled:
                continue
            result.steps.append(await self.engine.execute_step(workflow.id))
        return result


def build_recovery_system(
    config: Optional[OrchestrationConfig] = None,
    health_checks: Optional[Iterable[HealthCheckConfig]] = None,
    dependencies: Optional[Iterable[ServiceDependency]] = None,
    breaker_config: Optional[CircuitBreakerConfig] = None,
    store: Optional[RecoveryStore] = None,
    sink: Optional[NotificationSink] = None,
    api_probe: Optional[Probe] = None,
    step_registry: Optional[StepRegistry] = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable = asyncio.sleep,
    environment: str = "development",
) -> RecoverySystem:
    config = config or OrchestrationConfig()
    health_checks = list(health_checks if health_checks is not None else default_health_checks())
    dependencies = list(dependencies if dependencies is not None else default_service_dependencies())
    store = store or InMemoryRecoveryStore()
    sink = sink or RedisNotificationSink(config.redis_url, config.notification_channel)

    aggregator = ErrorAggregator(store, ErrorClassifier(), clock=clock, environment=environment)
    breakers = CircuitBreakerManager(breaker_config, aggregator=aggregator, clock=clock)
    probes = ProbeRegistry(breakers, api_probe=api_probe)
    checks_by_service: Dict[str, HealthCheckConfig] = {c.service: c for c in health_checks}

    step_context = StepContext(
        breakers=breakers,
        probes=probes,
        health_checks=checks_by_service,
        clock=clock,
        sleep=sleep,
    )
    engine = RecoveryWorkflowEngine(
        store,
        breakers,
        step_context,
        aggregator,
        sink,
        step_registry=step_registry or default_step_registry(),
        clock=clock,
        sleep=sleep,
        retry_delay_seconds=config.poll_interval_seconds,
    )
    evaluator = HealthCheckEvaluator(
        health_checks,
        store,
        breakers,
        probes,
        aggregator,
        workflow_engine=engine,
        clock=clock,
        auto_recovery=config.auto_recovery,
    )
    orchestrator = RecoveryOrchestrator(
        engine, store, breakers, aggregator, dependencies, config=config, clock=clock, sleep=sleep
    )
    services = list(dict.fromkeys([c.service for c in health_checks] + [d.service for d in dependencies]))
    status = RecoveryStatusService(store, breakers, orchestrator, services, config=config, clock=clock)
    retry = RetryManager(breakers=breakers, aggregator=aggregator, sleep=sleep)

    logger.info(f"Recovery system built for {len(services)} services")
    return RecoverySystem(
        config=config,
        store=store,
        aggregator=aggregator,
        breakers=breakers,
        probes=probes,
        evaluator=evaluator,
        engine=engine,
        orchestrator=orchestrator,
        status=status,
        retry=retry,
        sink=sink,
    )
