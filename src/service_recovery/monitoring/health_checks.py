"""
Health check evaluation

Runs a service's configured probe, records the outcome, feeds the circuit
breaker and decides from the recent check window whether recovery should
start (recovery trigger) or an in-flight recovery can be confirmed
(recovery detected).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from ..config import HealthCheckConfig
from ..error_recovery.circuit_breaker import CircuitBreakerManager
from ..error_recovery.error_classifier import ErrorAggregator
from ..exceptions import UnknownServiceError
from ..models import HealthCheckRecord, utc_now
from ..storage.memory_store import RecoveryStore
from .probes import ProbeRegistry

if TYPE_CHECKING:
    from ..recovery.workflow_engine import RecoveryWorkflowEngine

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Outcome of one ``run_check`` call"""
    service: str
    success: bool
    response_time_ms: float = 0.0
    error: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    recovery_triggered: bool = False
    recovery_detected: bool = False
    workflow_id: Optional[str] = None


class HealthCheckEvaluator:
    """Evaluates configured health checks and drives recovery triggers"""

    def __init__(
        self,
        health_checks: Iterable[HealthCheckConfig],
        store: RecoveryStore,
        breakers: CircuitBreakerManager,
        probes: ProbeRegistry,
        aggregator: ErrorAggregator,
        workflow_engine: Optional["RecoveryWorkflowEngine"] = None,
        clock: Callable[[], datetime] = utc_now,
        auto_recovery: bool = True,
    ):
        self.configs: Dict[str, HealthCheckConfig] = {c.service: c for c in health_checks}
        self.store = store
        self.breakers = breakers
        self.probes = probes
        self.aggregator = aggregator
        self.workflow_engine = workflow_engine
        self.clock = clock
        self.auto_recovery = auto_recovery

    def get_config(self, service: str) -> HealthCheckConfig:
        config = self.configs.get(service)
        if config is None:
            raise UnknownServiceError(service)
        return config

    async def run_check(self, service: str, forced: bool = False) -> CheckResult:
        """Run the health check for a service unless its interval has not elapsed"""
        config = self.get_config(service)

        if not config.enabled:
            logger.debug(f"Health check for {service} is disabled")
            return CheckResult(service=service, success=False, skipped=True, reason="disabled")

        if not forced:
            last = await self.store.latest_health_check(service)
            if last and (self.clock() - last.timestamp).total_seconds() < config.interval_seconds:
                return CheckResult(
                    service=service,
                    success=last.success,
                    response_time_ms=last.response_time_ms,
                    skipped=True,
                    reason="interval_not_met"
                )

        probe_result = await self.probes.probe(config)
        record = HealthCheckRecord(
            service=service,
            timestamp=self.clock(),
            success=probe_result.success,
            response_time_ms=probe_result.latency_ms or 0.0,
            error=probe_result.error,
            data=probe_result.data,
            check_type=config.method,
        )
        await self.store.add_health_check(record)

        if probe_result.success:
            await self.breakers.record_success(service, record.response_time_ms)
        else:
            logger.warning(f"Health check failed for {service}: {probe_result.error}")
            await self.breakers.record_failure(service, probe_result.error)
            await self.aggregator.report(
                probe_result.error or "Health check failed",
                service=service,
                operation="health_check",
                metadata={"check_type": config.method.value, "response_time_ms": record.response_time_ms},
            )

        result = CheckResult(
            service=service,
            success=probe_result.success,
            response_time_ms=record.response_time_ms,
            error=probe_result.error,
        )
        await self._evaluate_window(config, result)
        return result

    async def _evaluate_window(self, config: HealthCheckConfig, result: CheckResult) -> None:
        recent = await self.store.recent_health_checks(config.service, limit=config.window_size)
        failures = sum(1 for record in recent if not record.success)
        successes = len(recent) - failures
        active = await self.store.find_active_workflow(config.service)

        if self.workflow_engine is None:
            return

        if (not result.success and failures >= config.failure_threshold and
                active is None and self.auto_recovery):
            logger.warning(
                f"Recovery trigger for {config.service}: {failures}/{len(recent)} recent checks failed"
            )
            initiated = await self.workflow_engine.initiate_recovery(config.service)
            result.recovery_triggered = True
            result.workflow_id = initiated.workflow_id

        elif result.success and successes >= config.success_threshold and active is not None:
            logger.info(
                f"Recovery detected for {config.service}: {successes}/{len(recent)} recent checks succeeded"
            )
            recovered = await self.workflow_engine.mark_recovered(config.service)
            result.recovery_detected = recovered.recovered
            result.workflow_id = recovered.workflow_id

    async def run_all_checks(self, forced: bool = False) -> List[CheckResult]:
        """Run every enabled check; one service's failure does not stop the others"""
        results = []
        for service, config in self.configs.items():
            if not config.enabled:
                continue
            try:
                results.append(await self.run_check(service, forced=forced))
            except Exception as e:
                logger.error(f"Health check for {service} raised: {e}")
                await self.aggregator.report(e, service=service, operation="health_check")
                results.append(CheckResult(service=service, success=False, error=str(e)))
        return results
