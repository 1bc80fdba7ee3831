"""
Recovery step actions

Each step of the recovery workflow is a ``RecoveryStepAction`` subclass
registered by name. Actions report their outcome as a ``StepResult``; an
action that raises is treated as a failed step by ``StepRegistry.run``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..config import HealthCheckConfig, ProbeMethod
from ..error_recovery.circuit_breaker import CircuitBreakerManager
from ..models import RecoveryStep, WorkflowPhase, utc_now
from ..monitoring.probes import ProbeRegistry

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class StepContext:
    """Collaborators available to step actions"""
    breakers: CircuitBreakerManager
    probes: ProbeRegistry
    health_checks: Dict[str, HealthCheckConfig] = field(default_factory=dict)
    clock: Callable[[], datetime] = utc_now
    sleep: Callable = asyncio.sleep

    def health_check_for(self, service: str) -> HealthCheckConfig:
        config = self.health_checks.get(service)
        if config is None:
            # Services without a configured probe are judged by their breaker
            config = HealthCheckConfig(service=service, method=ProbeMethod.CIRCUIT_BREAKER_TEST)
        return config


class RecoveryStepAction(ABC):
    """One named step of the recovery workflow"""
    name: str = ""
    description: str = ""
    max_retries: int = 1
    phase: WorkflowPhase = WorkflowPhase.VALIDATION
    estimated_seconds: float = 30.0

    @abstractmethod
    async def execute(self, context: StepContext, service: str) -> StepResult:
        ...

    def new_step(self) -> RecoveryStep:
        return RecoveryStep(name=self.name, description=self.description, max_retries=self.max_retries)


class ServiceValidationStep(RecoveryStepAction):
    name = "service_validation"
    description = "Validate service is degraded"
    max_retries = 3
    phase = WorkflowPhase.VALIDATION
    estimated_seconds = 30.0

    async def execute(self, context: StepContext, service: str) -> StepResult:
        health = await context.breakers.get_health(service)
        data = {"health": _health_data(health)}
        if health.is_healthy:
            return StepResult(success=False, data=data, error=f"Service {service} already reports healthy")
        return StepResult(success=True, data=data)


class CircuitBreakerResetStep(RecoveryStepAction):
    name = "circuit_breaker_reset"
    description = "Reset circuit breaker to allow test traffic"
    max_retries = 1
    phase = WorkflowPhase.VALIDATION
    estimated_seconds = 10.0

    async def execute(self, context: StepContext, service: str) -> StepResult:
        await context.breakers.force_close(service)
        return StepResult(success=True, data={"action": "circuit_breaker_reset"})


class GradualTrafficIncreaseStep(RecoveryStepAction):
    """Sends probe traffic through the breaker in growing stages"""
    name = "gradual_traffic_increase"
    description = "Gradually increase traffic to the service"
    max_retries = 5
    phase = WorkflowPhase.GRADUAL_RECOVERY
    estimated_seconds = 120.0

    def __init__(
        self,
        stages: Tuple[int, ...] = (1, 3, 5),
        stage_delay_seconds: float = 5.0,
        min_success_rate: float = 0.8,
    ):
        self.stages = stages
        self.stage_delay_seconds = stage_delay_seconds
        self.min_success_rate = min_success_rate

    async def execute(self, context: StepContext, service: str) -> StepResult:
        config = context.health_check_for(service)
        completed_stages: List[Dict[str, Any]] = []

        for index, requests in enumerate(self.stages):
            if index > 0 and self.stage_delay_seconds > 0:
                await context.sleep(self.stage_delay_seconds)

            successes = 0
            for _ in range(requests):
                if not await context.breakers.can_execute(service):
                    return StepResult(
                        success=False,
                        data={"stages": completed_stages},
                        error=f"Circuit breaker {service} refused traffic at stage {index + 1}"
                    )
                result = await context.probes.probe(config)
                if result.success:
                    successes += 1
                    await context.breakers.record_success(service, result.latency_ms)
                else:
                    await context.breakers.record_failure(service, result.error)

            success_rate = successes / requests
            completed_stages.append({"requests": requests, "successes": successes, "success_rate": success_rate})
            logger.debug(f"Traffic stage {index + 1} for {service}: {successes}/{requests} succeeded")

            if success_rate < self.min_success_rate:
                return StepResult(
                    success=False,
                    data={"stages": completed_stages},
                    error=f"Stage {index + 1} success rate {success_rate:.0%} below {self.min_success_rate:.0%}"
                )

        return StepResult(success=True, data={"traffic_increased": True, "stages": completed_stages})


class FullRecoveryValidationStep(RecoveryStepAction):
    name = "full_recovery_validation"
    description = "Validate service is fully recovered"
    max_retries = 3
    phase = WorkflowPhase.FULL_RECOVERY
    estimated_seconds = 60.0

    max_failure_rate = 5.0

    async def execute(self, context: StepContext, service: str) -> StepResult:
        health = await context.breakers.get_health(service)
        data = {"final_health": _health_data(health)}
        if not health.is_healthy:
            return StepResult(success=False, data=data, error=f"Service {service} is still unhealthy")
        if health.failure_rate >= self.max_failure_rate:
            return StepResult(
                success=False,
                data=data,
                error=f"Failure rate {health.failure_rate:.1f}% is not below {self.max_failure_rate:.0f}%"
            )
        return StepResult(success=True, data=data)


class MonitoringSetupStep(RecoveryStepAction):
    name = "monitoring_setup"
    description = "Set up enhanced monitoring"
    max_retries = 1
    phase = WorkflowPhase.FULL_RECOVERY
    estimated_seconds = 15.0

    async def execute(self, context: StepContext, service: str) -> StepResult:
        return StepResult(success=True, data={"monitoring_enabled": True, "enabled_at": context.clock().isoformat()})


class StepRegistry:
    """Maps step names to actions and defines the workflow's step order"""

    def __init__(self, actions: Iterable[RecoveryStepAction]):
        self.actions: Dict[str, RecoveryStepAction] = {}
        for action in actions:
            self.register(action)

    def register(self, action: RecoveryStepAction) -> None:
        self.actions[action.name] = action

    def get(self, name: str) -> Optional[RecoveryStepAction]:
        return self.actions.get(name)

    @property
    def sequence(self) -> List[str]:
        return list(self.actions)

    def new_steps(self) -> List[RecoveryStep]:
        return [action.new_step() for action in self.actions.values()]

    def phase_for(self, name: str) -> WorkflowPhase:
        action = self.actions.get(name)
        return action.phase if action else WorkflowPhase.VALIDATION

    def estimate_seconds(self, names: Iterable[str]) -> float:
        return sum(
            self.actions[name].estimated_seconds if name in self.actions else 30.0
            for name in names
        )

    async def run(self, name: str, context: StepContext, service: str) -> StepResult:
        action = self.actions.get(name)
        if action is None:
            return StepResult(success=False, error=f"Unknown recovery step: {name}")
        try:
            return await action.execute(context, service)
        except Exception as e:
            logger.error(f"Recovery step {name} for {service} raised: {e}")
            return StepResult(success=False, error=str(e) or type(e).__name__)


def default_step_registry(stage_delay_seconds: float = 5.0) -> StepRegistry:
    return StepRegistry([
        ServiceValidationStep(),
        CircuitBreakerResetStep(),
        GradualTrafficIncreaseStep(stage_delay_seconds=stage_delay_seconds),
        FullRecoveryValidationStep(),
        MonitoringSetupStep(),
    ])


def _health_data(health) -> Dict[str, Any]:
    data = asdict(health)
    data["state"] = health.state.value
    if health.last_transition_time:
        data["last_transition_time"] = health.last_transition_time.isoformat()
    return data
