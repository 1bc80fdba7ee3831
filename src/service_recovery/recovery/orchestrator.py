"""
Cross-service recovery orchestration

Builds a phased recovery plan from the service dependency table and drives
one recovery workflow per service through it:

    pre_recovery_validation      reject if too many recoveries are active,
                                 drop services that are already healthy
    critical_service_recovery    one service at a time, abort on failure
    high_priority_recovery       concurrent
    remaining_services_recovery  concurrent
    post_recovery_validation     every recovered service must be healthy
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config import CRITICALITY_ORDER, Criticality, OrchestrationConfig, ServiceDependency
from ..error_recovery.circuit_breaker import CircuitBreakerManager
from ..error_recovery.error_classifier import ErrorAggregator
from ..exceptions import (
    DependencyFailedError,
    MaxConcurrentRecoveriesError,
    OrchestrationAbortedError,
    OrchestrationDisabledError,
    PostRecoveryValidationError,
    RecoveryError,
    RecoveryFailedError,
    RecoveryTimeoutError,
)
from ..models import (
    OrchestrationSession,
    RecoveryPhase,
    RecoveryPlan,
    RecoveryWorkflow,
    SessionStatus,
    WorkflowPhase,
    utc_now,
)
from ..storage.memory_store import RecoveryStore
from .workflow_engine import InitiateResult, RecoveryWorkflowEngine

logger = logging.getLogger(__name__)

PRE_RECOVERY_VALIDATION = "pre_recovery_validation"
CRITICAL_SERVICE_RECOVERY = "critical_service_recovery"
HIGH_PRIORITY_RECOVERY = "high_priority_recovery"
REMAINING_SERVICES_RECOVERY = "remaining_services_recovery"
POST_RECOVERY_VALIDATION = "post_recovery_validation"

SECONDS_PER_SERVICE = 120.0
ORCHESTRATION_OVERHEAD_SECONDS = 60.0


class RecoveryOrchestrator:
    """Plans and executes recovery across dependent services"""

    def __init__(
        self,
        engine: RecoveryWorkflowEngine,
        store: RecoveryStore,
        breakers: CircuitBreakerManager,
        aggregator: ErrorAggregator,
        dependencies: Iterable[ServiceDependency],
        config: Optional[OrchestrationConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable = asyncio.sleep,
    ):
        self.engine = engine
        self.store = store
        self.breakers = breakers
        self.aggregator = aggregator
        self.dependencies: List[ServiceDependency] = list(dependencies)
        self.config = config or OrchestrationConfig()
        self.clock = clock
        self.sleep = sleep

    def get_dependency(self, service: str) -> ServiceDependency:
        for dependency in self.dependencies:
            if dependency.service == service:
                return dependency
        return ServiceDependency(service=service)

    def get_criticality(self, service: str) -> Criticality:
        return self.get_dependency(service).criticality

    def sort_services(self, services: Iterable[str]) -> List[str]:
        """Order by criticality, then recovery priority, then declaration order"""
        unique = list(dict.fromkeys(services))
        declared = {d.service: index for index, d in enumerate(self.dependencies)}
        return sorted(
            unique,
            key=lambda s: (
                CRITICALITY_ORDER[self.get_criticality(s)],
                self.get_dependency(s).recovery_priority,
                declared.get(s, len(declared)),
            )
        )

    def _order_by_dependencies(self, services: List[str]) -> List[str]:
        # Stable: a service moves back only as far as needed to follow its same-phase dependencies
        remaining = list(services)
        ordered: List[str] = []
        while remaining:
            for service in remaining:
                pending = [
                    d for d in self.get_dependency(service).depends_on
                    if d in remaining and d != service
                ]
                if not pending:
                    break
            else:
                service = remaining[0]
                logger.warning(f"Dependency cycle among {remaining}, recovering {service} first")
            ordered.append(service)
            remaining.remove(service)
        return ordered

    def plan_recovery(self, services: Iterable[str]) -> RecoveryPlan:
        sorted_services = self.sort_services(services)

        def phase_services(*criticalities: Criticality) -> List[str]:
            selected = [s for s in sorted_services if self.get_criticality(s) in criticalities]
            if self.config.dependency_aware:
                selected = self._order_by_dependencies(selected)
            return selected

        phases = [
            RecoveryPhase(
                name=PRE_RECOVERY_VALIDATION,
                description="Validate system state before recovery",
                estimated_duration_seconds=30.0,
                parallel=False,
                critical=True,
            ),
            RecoveryPhase(
                name=CRITICAL_SERVICE_RECOVERY,
                description="Recover critical services first",
                services=phase_services(Criticality.CRITICAL),
                estimated_duration_seconds=180.0,
                parallel=False,
                critical=True,
            ),
            RecoveryPhase(
                name=HIGH_PRIORITY_RECOVERY,
                description="Recover high priority services",
                services=phase_services(Criticality.HIGH),
                estimated_duration_seconds=120.0,
                parallel=True,
                critical=False,
            ),
            RecoveryPhase(
                name=REMAINING_SERVICES_RECOVERY,
                description="Recover remaining services",
                services=phase_services(Criticality.MEDIUM, Criticality.LOW),
                estimated_duration_seconds=90.0,
                parallel=True,
                critical=False,
            ),
            RecoveryPhase(
                name=POST_RECOVERY_VALIDATION,
                description="Validate full system recovery",
                estimated_duration_seconds=60.0,
                parallel=False,
                critical=True,
            ),
        ]
        phases = [phase for phase in phases if phase.services or phase.critical]

        critical_count = sum(1 for s in sorted_services if self.get_criticality(s) == Criticality.CRITICAL)
        if critical_count > 1:
            risk = "high"
        elif critical_count == 1:
            risk = "medium"
        else:
            risk = "low"

        return RecoveryPlan(
            phases=phases,
            estimated_duration_seconds=sum(phase.estimated_duration_seconds for phase in phases),
            risk_assessment=risk,
            dependencies=[d for d in self.dependencies if d.service in sorted_services],
        )

    def estimate_completion(self, services: List[str], start: datetime) -> datetime:
        return start + timedelta(seconds=len(services) * SECONDS_PER_SERVICE + ORCHESTRATION_OVERHEAD_SECONDS)

    async def assess_system_health(self, services: Iterable[str]) -> Dict[str, Any]:
        checks = []
        for service in services:
            health = await self.breakers.get_health(service)
            checks.append({
                "service": service,
                "is_healthy": health.is_healthy,
                "failure_rate": health.failure_rate,
                "criticality": self.get_criticality(service).value,
            })

        total = len(checks)
        healthy = sum(1 for c in checks if c["is_healthy"])
        return {
            "overall_health": round(healthy / total * 100) if total else 100,
            "healthy_services": healthy,
            "total_services": total,
            "critical_unhealthy": sum(
                1 for c in checks if not c["is_healthy"] and c["criticality"] == Criticality.CRITICAL.value
            ),
            "high_priority_unhealthy": sum(
                1 for c in checks if not c["is_healthy"] and c["criticality"] == Criticality.HIGH.value
            ),
            "avg_failure_rate": sum(c["failure_rate"] for c in checks) / total if total else 0.0,
            "services": checks,
        }

    async def start_system_recovery(
        self, services: Optional[List[str]] = None, force: bool = False
    ) -> Dict[str, Any]:
        """Assess health, then plan and execute recovery when it is needed"""
        if not self.config.enabled and not force:
            raise OrchestrationDisabledError()

        services = list(dict.fromkeys(services or [d.service for d in self.dependencies]))
        system_health = await self.assess_system_health(services)

        if system_health["overall_health"] > self.config.healthy_threshold_percent and not force:
            logger.info(f"System health {system_health['overall_health']}%, recovery not needed")
            return {
                "session_id": None,
                "message": "System health is good, recovery not needed",
                "system_health": system_health,
            }

        now = self.clock()
        session = OrchestrationSession(
            started_at=now,
            last_update=now,
            config=self.config.model_dump(),
            planned_services=services,
            estimated_completion=self.estimate_completion(services, now),
        )
        await self.store.save_session(session)

        plan = self.plan_recovery(services)
        session.current_phase = "dependency_analysis"
        session.recovery_plan = plan
        session.last_update = self.clock()
        await self.store.save_session(session)
        logger.info(
            f"Orchestration {session.session_id} planned for {len(services)} services "
            f"({plan.risk_assessment} risk, ~{plan.estimated_duration_seconds:.0f}s)"
        )

        session = await self.execute(plan, session)
        return {
            "session_id": session.session_id,
            "session": session,
            "recovery_plan": plan,
            "estimated_completion": session.estimated_completion,
            "system_health": system_health,
        }

    async def execute(self, plan: RecoveryPlan, session: Optional[OrchestrationSession] = None) -> OrchestrationSession:
        """Run every phase of the plan; failures are recorded on the session and re-raised"""
        now = self.clock()
        if session is None:
            session = OrchestrationSession(
                started_at=now,
                last_update=now,
                config=self.config.model_dump(),
                planned_services=plan.services,
                estimated_completion=self.estimate_completion(plan.services, now),
            )
        session.status = SessionStatus.EXECUTING
        session.recovery_plan = plan
        session.last_update = now
        await self.store.save_session(session)

        index = 0
        try:
            while index < len(plan.phases):
                phase = plan.phases[index]
                session.current_phase = phase.name
                session.last_update = self.clock()
                await self.store.save_session(session)
                logger.info(f"Orchestration {session.session_id} starting phase {phase.name}: {phase.services}")

                if phase.name == PRE_RECOVERY_VALIDATION:
                    plan = await self._validate_pre_recovery(session, plan)
                elif phase.name == POST_RECOVERY_VALIDATION:
                    await self._validate_post_recovery(session)
                elif phase.parallel:
                    await self._recover_parallel(session, phase)
                else:
                    await self._recover_sequential(session, phase)
                index += 1

        except Exception as e:
            now = self.clock()
            session.status = SessionStatus.FAILED
            session.current_phase = "error"
            session.error = str(e)
            session.last_update = now
            session.completed_at = now
            await self.store.save_session(session)
            logger.error(f"Orchestration {session.session_id} failed: {e}")
            await self.aggregator.report(
                e,
                service="orchestration",
                operation="orchestration",
                metadata={"session_id": session.session_id, "phase": plan.phases[index].name if index < len(plan.phases) else None},
            )
            raise

        now = self.clock()
        session.status = SessionStatus.COMPLETED
        session.current_phase = "completed"
        session.progress = 100
        session.last_update = now
        session.completed_at = now
        await self.store.save_session(session)
        logger.info(
            f"Orchestration {session.session_id} completed: "
            f"{len(session.completed_services)} recovered, {len(session.failed_services)} failed"
        )
        return session

    async def _validate_pre_recovery(self, session: OrchestrationSession, plan: RecoveryPlan) -> RecoveryPlan:
        active = await self.store.list_active_workflows()
        if len(active) >= self.config.max_concurrent_recoveries:
            raise MaxConcurrentRecoveriesError(len(active), self.config.max_concurrent_recoveries)

        healthy = []
        for service in session.planned_services:
            health = await self.breakers.get_health(service)
            if health.is_healthy:
                healthy.append(service)

        if not healthy:
            return plan

        logger.info(f"Skipping already healthy services: {', '.join(healthy)}")
        session.planned_services = [s for s in session.planned_services if s not in healthy]
        phases = [
            phase.model_copy(update={"services": [s for s in phase.services if s not in healthy]})
            for phase in plan.phases
        ]
        plan = plan.model_copy(update={
            "phases": [phase for phase in phases if phase.services or phase.critical]
        })
        session.recovery_plan = plan
        session.last_update = self.clock()
        await self.store.save_session(session)
        return plan

    async def _validate_post_recovery(self, session: OrchestrationSession) -> None:
        unhealthy = []
        for service in session.completed_services:
            health = await self.breakers.get_health(service)
            if not health.is_healthy:
                unhealthy.append(service)
        if unhealthy:
            raise PostRecoveryValidationError(unhealthy)

    async def _recover_sequential(self, session: OrchestrationSession, phase: RecoveryPhase) -> None:
        for position, service in enumerate(phase.services):
            try:
                await self._recover_service(session, service)
            except RecoveryError as e:
                await self._record_failure(session, service, e)
                if self.get_criticality(service) == Criticality.CRITICAL:
                    raise OrchestrationAbortedError(service, str(e)) from e

            if position < len(phase.services) - 1 and self.config.service_delay_seconds > 0:
                logger.debug(f"Waiting {self.config.service_delay_seconds:.0f}s before next service")
                await self.sleep(self.config.service_delay_seconds)

    async def _recover_parallel(self, session: OrchestrationSession, phase: RecoveryPhase) -> None:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_recoveries)

        async def recover(service: str) -> bool:
            async with semaphore:
                try:
                    await self._recover_service(session, service)
                    return True
                except RecoveryError as e:
                    await self._record_failure(session, service, e)
                    return False

        results = await asyncio.gather(*(recover(service) for service in phase.services))
        logger.info(f"Phase {phase.name}: {sum(results)}/{len(results)} services recovered")

    async def _recover_service(self, session: OrchestrationSession, service: str) -> RecoveryWorkflow:
        dependency = self.get_dependency(service)
        if not dependency.can_recover_independently:
            failed = [d for d in dependency.depends_on if d in session.failed_services]
            if failed:
                raise DependencyFailedError(service, failed)

        initiated = await self.engine.initiate_recovery(service, auto_recovery=self.config.auto_recovery)
        try:
            workflow = await asyncio.wait_for(
                self._await_workflow(initiated),
                timeout=self.config.recovery_timeout_seconds
            )
        except asyncio.TimeoutError:
            error = RecoveryTimeoutError(service, self.config.recovery_timeout_seconds)
            await self.engine.abandon(initiated.workflow_id, str(error))
            raise error

        if workflow.phase == WorkflowPhase.FAILED:
            raise RecoveryFailedError(service, workflow.error or "")

        session.completed_services.append(service)
        self._update_progress(session)
        await self.store.save_session(session)
        logger.info(f"Service {service} recovered during orchestration {session.session_id}")
        return workflow

    async def _await_workflow(self, initiated: InitiateResult) -> RecoveryWorkflow:
        if initiated.created:
            return await self.engine.run_until_terminal(
                initiated.workflow_id,
                retry_delay_seconds=self.config.poll_interval_seconds
            )
        # Already driven by whoever started it
        return await self.engine.wait_for_terminal(initiated.workflow_id)

    async def _record_failure(self, session: OrchestrationSession, service: str, error: Exception) -> None:
        session.failed_services.append(service)
        self._update_progress(session)
        await self.store.save_session(session)
        logger.error(f"Service recovery failed during orchestration {session.session_id}: {error}")
        await self.aggregator.report(
            error,
            service=service,
            operation="orchestrated_recovery",
            metadata={"session_id": session.session_id},
        )

    def _update_progress(self, session: OrchestrationSession) -> None:
        processed = len(session.completed_services) + len(session.failed_services)
        planned = len(session.planned_services)
        session.progress = min(100, round(processed / planned * 100)) if planned else 100
        session.last_update = self.clock()
