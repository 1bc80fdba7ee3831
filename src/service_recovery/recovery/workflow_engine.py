"""
Per-service recovery workflows

A workflow walks the registered recovery steps in order. Each call to
``execute_step`` runs the current step once: success advances to the next
step, failure either schedules a retry or, once the step's retry budget is
spent, fails the whole workflow. Completing the last step moves the
workflow to ``monitoring`` and publishes a recovery notification.

At most one non-terminal workflow exists per service.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..exceptions import RecoveryFailedError, WorkflowConflictError, WorkflowNotFoundError
from ..messaging.redis_client import NotificationSink
from ..messaging.schemas import service_recovery_message
from ..models import RecoveryStep, RecoveryWorkflow, StepStatus, WorkflowPhase, elapsed_ms, utc_now
from ..error_recovery.circuit_breaker import CircuitBreakerManager
from ..error_recovery.error_classifier import ErrorAggregator
from ..storage.memory_store import RecoveryStore
from .steps import StepContext, StepRegistry, StepResult, default_step_registry

logger = logging.getLogger(__name__)


@dataclass
class InitiateResult:
    workflow_id: str
    created: bool


@dataclass
class StepExecution:
    """Outcome of one workflow tick"""
    workflow_id: str
    step_name: Optional[str] = None
    step_completed: bool = False
    will_retry: bool = False
    workflow_completed: bool = False
    workflow_failed: bool = False
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.workflow_completed or self.workflow_failed


@dataclass
class RecoveryResult:
    recovered: bool
    workflow_id: Optional[str] = None
    recovery_time_ms: Optional[int] = None


class RecoveryWorkflowEngine:
    """Creates and advances per-service recovery workflows"""

    def __init__(
        self,
        store: RecoveryStore,
        breakers: CircuitBreakerManager,
        step_context: StepContext,
        aggregator: ErrorAggregator,
        sink: NotificationSink,
        step_registry: Optional[StepRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable = asyncio.sleep,
        retry_delay_seconds: float = 10.0,
    ):
        self.store = store
        self.breakers = breakers
        self.step_context = step_context
        self.aggregator = aggregator
        self.sink = sink
        self.steps = step_registry or default_step_registry()
        self.clock = clock
        self.sleep = sleep
        self.retry_delay_seconds = retry_delay_seconds
        self._service_locks: Dict[str, asyncio.Lock] = {}
        self._driver_locks: Dict[str, asyncio.Lock] = {}
        self._state_locks: Dict[str, asyncio.Lock] = {}
        self._terminal_events: Dict[str, asyncio.Event] = {}

    async def initiate_recovery(self, service: str, auto_recovery: bool = True) -> InitiateResult:
        """Start a workflow for the service, or return the one already in flight"""
        lock = self._lock_for(self._service_locks, service)
        async with lock:
            existing = await self.store.find_active_workflow(service)
            if existing:
                logger.info(f"Recovery workflow {existing.id} already active for {service}")
                return InitiateResult(workflow_id=existing.id, created=False)

            now = self.clock()
            steps = self.steps.new_steps()
            workflow = RecoveryWorkflow(
                service=service,
                started_at=now,
                last_update=now,
                steps=steps,
                auto_recovery_enabled=auto_recovery,
                estimated_time_remaining_seconds=self.steps.estimate_seconds(s.name for s in steps),
            )
            try:
                await self.store.insert_workflow(workflow)
            except WorkflowConflictError as e:
                logger.info(f"Recovery workflow {e.existing_id} was created concurrently for {service}")
                return InitiateResult(workflow_id=e.existing_id, created=False)

        self._terminal_event(workflow.id)
        logger.info(f"Recovery workflow {workflow.id} created for {service}")
        return InitiateResult(workflow_id=workflow.id, created=True)

    async def execute_step(self, workflow_id: str) -> StepExecution:
        """Run the current step of a workflow once

        Drivers of one workflow take turns. The step itself runs outside the
        state lock so ``mark_recovered`` and ``abandon`` can end the workflow
        meanwhile; a result arriving for a workflow that is already terminal
        is discarded.
        """
        async with self._lock_for(self._driver_locks, workflow_id):
            async with self._lock_for(self._state_locks, workflow_id):
                workflow = await self._get(workflow_id)
                if workflow.is_terminal:
                    return self._terminal_execution(workflow)

                step = workflow.current_step
                if step is None:
                    await self._complete(workflow)
                    return StepExecution(workflow_id=workflow_id, workflow_completed=True)

                started = self.clock()
                step.status = StepStatus.IN_PROGRESS
                step.started_at = started
                workflow.phase = self.steps.phase_for(step.name)
                workflow.last_update = started
                await self.store.save_workflow(workflow)
                step_index = workflow.current_step_index

            logger.debug(f"Executing step {step.name} for {workflow.service} (attempt {step.retry_count + 1})")
            result = await self.steps.run(step.name, self.step_context, workflow.service)

            async with self._lock_for(self._state_locks, workflow_id):
                workflow = await self._get(workflow_id)
                if workflow.is_terminal:
                    logger.info(
                        f"Workflow {workflow_id} reached {workflow.phase.value} while step {step.name} "
                        f"was running, discarding its result"
                    )
                    return self._terminal_execution(workflow, step_name=step.name)
                return await self._apply_result(workflow, workflow.steps[step_index], started, result)

    async def _apply_result(
        self, workflow: RecoveryWorkflow, step: RecoveryStep, started: datetime, result: StepResult
    ) -> StepExecution:
        finished = self.clock()
        step.completed_at = finished
        step.duration_ms = elapsed_ms(started, finished)
        step.data = result.data
        step.error = result.error
        workflow.last_update = finished
        execution = StepExecution(workflow_id=workflow.id, step_name=step.name, error=result.error)

        if result.success:
            step.status = StepStatus.COMPLETED
            execution.step_completed = True
            workflow.current_step_index += 1
            self._refresh_progress(workflow)
            if workflow.current_step is None:
                await self._complete(workflow)
                execution.workflow_completed = True
            else:
                await self.store.save_workflow(workflow)
            return execution

        if step.retry_count < step.max_retries:
            step.retry_count += 1
            step.status = StepStatus.PENDING
            self._refresh_progress(workflow)
            await self.store.save_workflow(workflow)
            logger.warning(
                f"Step {step.name} failed for {workflow.service} "
                f"(retry {step.retry_count}/{step.max_retries}): {result.error}"
            )
            execution.will_retry = True
            return execution

        step.status = StepStatus.FAILED
        reason = f"step {step.name} failed after {step.retry_count + 1} attempts: {result.error}"
        await self._fail(workflow, reason)
        execution.workflow_failed = True
        return execution

    async def run_until_terminal(self, workflow_id: str, retry_delay_seconds: Optional[float] = None) -> RecoveryWorkflow:
        """Drive a workflow to monitoring or failed, pausing before each retry"""
        delay = self.retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
        while True:
            execution = await self.execute_step(workflow_id)
            if execution.terminal:
                return await self._get(workflow_id)
            if execution.will_retry and delay > 0:
                await self.sleep(delay)

    async def wait_for_terminal(self, workflow_id: str, timeout: Optional[float] = None) -> RecoveryWorkflow:
        """Wait for the workflow's completion signal"""
        workflow = await self._get(workflow_id)
        if workflow.is_terminal:
            return workflow
        await asyncio.wait_for(self._terminal_event(workflow_id).wait(), timeout)
        return await self._get(workflow_id)

    async def mark_recovered(self, service: str) -> RecoveryResult:
        """Confirm recovery of a service from outside the step sequence"""
        active = await self.store.find_active_workflow(service)
        await self.breakers.force_close(service)
        if active is None:
            logger.info(f"Service {service} recovered with no active workflow")
            return RecoveryResult(recovered=False)

        async with self._lock_for(self._state_locks, active.id):
            workflow = await self._get(active.id)
            if workflow.is_terminal:
                logger.info(f"Workflow {workflow.id} for {service} already reached {workflow.phase.value}")
                return RecoveryResult(recovered=False)
            await self._complete(workflow)

        logger.info(f"Service {service} marked as recovered")
        return RecoveryResult(
            recovered=True,
            workflow_id=workflow.id,
            recovery_time_ms=elapsed_ms(workflow.started_at, workflow.last_update),
        )

    async def abandon(self, workflow_id: str, reason: str) -> RecoveryWorkflow:
        """Fail a workflow that is no longer being driven"""
        async with self._lock_for(self._state_locks, workflow_id):
            workflow = await self._get(workflow_id)
            if workflow.is_terminal:
                return workflow
            step = workflow.current_step
            if step is not None and step.status != StepStatus.COMPLETED:
                step.status = StepStatus.FAILED
                step.error = reason
            await self._fail(workflow, reason)
            return workflow

    async def get_workflow_details(self, workflow_id: str) -> Dict[str, Any]:
        workflow = await self._get(workflow_id)
        now = self.clock()
        health_checks = await self.store.health_checks_since(workflow.service, workflow.started_at, limit=20)
        current_health = await self.breakers.get_health(workflow.service)

        durations = [
            s.duration_ms for s in workflow.steps
            if s.status == StepStatus.COMPLETED and s.duration_ms
        ]
        remaining = workflow.estimated_time_remaining_seconds
        end = workflow.last_update if workflow.is_terminal else now

        return {
            "workflow": workflow,
            "health_checks": health_checks,
            "current_health": asdict(current_health),
            "analytics": {
                "total_duration_seconds": (end - workflow.started_at).total_seconds(),
                "steps_completed": sum(1 for s in workflow.steps if s.status == StepStatus.COMPLETED),
                "steps_total": len(workflow.steps),
                "avg_step_duration_ms": sum(durations) / len(durations) if durations else 0,
                "next_estimated_completion": now + timedelta(seconds=remaining) if remaining else None,
            },
        }

    async def _get(self, workflow_id: str) -> RecoveryWorkflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    @staticmethod
    def _lock_for(locks: Dict[str, asyncio.Lock], key: str) -> asyncio.Lock:
        return locks.setdefault(key, asyncio.Lock())

    @staticmethod
    def _terminal_execution(workflow: RecoveryWorkflow, step_name: Optional[str] = None) -> StepExecution:
        return StepExecution(
            workflow_id=workflow.id,
            step_name=step_name,
            workflow_completed=workflow.phase == WorkflowPhase.MONITORING,
            workflow_failed=workflow.phase == WorkflowPhase.FAILED,
            error=workflow.error,
        )

    def _terminal_event(self, workflow_id: str) -> asyncio.Event:
        return self._terminal_events.setdefault(workflow_id, asyncio.Event())

    def _refresh_progress(self, workflow: RecoveryWorkflow) -> None:
        completed = sum(1 for s in workflow.steps if s.status == StepStatus.COMPLETED)
        workflow.progress = round(completed / len(workflow.steps) * 100) if workflow.steps else 100
        remaining = [s.name for s in workflow.steps[workflow.current_step_index:]]
        workflow.estimated_time_remaining_seconds = self.steps.estimate_seconds(remaining)

    async def _complete(self, workflow: RecoveryWorkflow) -> None:
        workflow.phase = WorkflowPhase.MONITORING
        workflow.progress = 100
        workflow.last_update = self.clock()
        workflow.estimated_time_remaining_seconds = 0
        await self.store.save_workflow(workflow)
        self._terminal_event(workflow.id).set()

        recovery_time_ms = elapsed_ms(workflow.started_at, workflow.last_update)
        logger.info(f"Service {workflow.service} recovered in {recovery_time_ms}ms (workflow {workflow.id})")

        message = service_recovery_message(
            workflow.service,
            workflow.id,
            recovery_time_ms,
            steps_completed=sum(1 for s in workflow.steps if s.status == StepStatus.COMPLETED),
        )
        if not await self.sink.publish_recovery(message):
            logger.warning(f"Recovery notification for {workflow.service} was not delivered")

    async def _fail(self, workflow: RecoveryWorkflow, reason: str) -> None:
        workflow.phase = WorkflowPhase.FAILED
        workflow.error = reason
        workflow.last_update = self.clock()
        self._refresh_progress(workflow)
        workflow.estimated_time_remaining_seconds = 0
        await self.store.save_workflow(workflow)
        self._terminal_event(workflow.id).set()

        error = RecoveryFailedError(workflow.service, reason)
        logger.error(f"{error} (workflow {workflow.id})")
        await self.aggregator.report(
            error,
            service=workflow.service,
            operation="recovery_workflow",
            metadata={"workflow_id": workflow.id, "recovery_action": "auto_recovery"},
        )
