"""
Unit tests for per-service recovery workflows
"""

import asyncio

import pytest

from service_recovery.config import GEMINI_SERVICE
from service_recovery.exceptions import WorkflowNotFoundError, WorkflowTerminatedError
from service_recovery.models import StepStatus, WorkflowPhase, elapsed_ms
from service_recovery.recovery import RecoveryStepAction, StepRegistry, StepResult


async def degrade(system, service=GEMINI_SERVICE, failures=2):
    for _ in range(failures):
        await system.breakers.record_failure(service, "503 service unavailable")


class UndeliverableSink:
    def __init__(self):
        self.attempts = 0

    async def publish_recovery(self, message):
        self.attempts += 1
        return False


class CountingStep(RecoveryStepAction):
    name = "counting"
    max_retries = 0

    def __init__(self):
        self.runs = 0

    async def execute(self, context, service):
        self.runs += 1
        return StepResult(success=True)


class GatedStep(RecoveryStepAction):
    """Blocks inside execute until released"""
    name = "gated"
    max_retries = 0

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.runs = 0

    async def execute(self, context, service):
        self.runs += 1
        self.started.set()
        await self.release.wait()
        return StepResult(success=True)


class TestInitiateRecovery:

    @pytest.mark.asyncio
    async def test_same_workflow_returned_while_active(self, system):
        first = await system.engine.initiate_recovery(GEMINI_SERVICE)
        second = await system.engine.initiate_recovery(GEMINI_SERVICE)

        assert first.created
        assert not second.created
        assert second.workflow_id == first.workflow_id

    @pytest.mark.asyncio
    async def test_concurrent_initiation_creates_one_workflow(self, system, store):
        results = await asyncio.gather(*(system.engine.initiate_recovery(GEMINI_SERVICE) for _ in range(5)))

        assert len({r.workflow_id for r in results}) == 1
        assert sum(r.created for r in results) == 1
        assert len(await store.list_active_workflows()) == 1

    @pytest.mark.asyncio
    async def test_new_workflow_allowed_after_terminal(self, system):
        first = await system.engine.initiate_recovery(GEMINI_SERVICE)
        await system.engine.abandon(first.workflow_id, "operator cancelled")

        second = await system.engine.initiate_recovery(GEMINI_SERVICE)

        assert second.created
        assert second.workflow_id != first.workflow_id

    @pytest.mark.asyncio
    async def test_initial_workflow_shape(self, system, store, clock):
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
        workflow = await store.get_workflow(initiated.workflow_id)

        assert workflow.phase == WorkflowPhase.DETECTION
        assert workflow.started_at == clock()
        assert [s.name for s in workflow.steps] == [
            "service_validation",
            "circuit_breaker_reset",
            "gradual_traffic_increase",
            "full_recovery_validation",
            "monitoring_setup",
        ]
        assert [s.max_retries for s in workflow.steps] == [3, 1, 5, 3, 1]
        assert workflow.estimated_time_remaining_seconds == 235.0


class TestExecuteStep:

    @pytest.mark.asyncio
    async def test_successful_step_advances(self, system, store):
        await degrade(system)
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)

        execution = await system.engine.execute_step(initiated.workflow_id)

        assert execution.step_name == "service_validation"
        assert execution.step_completed
        workflow = await store.get_workflow(initiated.workflow_id)
        assert workflow.current_step_index == 1
        assert workflow.progress == 20
        assert workflow.phase == WorkflowPhase.VALIDATION
        assert workflow.estimated_time_remaining_seconds == 205.0
        assert workflow.steps[0].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_full_run_reaches_monitoring(self, system, store, sink, clock):
        await degrade(system)
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
        clock.advance(90)

        workflow = await system.engine.run_until_terminal(initiated.workflow_id)

        assert workflow.phase == WorkflowPhase.MONITORING
        assert workflow.progress == 100
        assert all(s.status == StepStatus.COMPLETED for s in workflow.steps)
        assert (await system.breakers.get_health(GEMINI_SERVICE)).is_healthy
        assert await store.find_active_workflow(GEMINI_SERVICE) is None

        assert len(sink.messages) == 1
        message = sink.messages[0]
        assert message.workflow_id == workflow.id
        assert message.recovery_time_ms == elapsed_ms(workflow.started_at, workflow.last_update) == 90000
        assert message.data["steps_completed"] == 5

    @pytest.mark.asyncio
    async def test_retry_exhaustion_fails_workflow(self, system, store, aggregator):
        # A healthy service fails validation on every attempt
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)

        executions = [await system.engine.execute_step(initiated.workflow_id) for _ in range(4)]

        assert [e.will_retry for e in executions] == [True, True, True, False]
        assert executions[-1].workflow_failed
        workflow = await store.get_workflow(initiated.workflow_id)
        assert workflow.phase == WorkflowPhase.FAILED
        assert workflow.steps[0].status == StepStatus.FAILED
        assert workflow.steps[0].retry_count == 3
        assert "after 4 attempts" in workflow.error

        logs = await aggregator.query_error_logs(service=GEMINI_SERVICE)
        assert [log.error.context.operation for log in logs["logs"]] == ["recovery_workflow"]

    @pytest.mark.asyncio
    async def test_failing_traffic_ramp_fails_workflow(self, system, api_probe, sink):
        await degrade(system)
        api_probe.set([False])
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)

        workflow = await system.engine.run_until_terminal(initiated.workflow_id)

        assert workflow.phase == WorkflowPhase.FAILED
        ramp = workflow.steps[2]
        assert ramp.name == "gradual_traffic_increase"
        assert ramp.status == StepStatus.FAILED
        assert ramp.retry_count == 5
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_terminal_workflow_is_not_advanced(self, system, store):
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
        await system.engine.abandon(initiated.workflow_id, "operator cancelled")

        execution = await system.engine.execute_step(initiated.workflow_id)

        assert execution.workflow_failed
        assert execution.step_name is None
        workflow = await store.get_workflow(initiated.workflow_id)
        assert workflow.error == "operator cancelled"
        assert workflow.steps[0].status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, system):
        with pytest.raises(WorkflowNotFoundError):
            await system.engine.execute_step("wf_missing")

    @pytest.mark.asyncio
    async def test_custom_step_registry(self, make_system):
        step = CountingStep()
        system = make_system(step_registry=StepRegistry([step]))
        initiated = await system.engine.initiate_recovery("batch")

        workflow = await system.engine.run_until_terminal(initiated.workflow_id)

        assert step.runs == 1
        assert workflow.phase == WorkflowPhase.MONITORING

    @pytest.mark.asyncio
    async def test_undelivered_notification_still_completes(self, make_system):
        sink = UndeliverableSink()
        system = make_system(sink=sink, step_registry=StepRegistry([CountingStep()]))
        initiated = await system.engine.initiate_recovery("batch")

        workflow = await system.engine.run_until_terminal(initiated.workflow_id)

        assert workflow.phase == WorkflowPhase.MONITORING
        assert sink.attempts == 1


class TestWorkflowLifecycle:

    @pytest.mark.asyncio
    async def test_wait_for_terminal_is_signalled(self, system):
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
        waiter = asyncio.create_task(system.engine.wait_for_terminal(initiated.workflow_id, timeout=1))
        await asyncio.sleep(0)

        await system.engine.abandon(initiated.workflow_id, "cancelled")

        workflow = await waiter
        assert workflow.phase == WorkflowPhase.FAILED

    @pytest.mark.asyncio
    async def test_mark_recovered(self, system, sink):
        await system.breakers.force_open(GEMINI_SERVICE, "outage")
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)

        result = await system.engine.mark_recovered(GEMINI_SERVICE)

        assert result.recovered
        assert result.workflow_id == initiated.workflow_id
        assert (await system.breakers.get_health(GEMINI_SERVICE)).is_healthy
        assert len(sink.messages) == 1

    @pytest.mark.asyncio
    async def test_mark_recovered_without_workflow(self, system, sink):
        await system.breakers.force_open(GEMINI_SERVICE, "outage")

        result = await system.engine.mark_recovered(GEMINI_SERVICE)

        assert not result.recovered
        assert (await system.breakers.get_health(GEMINI_SERVICE)).is_healthy
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_workflow_details(self, system, clock):
        await degrade(system)
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
        await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        await system.engine.execute_step(initiated.workflow_id)
        clock.advance(45)

        details = await system.engine.get_workflow_details(initiated.workflow_id)

        assert details["workflow"].id == initiated.workflow_id
        assert len(details["health_checks"]) == 1
        assert details["analytics"]["steps_completed"] == 1
        assert details["analytics"]["steps_total"] == 5
        assert details["analytics"]["total_duration_seconds"] == 45.0
        assert "failure_rate" in details["current_health"]


class TestConcurrentDrivers:

    @pytest.fixture
    def gate(self):
        return GatedStep()

    @pytest.fixture
    def counting(self):
        return CountingStep()

    @pytest.fixture
    def gated_system(self, make_system, gate, counting):
        return make_system(step_registry=StepRegistry([gate, counting]))

    @pytest.mark.asyncio
    async def test_mark_recovered_during_step_is_not_undone(self, gated_system, gate, counting, store, sink):
        first = await gated_system.engine.initiate_recovery("batch")
        driver = asyncio.create_task(gated_system.engine.run_until_terminal(first.workflow_id))
        await gate.started.wait()

        result = await gated_system.engine.mark_recovered("batch")
        second = await gated_system.engine.initiate_recovery("batch")
        gate.release.set()
        workflow = await driver

        assert result.recovered
        assert second.created
        assert workflow.phase == WorkflowPhase.MONITORING
        assert counting.runs == 0
        assert len(sink.messages) == 1
        assert [w.id for w in await store.list_active_workflows()] == [second.workflow_id]

    @pytest.mark.asyncio
    async def test_drivers_take_turns(self, gated_system, gate, counting, sink):
        initiated = await gated_system.engine.initiate_recovery("batch")
        first = asyncio.create_task(gated_system.engine.execute_step(initiated.workflow_id))
        await gate.started.wait()
        second = asyncio.create_task(gated_system.engine.execute_step(initiated.workflow_id))
        await asyncio.sleep(0)

        assert counting.runs == 0
        gate.release.set()
        executions = [await first, await second]

        assert [e.step_name for e in executions] == ["gated", "counting"]
        assert gate.runs == 1
        assert executions[1].workflow_completed
        assert len(sink.messages) == 1

    @pytest.mark.asyncio
    async def test_abandon_during_step_discards_result(self, gated_system, gate, counting, sink):
        initiated = await gated_system.engine.initiate_recovery("batch")
        driver = asyncio.create_task(gated_system.engine.run_until_terminal(initiated.workflow_id))
        await gate.started.wait()

        await gated_system.engine.abandon(initiated.workflow_id, "orchestration timeout")
        gate.release.set()
        workflow = await driver

        assert workflow.phase == WorkflowPhase.FAILED
        assert workflow.error == "orchestration timeout"
        assert workflow.steps[0].status == StepStatus.FAILED
        assert counting.runs == 0
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_store_refuses_to_reopen_terminal_workflow(self, system, store):
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
        stale = await store.get_workflow(initiated.workflow_id)
        await system.engine.abandon(initiated.workflow_id, "cancelled")

        with pytest.raises(WorkflowTerminatedError):
            await store.save_workflow(stale)

        assert (await store.get_workflow(initiated.workflow_id)).phase == WorkflowPhase.FAILED
