"""
Unit tests for health check evaluation and recovery triggers
"""

import asyncio

import pytest

from service_recovery import HealthCheckConfig, OrchestrationConfig, ProbeMethod
from service_recovery.config import FALLBACK_SERVICE, GEMINI_SERVICE
from service_recovery.exceptions import UnknownServiceError
from service_recovery.models import WorkflowPhase


class TestHealthCheckEvaluator:

    @pytest.mark.asyncio
    async def test_check_records_result(self, system, store):
        result = await system.evaluator.run_check(GEMINI_SERVICE)

        assert result.success
        assert not result.skipped
        latest = await store.latest_health_check(GEMINI_SERVICE)
        assert latest.success
        assert latest.check_type == ProbeMethod.API_CALL

    @pytest.mark.asyncio
    async def test_interval_not_met_skips(self, system, api_probe, clock):
        await system.evaluator.run_check(GEMINI_SERVICE)

        skipped = await system.evaluator.run_check(GEMINI_SERVICE)
        assert skipped.skipped
        assert skipped.reason == "interval_not_met"
        assert api_probe.calls == 1

        forced = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        assert not forced.skipped

        clock.advance(30)
        due = await system.evaluator.run_check(GEMINI_SERVICE)
        assert not due.skipped
        assert api_probe.calls == 3

    @pytest.mark.asyncio
    async def test_disabled_check_is_skipped(self, make_system):
        system = make_system(health_checks=[HealthCheckConfig(service="batch", enabled=False)])

        result = await system.evaluator.run_check("batch")

        assert result.skipped
        assert result.reason == "disabled"
        assert await system.evaluator.run_all_checks() == []

    @pytest.mark.asyncio
    async def test_unknown_service(self, system):
        with pytest.raises(UnknownServiceError):
            await system.evaluator.run_check("no_such_service")

    @pytest.mark.asyncio
    async def test_failures_trigger_recovery_once(self, system, api_probe, store):
        api_probe.set([False])

        first = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        assert not first.success
        assert not first.recovery_triggered
        assert await store.find_active_workflow(GEMINI_SERVICE) is None

        second = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        assert second.recovery_triggered
        workflow = await store.find_active_workflow(GEMINI_SERVICE)
        assert workflow.id == second.workflow_id

        third = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        assert not third.recovery_triggered
        assert len(await store.list_active_workflows()) == 1

    @pytest.mark.asyncio
    async def test_failures_reported_to_aggregator(self, system, api_probe):
        api_probe.set([False])

        await system.evaluator.run_check(GEMINI_SERVICE, forced=True)

        logs = await system.aggregator.query_error_logs(service=GEMINI_SERVICE)
        assert logs["total"] == 1
        assert logs["logs"][0].error.context.operation == "health_check"

    @pytest.mark.asyncio
    async def test_no_trigger_without_auto_recovery(self, make_system, api_probe, store):
        system = make_system(config=OrchestrationConfig(auto_recovery=False, service_delay_seconds=0))
        api_probe.set([False])

        for _ in range(3):
            result = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
            assert not result.recovery_triggered
        assert await store.find_active_workflow(GEMINI_SERVICE) is None

    @pytest.mark.asyncio
    async def test_successes_confirm_recovery(self, system, api_probe, store, sink):
        api_probe.set([False])
        await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        triggered = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)

        api_probe.set([True])
        results = [await system.evaluator.run_check(GEMINI_SERVICE, forced=True) for _ in range(3)]

        assert [r.recovery_detected for r in results] == [False, False, True]
        workflow = await store.get_workflow(triggered.workflow_id)
        assert workflow.phase == WorkflowPhase.MONITORING
        assert [m.workflow_id for m in sink.messages] == [triggered.workflow_id]

    @pytest.mark.asyncio
    async def test_successes_without_workflow_do_nothing(self, system, sink):
        for _ in range(3):
            result = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
            assert not result.recovery_detected
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_probe_timeout_is_a_failure(self, make_system):
        system = make_system(health_checks=[
            HealthCheckConfig(service="slow", method=ProbeMethod.CUSTOM, timeout_seconds=0.01)
        ])

        async def hang(config):
            await asyncio.sleep(5)

        system.probes.register_custom("slow", hang)
        result = await system.evaluator.run_check("slow")

        assert not result.success
        assert result.error.startswith("Health check timeout after")

    @pytest.mark.asyncio
    async def test_probe_exception_is_a_failure(self, make_system):
        system = make_system(health_checks=[
            HealthCheckConfig(service="broken", method=ProbeMethod.CUSTOM),
            HealthCheckConfig(service="fine", method=ProbeMethod.PING),
        ])

        async def explode(config):
            raise RuntimeError("probe exploded")

        system.probes.register_custom("broken", explode)
        results = await system.evaluator.run_all_checks()

        by_service = {r.service: r for r in results}
        assert by_service["broken"].error == "probe exploded"
        assert by_service["fine"].success

    @pytest.mark.asyncio
    async def test_missing_custom_probe_fails(self, make_system):
        system = make_system(health_checks=[HealthCheckConfig(service="ghost", method=ProbeMethod.CUSTOM)])

        result = await system.evaluator.run_check("ghost")

        assert not result.success
        assert "No custom probe" in result.error

    @pytest.mark.asyncio
    async def test_run_all_checks_covers_enabled_services(self, system):
        results = await system.evaluator.run_all_checks()

        assert {r.service for r in results} == {GEMINI_SERVICE, FALLBACK_SERVICE}
        assert all(r.success for r in results)
