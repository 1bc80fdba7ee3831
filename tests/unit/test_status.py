"""
Unit tests for recovery status and metrics
"""

import pytest

from service_recovery.config import FALLBACK_SERVICE, GEMINI_SERVICE
from service_recovery.exceptions import OrchestrationNotFoundError
from service_recovery.models import SessionStatus


async def fail_recovery(system):
    # A healthy service exhausts its validation retries
    initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
    return await system.engine.run_until_terminal(initiated.workflow_id)


async def complete_recovery(system, clock, seconds=0):
    await system.breakers.force_open(GEMINI_SERVICE, "outage")
    initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)
    await system.engine.execute_step(initiated.workflow_id)
    clock.advance(seconds)
    return await system.engine.run_until_terminal(initiated.workflow_id)


class TestOrchestrationStatus:

    @pytest.mark.asyncio
    async def test_quiet_system(self, system):
        status = await system.status.get_orchestration_status()

        assert status["state"] is None
        assert status["metrics"]["active_recoveries"] == 0
        assert status["recommendations"] == ["No recent recovery activity - system appears stable"]
        assert status["config"]["max_concurrent_recoveries"] == 2

    @pytest.mark.asyncio
    async def test_failures_dominate(self, system):
        await fail_recovery(system)

        status = await system.status.get_orchestration_status()

        assert status["metrics"]["failed_recoveries"] == 1
        assert status["metrics"]["successful_recoveries"] == 0
        assert status["recommendations"] == [
            "High failure rate in recoveries - review service health and recovery procedures"
        ]

    @pytest.mark.asyncio
    async def test_slow_recoveries(self, system, clock):
        await complete_recovery(system, clock, seconds=400)

        status = await system.status.get_orchestration_status()

        assert status["metrics"]["successful_recoveries"] == 1
        assert status["metrics"]["average_recovery_time_seconds"] == 400.0
        assert "Recovery times are high - optimize recovery workflows and dependencies" in status["recommendations"]

    @pytest.mark.asyncio
    async def test_capacity_warning(self, system):
        await system.engine.initiate_recovery("x")
        await system.engine.initiate_recovery("y")

        status = await system.status.get_orchestration_status()

        assert status["metrics"]["current_throughput"] == 1.0
        assert (
            "Recovery capacity approaching limits - consider increasing max concurrent recoveries"
            in status["recommendations"]
        )

    @pytest.mark.asyncio
    async def test_old_workflows_leave_the_window(self, system, clock):
        await complete_recovery(system, clock)
        clock.advance(25 * 3600)

        status = await system.status.get_orchestration_status()

        assert status["metrics"]["total_recent_recoveries"] == 0


class TestServiceRecoveryStatus:

    @pytest.mark.asyncio
    async def test_recovering_service(self, system):
        await system.breakers.force_open(GEMINI_SERVICE, "outage")
        initiated = await system.engine.initiate_recovery(GEMINI_SERVICE)

        status = await system.status.get_service_recovery_status()

        by_service = {s["service"]: s for s in status["services"]}
        assert set(by_service) == {GEMINI_SERVICE, FALLBACK_SERVICE}
        assert by_service[GEMINI_SERVICE]["is_recovering"]
        assert by_service[GEMINI_SERVICE]["recovery_workflow"].id == initiated.workflow_id
        assert status["active_recoveries"] == 1
        assert status["system_health"]["overall"] == 50
        assert status["system_health"]["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_single_service(self, system):
        status = await system.status.get_service_recovery_status(FALLBACK_SERVICE)

        assert [s["service"] for s in status["services"]] == [FALLBACK_SERVICE]
        assert status["system_health"]["status"] == "healthy"

    @pytest.mark.parametrize("healthy,recovering,expected", [
        ([True, True], [False, False], "healthy"),
        ([True, True], [True, False], "recovering"),
        ([True, False], [False, False], "degraded"),
        ([False, False], [True, True], "critical"),
    ])
    def test_system_health_levels(self, system, healthy, recovering, expected):
        statuses = [
            {"health": {"is_healthy": h, "failure_rate": 0.0}, "is_recovering": r}
            for h, r in zip(healthy, recovering)
        ]

        assert system.status.calculate_system_health(statuses)["status"] == expected

    @pytest.mark.asyncio
    async def test_assess_system_health(self, system):
        await system.breakers.force_open(GEMINI_SERVICE, "outage")

        health = await system.status.assess_system_health()

        assert health["overall_health"] == 50
        assert health["critical_unhealthy"] == 1
        assert health["high_priority_unhealthy"] == 0


class TestOrchestrationSessions:

    @pytest.mark.asyncio
    async def test_session_lookup(self, system):
        await system.breakers.force_open(FALLBACK_SERVICE, "outage")
        await system.breakers.force_open(GEMINI_SERVICE, "outage")
        result = await system.orchestrator.start_system_recovery()

        session = await system.status.get_orchestration_session(result["session_id"])

        assert session.status == SessionStatus.COMPLETED
        assert session.completed_services == [GEMINI_SERVICE, FALLBACK_SERVICE]
        assert (await system.status.get_orchestration_status())["state"].session_id == session.session_id

    @pytest.mark.asyncio
    async def test_unknown_session(self, system):
        with pytest.raises(OrchestrationNotFoundError):
            await system.status.get_orchestration_session("recovery_missing")
