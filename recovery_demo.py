#!/usr/bin/env python3
"""
Service Recovery Demo

Simulates a Gemini outage against an in-memory recovery system:
1. Health checks fail and trigger a recovery workflow
2. The workflow walks its steps once the service answers again
3. A recovery notification is published
4. An orchestrated recovery runs across both AI services

No Redis or model API is needed; time is simulated.

Usage: python recovery_demo.py
"""

import asyncio
from datetime import datetime, timedelta, timezone

from service_recovery import OrchestrationConfig, build_recovery_system
from service_recovery.config import FALLBACK_SERVICE, GEMINI_SERVICE
from service_recovery.messaging import InMemoryNotificationSink
from service_recovery.monitoring import ProbeResult


# Colors for terminal output
class Colors:
    HEADER = '\033[95m'
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


class SimulatedClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class SimulatedGemini:
    """Model API that is down until ``outage`` is cleared"""

    def __init__(self):
        self.outage = True

    async def __call__(self, config) -> ProbeResult:
        if self.outage:
            return ProbeResult(success=False, latency_ms=10000.0, error="503 Service Unavailable: api error")
        return ProbeResult(success=True, latency_ms=180.0)


async def run_demo():
    clock = SimulatedClock()
    gemini = SimulatedGemini()
    sink = InMemoryNotificationSink()
    system = build_recovery_system(
        config=OrchestrationConfig(service_delay_seconds=5, poll_interval_seconds=5),
        sink=sink,
        api_probe=gemini,
        clock=clock,
        sleep=clock.sleep,
    )

    print(f"{Colors.HEADER}🔍 Phase 1: Outage detection{Colors.ENDC}")
    for _ in range(2):
        check = await system.evaluator.run_check(GEMINI_SERVICE, forced=True)
        print(f"{Colors.WARNING}⚠️ {GEMINI_SERVICE}: {check.error}{Colors.ENDC}")
        await clock.sleep(30)
        if check.recovery_triggered:
            print(f"{Colors.OKCYAN}🚑 Recovery workflow started: {check.workflow_id}{Colors.ENDC}")
            workflow_id = check.workflow_id

    print(f"\n{Colors.HEADER}🔧 Phase 2: Recovery workflow{Colors.ENDC}")
    gemini.outage = False
    while True:
        execution = await system.engine.execute_step(workflow_id)
        if execution.step_name:
            marker = f"{Colors.OKGREEN}✅" if execution.step_completed else f"{Colors.WARNING}🔁"
            print(f"{marker} {execution.step_name}{Colors.ENDC}")
        if execution.terminal:
            break
        await clock.sleep(5)

    for message in sink.messages:
        print(f"{Colors.OKGREEN}🎉 {message.service} recovered in {message.recovery_time_ms / 1000:.0f}s{Colors.ENDC}")

    print(f"\n{Colors.HEADER}🧭 Phase 3: Orchestrated recovery{Colors.ENDC}")
    await system.breakers.force_open(GEMINI_SERVICE, "simulated regional outage")
    await system.breakers.force_open(FALLBACK_SERVICE, "simulated regional outage")
    result = await system.orchestrator.start_system_recovery()
    session = result["session"]
    print(f"{Colors.OKBLUE}📋 Plan: {[phase.name for phase in result['recovery_plan'].phases]}{Colors.ENDC}")
    print(f"{Colors.OKGREEN}✅ Session {session.session_id}: {session.status.value}, recovered {session.completed_services}{Colors.ENDC}")

    status = await system.status.get_orchestration_status()
    print(f"\n{Colors.HEADER}📊 Metrics{Colors.ENDC}")
    for key, value in status["metrics"].items():
        print(f"  {key}: {value}")
    for recommendation in status["recommendations"]:
        print(f"{Colors.OKCYAN}💡 {recommendation}{Colors.ENDC}")


def main():
    print(f"{Colors.BOLD}{Colors.HEADER}")
    print("🛡️  MAAS Service Recovery Demo")
    print("=" * 60)
    print(f"{Colors.ENDC}")
    asyncio.run(run_demo())


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print(f"\n{Colors.WARNING}🛑 Demo interrupted{Colors.ENDC}")
