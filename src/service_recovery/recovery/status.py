"""
Recovery status and metrics for dashboards
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config import OrchestrationConfig
from ..error_recovery.circuit_breaker import CircuitBreakerManager
from ..exceptions import OrchestrationNotFoundError
from ..models import OrchestrationSession, RecoveryWorkflow, WorkflowPhase, utc_now
from ..storage.memory_store import RecoveryStore
from .orchestrator import RecoveryOrchestrator

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)
RECENT_LIMIT = 20
SLOW_RECOVERY_SECONDS = 300.0


@dataclass
class OrchestrationMetrics:
    """Recovery activity over the trailing 24 hours"""
    active_recoveries: int = 0
    total_recent_recoveries: int = 0
    successful_recoveries: int = 0
    failed_recoveries: int = 0
    average_recovery_time_seconds: float = 0.0
    current_throughput: float = 0.0  # active / max concurrent


class RecoveryStatusService:
    """Read-only views over recovery state"""

    def __init__(
        self,
        store: RecoveryStore,
        breakers: CircuitBreakerManager,
        orchestrator: RecoveryOrchestrator,
        services: List[str],
        config: Optional[OrchestrationConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.breakers = breakers
        self.orchestrator = orchestrator
        self.services = services
        self.config = config or orchestrator.config
        self.clock = clock

    async def get_orchestration_status(self) -> Dict[str, Any]:
        active = await self.store.list_active_workflows()
        recent = await self.store.list_workflows_since(self.clock() - RECENT_WINDOW, limit=RECENT_LIMIT)
        metrics = self.calculate_metrics(active, recent)

        return {
            "config": self.config.model_dump(),
            "state": await self.store.latest_session(),
            "active_workflows": active,
            "recent_recoveries": recent,
            "metrics": asdict(metrics),
            "service_dependencies": self.orchestrator.dependencies,
            "recommendations": self.generate_recommendations(metrics, active),
        }

    async def get_orchestration_session(self, session_id: str) -> OrchestrationSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise OrchestrationNotFoundError(session_id)
        return session

    def calculate_metrics(
        self, active: List[RecoveryWorkflow], recent: List[RecoveryWorkflow]
    ) -> OrchestrationMetrics:
        succeeded = [w for w in recent if w.phase == WorkflowPhase.MONITORING]
        durations = [(w.last_update - w.started_at).total_seconds() for w in succeeded]
        return OrchestrationMetrics(
            active_recoveries=len(active),
            total_recent_recoveries=len(recent),
            successful_recoveries=len(succeeded),
            failed_recoveries=sum(1 for w in recent if w.phase == WorkflowPhase.FAILED),
            average_recovery_time_seconds=sum(durations) / len(durations) if durations else 0.0,
            current_throughput=len(active) / self.config.max_concurrent_recoveries,
        )

    def generate_recommendations(
        self, metrics: OrchestrationMetrics, active: List[RecoveryWorkflow]
    ) -> List[str]:
        recommendations = []

        if metrics.failed_recoveries > metrics.successful_recoveries:
            recommendations.append(
                "High failure rate in recoveries - review service health and recovery procedures"
            )
        if metrics.current_throughput > 0.8:
            recommendations.append(
                "Recovery capacity approaching limits - consider increasing max concurrent recoveries"
            )
        if metrics.average_recovery_time_seconds > SLOW_RECOVERY_SECONDS:
            recommendations.append(
                "Recovery times are high - optimize recovery workflows and dependencies"
            )
        if not active and metrics.total_recent_recoveries == 0:
            recommendations.append("No recent recovery activity - system appears stable")

        return recommendations

    async def get_service_recovery_status(self, service: Optional[str] = None) -> Dict[str, Any]:
        services = [service] if service else list(self.services)
        statuses = []
        for name in services:
            health = await self.breakers.get_health(name)
            workflow = await self.store.find_active_workflow(name)
            statuses.append({
                "service": name,
                "health": asdict(health),
                "recovery_workflow": workflow,
                "is_recovering": workflow is not None,
                "last_health_check": await self.store.latest_health_check(name),
            })

        return {
            "services": statuses,
            "active_recoveries": sum(1 for s in statuses if s["is_recovering"]),
            "system_health": self.calculate_system_health(statuses),
        }

    @staticmethod
    def calculate_system_health(statuses: List[Dict[str, Any]]) -> Dict[str, Any]:
        total = len(statuses)
        healthy = sum(1 for s in statuses if s["health"]["is_healthy"])
        recovering = sum(1 for s in statuses if s["is_recovering"])
        percentage = healthy / total * 100 if total else 100.0

        if percentage < 50:
            status = "critical"
        elif percentage < 80:
            status = "degraded"
        elif recovering > 0:
            status = "recovering"
        else:
            status = "healthy"

        return {
            "overall": round(percentage),
            "status": status,
            "details": {
                "healthy_services": healthy,
                "total_services": total,
                "recovering_services": recovering,
                "avg_failure_rate": (
                    sum(s["health"]["failure_rate"] for s in statuses) / total if total else 0.0
                ),
            },
        }

    async def assess_system_health(self, services: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self.orchestrator.assess_system_health(services or self.services)
