"""
Persistence interface for recovery records and an in-memory implementation

The store keeps four record kinds: health checks, recovery workflows,
orchestration sessions and classified error logs (plus their hourly
aggregates). Records are copied on the way in and out so a caller only
changes stored state by saving it.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from ..exceptions import WorkflowConflictError, WorkflowNotFoundError, WorkflowTerminatedError
from ..models import (
    ErrorAggregate,
    ErrorCategory,
    ErrorLog,
    HealthCheckRecord,
    OrchestrationSession,
    RecoveryWorkflow,
)


class RecoveryStore(ABC):
    """Storage operations required by the recovery components"""

    # Health checks
    @abstractmethod
    async def add_health_check(self, record: HealthCheckRecord) -> str: ...

    @abstractmethod
    async def recent_health_checks(self, service: str, limit: int = 5) -> List[HealthCheckRecord]:
        """Most recent ``limit`` checks for a service, newest first"""

    @abstractmethod
    async def health_checks_since(
        self, service: str, since: datetime, limit: int = 20
    ) -> List[HealthCheckRecord]: ...

    async def latest_health_check(self, service: str) -> Optional[HealthCheckRecord]:
        records = await self.recent_health_checks(service, limit=1)
        return records[0] if records else None

    # Recovery workflows
    @abstractmethod
    async def insert_workflow(self, workflow: RecoveryWorkflow) -> str:
        """Insert a workflow; raises WorkflowConflictError if one is already active for the service"""

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[RecoveryWorkflow]: ...

    @abstractmethod
    async def save_workflow(self, workflow: RecoveryWorkflow) -> None:
        """Replace a stored workflow; raises WorkflowTerminatedError if that would reopen a terminal one"""

    @abstractmethod
    async def find_active_workflow(self, service: str) -> Optional[RecoveryWorkflow]: ...

    @abstractmethod
    async def list_active_workflows(self) -> List[RecoveryWorkflow]: ...

    @abstractmethod
    async def list_workflows_since(self, since: datetime, limit: int = 20) -> List[RecoveryWorkflow]:
        """Workflows started at or after ``since``, newest first"""

    # Orchestration sessions
    @abstractmethod
    async def save_session(self, session: OrchestrationSession) -> None: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[OrchestrationSession]: ...

    @abstractmethod
    async def latest_session(self) -> Optional[OrchestrationSession]: ...

    # Error logs and aggregates
    @abstractmethod
    async def insert_error_log(self, log: ErrorLog) -> str: ...

    @abstractmethod
    async def get_error_log(self, log_id: str) -> Optional[ErrorLog]: ...

    @abstractmethod
    async def save_error_log(self, log: ErrorLog) -> None: ...

    @abstractmethod
    async def list_error_logs(self) -> List[ErrorLog]:
        """All error logs, oldest first"""

    @abstractmethod
    async def get_aggregate(
        self, time_window: int, service: str, category: ErrorCategory
    ) -> Optional[ErrorAggregate]: ...

    @abstractmethod
    async def save_aggregate(self, aggregate: ErrorAggregate) -> None: ...

    @abstractmethod
    async def aggregates_in_range(
        self, start_window: int, end_window: int, service: Optional[str] = None
    ) -> List[ErrorAggregate]: ...


class InMemoryRecoveryStore(RecoveryStore):
    """Process-local store backed by dictionaries"""

    def __init__(self):
        self.health_checks: Dict[str, List[HealthCheckRecord]] = defaultdict(list)
        self.workflows: Dict[str, RecoveryWorkflow] = {}
        self.sessions: Dict[str, OrchestrationSession] = {}
        self.error_logs: Dict[str, ErrorLog] = {}
        self.aggregates: Dict[tuple, ErrorAggregate] = {}
        self._workflow_lock = asyncio.Lock()

    async def add_health_check(self, record: HealthCheckRecord) -> str:
        self.health_checks[record.service].append(record.model_copy(deep=True))
        return record.id

    async def recent_health_checks(self, service: str, limit: int = 5) -> List[HealthCheckRecord]:
        # Newest first; records sharing a timestamp keep reverse insertion order
        records = sorted(reversed(self.health_checks.get(service, [])), key=lambda r: r.timestamp, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def health_checks_since(
        self, service: str, since: datetime, limit: int = 20
    ) -> List[HealthCheckRecord]:
        records = [r for r in reversed(self.health_checks.get(service, [])) if r.timestamp >= since]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def insert_workflow(self, workflow: RecoveryWorkflow) -> str:
        async with self._workflow_lock:
            if not workflow.is_terminal:
                existing = self._active_for(workflow.service)
                if existing is not None:
                    raise WorkflowConflictError(workflow.service, existing.id)
            self.workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow.id

    async def get_workflow(self, workflow_id: str) -> Optional[RecoveryWorkflow]:
        workflow = self.workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def save_workflow(self, workflow: RecoveryWorkflow) -> None:
        stored = self.workflows.get(workflow.id)
        if stored is None:
            raise WorkflowNotFoundError(workflow.id)
        if stored.is_terminal and not workflow.is_terminal:
            raise WorkflowTerminatedError(workflow.id, stored.phase.value)
        self.workflows[workflow.id] = workflow.model_copy(deep=True)

    async def find_active_workflow(self, service: str) -> Optional[RecoveryWorkflow]:
        workflow = self._active_for(service)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_active_workflows(self) -> List[RecoveryWorkflow]:
        return [w.model_copy(deep=True) for w in self.workflows.values() if not w.is_terminal]

    async def list_workflows_since(self, since: datetime, limit: int = 20) -> List[RecoveryWorkflow]:
        workflows = [w for w in self.workflows.values() if w.started_at >= since]
        workflows.sort(key=lambda w: w.started_at, reverse=True)
        return [w.model_copy(deep=True) for w in workflows[:limit]]

    def _active_for(self, service: str) -> Optional[RecoveryWorkflow]:
        for workflow in self.workflows.values():
            if workflow.service == service and not workflow.is_terminal:
                return workflow
        return None

    async def save_session(self, session: OrchestrationSession) -> None:
        self.sessions[session.session_id] = session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[OrchestrationSession]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def latest_session(self) -> Optional[OrchestrationSession]:
        if not self.sessions:
            return None
        latest = max(self.sessions.values(), key=lambda s: s.started_at)
        return latest.model_copy(deep=True)

    async def insert_error_log(self, log: ErrorLog) -> str:
        self.error_logs[log.id] = log.model_copy(deep=True)
        return log.id

    async def get_error_log(self, log_id: str) -> Optional[ErrorLog]:
        log = self.error_logs.get(log_id)
        return log.model_copy(deep=True) if log else None

    async def save_error_log(self, log: ErrorLog) -> None:
        self.error_logs[log.id] = log.model_copy(deep=True)

    async def list_error_logs(self) -> List[ErrorLog]:
        logs = sorted(self.error_logs.values(), key=lambda log: log.created_at)
        return [log.model_copy(deep=True) for log in logs]

    async def get_aggregate(
        self, time_window: int, service: str, category: ErrorCategory
    ) -> Optional[ErrorAggregate]:
        aggregate = self.aggregates.get((time_window, service, ErrorCategory(category)))
        return aggregate.model_copy(deep=True) if aggregate else None

    async def save_aggregate(self, aggregate: ErrorAggregate) -> None:
        key = (aggregate.time_window, aggregate.service, ErrorCategory(aggregate.category))
        self.aggregates[key] = aggregate.model_copy(deep=True)

    async def aggregates_in_range(
        self, start_window: int, end_window: int, service: Optional[str] = None
    ) -> List[ErrorAggregate]:
        results = [
            aggregate.model_copy(deep=True)
            for aggregate in self.aggregates.values()
            if start_window <= aggregate.time_window <= end_window
            and (service is None or aggregate.service == service)
        ]
        results.sort(key=lambda a: (a.time_window, a.service, a.category.value))
        return results
