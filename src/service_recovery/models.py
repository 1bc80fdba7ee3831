"""
Records persisted and exchanged by the service recovery subsystem
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import ProbeMethod, ServiceDependency


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing, rejecting requests
    HALF_OPEN = "half_open" # Testing if service recovered


class WorkflowPhase(str, Enum):
    DETECTION = "detection"
    VALIDATION = "validation"
    GRADUAL_RECOVERY = "gradual_recovery"
    FULL_RECOVERY = "full_recovery"
    MONITORING = "monitoring"  # terminal, success
    FAILED = "failed"          # terminal, failure


TERMINAL_PHASES = frozenset({WorkflowPhase.MONITORING, WorkflowPhase.FAILED})


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class HealthCheckRecord(BaseModel):
    """Outcome of one probe invocation; never mutated after insert"""
    id: str = Field(default_factory=lambda: new_id("hc"))
    service: str
    timestamp: datetime
    success: bool
    response_time_ms: float
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    check_type: ProbeMethod


class RecoveryStep(BaseModel):
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 1
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class RecoveryWorkflow(BaseModel):
    id: str = Field(default_factory=lambda: new_id("wf"))
    service: str
    phase: WorkflowPhase = WorkflowPhase.DETECTION
    started_at: datetime
    last_update: datetime
    progress: int = 0
    steps: List[RecoveryStep]
    current_step_index: int = 0
    auto_recovery_enabled: bool = True
    estimated_time_remaining_seconds: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def current_step(self) -> Optional[RecoveryStep]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None


class RecoveryPhase(BaseModel):
    """One group of services in a recovery plan"""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    services: List[str] = Field(default_factory=list)
    parallel: bool = False
    critical: bool = False
    estimated_duration_seconds: float = 0.0


class RecoveryPlan(BaseModel):
    phases: List[RecoveryPhase]
    estimated_duration_seconds: float
    risk_assessment: str
    dependencies: List[ServiceDependency] = Field(default_factory=list)

    @property
    def services(self) -> List[str]:
        planned: List[str] = []
        for phase in self.phases:
            for service in phase.services:
                if service not in planned:
                    planned.append(service)
        return planned


class OrchestrationSession(BaseModel):
    id: str = Field(default_factory=lambda: new_id("orch"))
    session_id: str = Field(default_factory=lambda: new_id("recovery"))
    status: SessionStatus = SessionStatus.PLANNING
    started_at: datetime
    last_update: datetime
    completed_at: Optional[datetime] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    planned_services: List[str] = Field(default_factory=list)
    completed_services: List[str] = Field(default_factory=list)
    failed_services: List[str] = Field(default_factory=list)
    current_phase: str = "assessment"
    recovery_plan: Optional[RecoveryPlan] = None
    progress: int = 0
    estimated_completion: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class ErrorCategory(str, Enum):
    """Error categories, listed in classification order"""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    CIRCUIT_BREAKER = "circuit_breaker"
    FALLBACK = "fallback"
    SERVICE_ERROR = "service_error"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    ErrorSeverity.LOW: 1,
    ErrorSeverity.MEDIUM: 2,
    ErrorSeverity.HIGH: 3,
    ErrorSeverity.CRITICAL: 4,
}


class UserImpact(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"
    BLOCKING = "blocking"


class BusinessImpact(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorContext(BaseModel):
    service: str = "unknown"
    operation: str = "unknown"
    environment: str = "development"
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ClassifiedError(BaseModel):
    message: str
    error_type: str = "str"
    stack_trace: Optional[str] = None
    context: ErrorContext
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    circuit_breaker_impact: bool
    fallback_eligible: bool
    user_impact: UserImpact
    business_impact: BusinessImpact
    tags: List[str] = Field(default_factory=list)
    fingerprint: str
    aggregation_key: str


class ErrorResolution(BaseModel):
    resolved: bool = True
    resolved_at: datetime
    resolved_by: str  # auto_recovery | manual_intervention | retry | fallback
    resolved_action: Optional[str] = None
    notes: Optional[str] = None


class ErrorLog(BaseModel):
    id: str = Field(default_factory=lambda: new_id("err"))
    error: ClassifiedError
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    aggregated: bool = False
    resolution: Optional[ErrorResolution] = None


class ErrorAggregate(BaseModel):
    """Hourly bucket keyed by (time_window, service, category)"""
    id: str = Field(default_factory=lambda: new_id("agg"))
    time_window: int
    service: str
    category: ErrorCategory
    count: int = 0
    severity: ErrorSeverity = ErrorSeverity.LOW
    last_seen: datetime
    fingerprints: List[str] = Field(default_factory=list)
    aggregation_keys: List[str] = Field(default_factory=list)
    sample_error_ids: List[str] = Field(default_factory=list)
    user_impact_counts: Dict[str, int] = Field(
        default_factory=lambda: {impact.value: 0 for impact in UserImpact}
    )
    business_impact_counts: Dict[str, int] = Field(
        default_factory=lambda: {impact.value: 0 for impact in BusinessImpact}
    )


def hour_window(timestamp: datetime) -> int:
    """Hour bucket index used for error aggregation"""
    return int(timestamp.timestamp() // 3600)
