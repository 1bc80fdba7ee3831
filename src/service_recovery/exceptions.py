"""
Exception hierarchy for the service recovery subsystem
"""

from typing import List


class ServiceRecoveryError(Exception):
    """Base class for all service recovery errors"""


class UnknownServiceError(ServiceRecoveryError):
    """Raised when a service has no health check configuration"""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"No health check configuration for service: {service}")


class CircuitOpenError(ServiceRecoveryError):
    """Raised when a protected call is rejected by an open circuit breaker"""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Circuit breaker {service} is OPEN - request rejected")


class WorkflowNotFoundError(ServiceRecoveryError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Recovery workflow not found: {workflow_id}")


class WorkflowConflictError(ServiceRecoveryError):
    """A non-terminal workflow already exists for the service"""

    def __init__(self, service: str, existing_id: str):
        self.service = service
        self.existing_id = existing_id
        super().__init__(f"Active recovery workflow {existing_id} already exists for {service}")


class WorkflowTerminatedError(ServiceRecoveryError):
    """A save would reopen a workflow that already reached monitoring or failed"""

    def __init__(self, workflow_id: str, phase: str):
        self.workflow_id = workflow_id
        self.phase = phase
        super().__init__(f"Recovery workflow {workflow_id} is already {phase} and cannot be reopened")


class RecoveryError(ServiceRecoveryError):
    """A single service's recovery did not reach the monitoring phase"""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class RecoveryFailedError(RecoveryError):
    def __init__(self, service: str, reason: str = ""):
        message = f"Recovery workflow failed for service {service}"
        if reason:
            message += f": {reason}"
        super().__init__(service, message)


class RecoveryTimeoutError(RecoveryError):
    def __init__(self, service: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(service, f"Recovery workflow timeout for service {service} after {timeout_seconds:.0f}s")


class DependencyFailedError(RecoveryError):
    def __init__(self, service: str, dependencies: List[str]):
        self.dependencies = dependencies
        super().__init__(
            service,
            f"Service {service} cannot recover independently; dependencies failed: {', '.join(dependencies)}"
        )


class OrchestrationError(ServiceRecoveryError):
    """Base class for orchestration-level failures"""


class OrchestrationDisabledError(OrchestrationError):
    def __init__(self):
        super().__init__("Recovery orchestration is disabled")


class OrchestrationNotFoundError(OrchestrationError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Orchestration session not found: {session_id}")


class MaxConcurrentRecoveriesError(OrchestrationError):
    def __init__(self, active: int, limit: int):
        self.active = active
        self.limit = limit
        super().__init__(f"Maximum concurrent recoveries exceeded ({active} active, limit {limit})")


class OrchestrationAbortedError(OrchestrationError):
    """A critical service failed during a sequential phase"""

    def __init__(self, service: str, reason: str = ""):
        self.service = service
        message = f"Critical service {service} recovery failed, stopping orchestration"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class PostRecoveryValidationError(OrchestrationError):
    def __init__(self, services: List[str]):
        self.services = services
        super().__init__(f"Post-recovery validation failed: {', '.join(services)} still unhealthy")
