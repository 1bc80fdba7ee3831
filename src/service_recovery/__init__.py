"""
MAAS service recovery

Circuit breaking, health checks, per-service recovery workflows and
cross-service recovery orchestration for the AI Engine's external services.
"""

from .config import (
    CircuitBreakerConfig,
    Criticality,
    HealthCheckConfig,
    OrchestrationConfig,
    ProbeMethod,
    ServiceDependency,
    default_health_checks,
    default_service_dependencies,
)
from .system import RecoverySystem, TickResult, build_recovery_system

__version__ = "0.1.0"

__all__ = [
    "CircuitBreakerConfig",
    "Criticality",
    "HealthCheckConfig",
    "OrchestrationConfig",
    "ProbeMethod",
    "ServiceDependency",
    "default_health_checks",
    "default_service_dependencies",
    "RecoverySystem",
    "TickResult",
    "build_recovery_system",
]
