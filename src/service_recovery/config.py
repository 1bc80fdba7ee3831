"""
Configuration for the service recovery subsystem

Static tables (health checks, service dependencies) and tunables are plain
values passed into component constructors. Nothing here is mutated at runtime;
the default tables are rebuilt on every call so callers can adjust their copy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProbeMethod(str, Enum):
    """How a service's health is probed"""
    PING = "ping"
    API_CALL = "api_call"
    CIRCUIT_BREAKER_TEST = "circuit_breaker_test"
    CUSTOM = "custom"


class Criticality(str, Enum):
    """Static importance tier of a service"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


CRITICALITY_ORDER = {
    Criticality.CRITICAL: 0,
    Criticality.HIGH: 1,
    Criticality.MEDIUM: 2,
    Criticality.LOW: 3,
}


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breakers"""
    failure_threshold: int = 5               # Failures in window before opening
    success_threshold: int = 3               # Successes to close from half-open
    timeout_seconds: float = 60.0            # Time before trying half-open
    monitoring_window_seconds: float = 300.0 # Trailing window for failure rate
    half_open_max_attempts: int = 3          # Probe requests admitted while half-open
    unhealthy_failure_rate: float = 60.0     # Percent; above this the service is unhealthy


class HealthCheckConfig(BaseModel):
    """Per-service health check settings"""
    model_config = ConfigDict(frozen=True)

    service: str
    method: ProbeMethod = ProbeMethod.PING
    interval_seconds: float = Field(default=30.0, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    success_threshold: int = Field(default=3, ge=1)
    failure_threshold: int = Field(default=2, ge=1)
    enabled: bool = True
    window_size: int = Field(default=5, ge=1)
    endpoint: Optional[str] = None
    model: str = "gemini-2.0-flash"


class ServiceDependency(BaseModel):
    """Static recovery metadata for a service"""
    model_config = ConfigDict(frozen=True)

    service: str
    depends_on: List[str] = Field(default_factory=list)
    criticality: Criticality = Criticality.MEDIUM
    recovery_priority: int = 999  # Lower number = recovered first
    can_recover_independently: bool = True


class OrchestrationConfig(BaseSettings):
    """
    Orchestration tunables

    Values can be overridden with RECOVERY_* environment variables, e.g.
    RECOVERY_MAX_CONCURRENT_RECOVERIES=4.
    """
    model_config = SettingsConfigDict(env_prefix="RECOVERY_", extra="ignore")

    enabled: bool = True
    max_concurrent_recoveries: int = Field(default=2, ge=1)
    service_delay_seconds: float = Field(default=30.0, ge=0)
    recovery_timeout_seconds: float = Field(default=600.0, gt=0)
    poll_interval_seconds: float = Field(default=10.0, ge=0)
    dependency_aware: bool = True
    auto_recovery: bool = True
    healthy_threshold_percent: float = Field(default=80.0, ge=0, le=100)
    redis_url: str = "redis://localhost:6379/1"
    notification_channel: str = "maas:service_recovery"


GEMINI_SERVICE = "gemini_2_5_flash_lite"
FALLBACK_SERVICE = "fallback_analysis"


def default_health_checks() -> List[HealthCheckConfig]:
    """Health checks for the AI analysis services"""
    return [
        HealthCheckConfig(
            service=GEMINI_SERVICE,
            method=ProbeMethod.API_CALL,
            interval_seconds=30.0,
            timeout_seconds=10.0,
            success_threshold=3,
            failure_threshold=2,
        ),
        HealthCheckConfig(
            service=FALLBACK_SERVICE,
            method=ProbeMethod.PING,
            interval_seconds=60.0,
            timeout_seconds=5.0,
            success_threshold=2,
            failure_threshold=3,
        ),
    ]


def default_service_dependencies() -> List[ServiceDependency]:
    return [
        ServiceDependency(
            service=GEMINI_SERVICE,
            criticality=Criticality.CRITICAL,
            recovery_priority=1,
        ),
        ServiceDependency(
            service=FALLBACK_SERVICE,
            criticality=Criticality.HIGH,
            recovery_priority=2,
        ),
    ]
