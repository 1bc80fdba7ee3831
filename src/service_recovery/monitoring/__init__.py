"""
Monitoring package for service recovery

Provides:
- Health probes (ping, API call, circuit breaker test, custom)
- Health check evaluation with recovery triggering
"""

from .health_checks import CheckResult, HealthCheckEvaluator
from .probes import GeminiAgentProbe, ProbeRegistry, ProbeResult, ping_probe

__all__ = ["CheckResult", "HealthCheckEvaluator", "GeminiAgentProbe", "ProbeRegistry", "ProbeResult", "ping_probe"]
