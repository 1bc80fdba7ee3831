"""
Error Recovery Module

Resilience primitives shared by the recovery subsystem:
- Per-service circuit breakers with a trailing failure window
- Error classification, fingerprinting and hourly aggregation
- Retry with exponential backoff driven by error classification
"""

from .circuit_breaker import (
    BreakerHealth,
    CircuitBreaker,
    CircuitBreakerManager,
    CircuitBreakerState,
)
from .error_classifier import (
    CategoryProfile,
    ErrorAggregator,
    ErrorClassifier,
)
from .retry import RetryConfig, RetryManager

__all__ = [
    'BreakerHealth',
    'CircuitBreaker',
    'CircuitBreakerManager',
    'CircuitBreakerState',
    'CategoryProfile',
    'ErrorAggregator',
    'ErrorClassifier',
    'RetryConfig',
    'RetryManager',
]
