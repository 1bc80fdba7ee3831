"""
Retry with exponential backoff for calls to protected services

Whether a failure is retried is decided by its classification: only errors
whose category is retryable are attempted again. When a breaker manager is
supplied every attempt goes through the service's circuit breaker, so an
open breaker stops the retry loop immediately.
"""

import asyncio
import logging
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..models import ErrorContext
from .circuit_breaker import CircuitBreakerManager
from .error_classifier import ErrorAggregator, ErrorClassifier

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry strategies"""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1


class RetryManager:
    """Retry management with exponential backoff"""

    def __init__(
        self,
        default_config: RetryConfig = None,
        classifier: Optional[ErrorClassifier] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        aggregator: Optional[ErrorAggregator] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.default_config = default_config or RetryConfig()
        self.classifier = classifier or (aggregator.classifier if aggregator else ErrorClassifier())
        self.breakers = breakers
        self.aggregator = aggregator
        self.sleep = sleep
        self.retry_stats = defaultdict(lambda: {"attempts": 0, "successes": 0, "failures": 0})

    async def execute_with_retry(
        self,
        operation: Callable,
        service: str,
        operation_id: str,
        config: Optional[RetryConfig] = None,
    ) -> Any:
        """Execute an operation, retrying retryable failures"""
        retry_config = config or self.default_config
        stats = self.retry_stats[f"{service}:{operation_id}"]
        last_exception = None

        for attempt in range(retry_config.max_attempts):
            stats["attempts"] += 1
            try:
                logger.debug(f"Executing {operation_id} on {service}, attempt {attempt + 1}/{retry_config.max_attempts}")
                result = await self._invoke(operation, service)
                stats["successes"] += 1
                if attempt > 0:
                    logger.info(f"Operation {operation_id} on {service} succeeded after {attempt + 1} attempts")
                return result

            except Exception as e:
                last_exception = e
                classified = self.classifier.classify(e, ErrorContext(service=service, operation=operation_id))

                if not classified.retryable or attempt >= retry_config.max_attempts - 1:
                    logger.warning(
                        f"Not retrying {operation_id} on {service} - category {classified.category.value} "
                        f"{'not retryable' if not classified.retryable else 'max attempts reached'}"
                    )
                    break

                delay = min(
                    retry_config.base_delay_seconds * (retry_config.exponential_base ** attempt),
                    retry_config.max_delay_seconds
                )
                delay += delay * retry_config.jitter_factor * random.random()

                logger.warning(f"Operation {operation_id} on {service} failed (attempt {attempt + 1}), retrying in {delay:.2f}s: {e}")
                await self.sleep(delay)

        stats["failures"] += 1
        logger.error(f"Operation {operation_id} on {service} failed: {last_exception}")
        if self.aggregator:
            await self.aggregator.report(last_exception, service=service, operation=operation_id)
        raise last_exception

    async def _invoke(self, operation: Callable, service: str) -> Any:
        if self.breakers is not None:
            return await self.breakers.call(service, operation)
        result = operation()
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def get_retry_stats(self) -> Dict[str, Dict[str, int]]:
        """Get retry statistics"""
        return {key: dict(value) for key, value in self.retry_stats.items()}
