"""
Error classification and hourly aggregation

Every failure reported by the recovery subsystem passes through here:
- ordered pattern matching assigns a category, first match wins
- the category profile supplies severity, retryability and impact flags
- a fingerprint groups identical error patterns regardless of volatile details
- an hourly aggregate per (service, category) tracks counts and impact
"""

import asyncio
import hashlib
import json
import logging
import re
import traceback
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..models import (
    SEVERITY_ORDER,
    BusinessImpact,
    ClassifiedError,
    ErrorAggregate,
    ErrorCategory,
    ErrorContext,
    ErrorLog,
    ErrorResolution,
    ErrorSeverity,
    UserImpact,
    hour_window,
    new_id,
    utc_now,
)
from ..storage.memory_store import RecoveryStore

logger = logging.getLogger(__name__)

MAX_SAMPLE_ERRORS = 10

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
_HEX_RE = re.compile(r"[0-9a-f]{8,}")
_DIGITS_RE = re.compile(r"\d+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CategoryProfile:
    """Flags assigned to every error of a category"""
    severity: ErrorSeverity
    retryable: bool
    circuit_breaker_impact: bool
    fallback_eligible: bool
    user_impact: UserImpact
    business_impact: BusinessImpact
    tags: List[str] = field(default_factory=list)


class ErrorClassifier:
    """Deterministic rule-based error classification"""

    def __init__(self):
        # Checked in insertion order; the first category with a matching pattern wins
        self.error_patterns: Dict[ErrorCategory, List[str]] = {
            ErrorCategory.NETWORK: ["network", "connection", "fetch"],
            ErrorCategory.TIMEOUT: ["timeout", "time out", "timed out", "deadline exceeded"],
            ErrorCategory.RATE_LIMIT: ["rate limit", "too many requests", "quota exceeded"],
            ErrorCategory.AUTHENTICATION: [
                "authentication", "unauthorized", "forbidden", "access denied"
            ],
            ErrorCategory.VALIDATION: ["validation", "invalid", "malformed", "bad request"],
            ErrorCategory.CIRCUIT_BREAKER: ["circuit breaker", "circuit_breaker"],
            ErrorCategory.FALLBACK: ["fallback", "backup analysis"],
            ErrorCategory.SERVICE_ERROR: [
                "internal server error", "service unavailable", "api error"
            ],
        }

        self.category_profiles: Dict[ErrorCategory, CategoryProfile] = {
            ErrorCategory.NETWORK: CategoryProfile(
                ErrorSeverity.HIGH, True, True, True,
                UserImpact.MAJOR, BusinessImpact.MEDIUM, ["connectivity", "infrastructure"]
            ),
            ErrorCategory.TIMEOUT: CategoryProfile(
                ErrorSeverity.HIGH, True, True, True,
                UserImpact.MAJOR, BusinessImpact.MEDIUM, ["performance", "latency"]
            ),
            ErrorCategory.RATE_LIMIT: CategoryProfile(
                ErrorSeverity.MEDIUM, True, True, True,
                UserImpact.MAJOR, BusinessImpact.HIGH, ["quota", "capacity"]
            ),
            ErrorCategory.AUTHENTICATION: CategoryProfile(
                ErrorSeverity.MEDIUM, False, False, False,
                UserImpact.BLOCKING, BusinessImpact.MEDIUM, ["auth", "security"]
            ),
            ErrorCategory.VALIDATION: CategoryProfile(
                ErrorSeverity.LOW, False, False, False,
                UserImpact.MINOR, BusinessImpact.LOW, ["input", "format"]
            ),
            ErrorCategory.CIRCUIT_BREAKER: CategoryProfile(
                ErrorSeverity.CRITICAL, False, True, True,
                UserImpact.BLOCKING, BusinessImpact.HIGH, ["circuit_breaker", "service_protection"]
            ),
            ErrorCategory.FALLBACK: CategoryProfile(
                ErrorSeverity.LOW, False, False, False,
                UserImpact.MINOR, BusinessImpact.LOW, ["fallback", "backup_processing"]
            ),
            ErrorCategory.SERVICE_ERROR: CategoryProfile(
                ErrorSeverity.HIGH, True, True, True,
                UserImpact.MAJOR, BusinessImpact.HIGH, ["api", "service"]
            ),
            ErrorCategory.UNKNOWN: CategoryProfile(
                ErrorSeverity.MEDIUM, True, False, False,
                UserImpact.MINOR, BusinessImpact.LOW, []
            ),
        }

    def match_category(self, message: str, error_type: str = "") -> ErrorCategory:
        """First category whose patterns appear in the message or exception type name"""
        message = message.lower()
        error_type = error_type.lower()
        for category, patterns in self.error_patterns.items():
            if any(pattern in message or pattern in error_type for pattern in patterns):
                return category
        return ErrorCategory.UNKNOWN

    def classify(
        self,
        error: Union[BaseException, str],
        context: Optional[ErrorContext] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
    ) -> ClassifiedError:
        """Classify an error; ``category``/``severity`` override the matched values"""
        context = context or ErrorContext()

        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            error_type = type(error).__name__
            stack_trace = None
            if error.__traceback__ is not None:
                stack_trace = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )
        else:
            message = str(error)
            error_type = "str"
            stack_trace = None

        if category is None:
            category = self.match_category(message, error_type if error_type != "str" else "")
        profile = self.category_profiles[category]

        resolved_severity = severity or profile.severity
        lower_message = message.lower()
        if severity is None and any(word in lower_message for word in ("fatal", "panic")):
            resolved_severity = ErrorSeverity.CRITICAL

        business_impact = profile.business_impact
        tags = list(profile.tags)
        tags.append(f"service:{context.service}")
        tags.append(f"operation:{context.operation}")
        if "gemini" in context.service.lower():
            tags.extend(["ai_analysis", "gemini"])
        if context.operation == "journal_analysis":
            tags.extend(["journal", "analysis"])
            if profile.user_impact == UserImpact.BLOCKING:
                business_impact = BusinessImpact.HIGH
        if stack_trace:
            lower_stack = stack_trace.lower()
            if "http" in lower_stack or "fetch" in lower_stack:
                tags.append("http_request")
            if "asyncio" in lower_stack or "await" in lower_stack:
                tags.append("async_operation")

        return ClassifiedError(
            message=message,
            error_type=error_type,
            stack_trace=stack_trace,
            context=context,
            category=category,
            severity=resolved_severity,
            retryable=profile.retryable,
            circuit_breaker_impact=profile.circuit_breaker_impact,
            fallback_eligible=profile.fallback_eligible,
            user_impact=profile.user_impact,
            business_impact=business_impact,
            tags=tags,
            fingerprint=self.fingerprint(message, category, context.service, context.operation),
            aggregation_key=self.aggregation_key(
                category, context.service, context.operation, resolved_severity
            ),
        )

    @staticmethod
    def normalize_message(message: str) -> str:
        normalized = message.lower()
        normalized = _UUID_RE.sub("UUID", normalized)
        normalized = _HEX_RE.sub("HASH", normalized)
        normalized = _DIGITS_RE.sub("N", normalized)
        return _WHITESPACE_RE.sub(" ", normalized).strip()

    def fingerprint(self, message: str, category: ErrorCategory, service: str, operation: str) -> str:
        payload = {
            "message": self.normalize_message(message),
            "category": ErrorCategory(category).value,
            "service": service,
            "operation": operation,
        }
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()[:16]

    @staticmethod
    def aggregation_key(
        category: ErrorCategory, service: str, operation: str, severity: ErrorSeverity
    ) -> str:
        return f"{ErrorCategory(category).value}:{service}:{operation}:{ErrorSeverity(severity).value}"


def highest_severity(current: ErrorSeverity, new: ErrorSeverity) -> ErrorSeverity:
    return new if SEVERITY_ORDER[new] > SEVERITY_ORDER[current] else current


class ErrorAggregator:
    """
    Store-backed error log and hourly aggregate maintenance

    ``report`` is the entry point used by the other components: it classifies,
    records and aggregates in one call.
    """

    def __init__(
        self,
        store: RecoveryStore,
        classifier: Optional[ErrorClassifier] = None,
        clock: Callable[[], datetime] = utc_now,
        environment: str = "development",
    ):
        self.store = store
        self.classifier = classifier or ErrorClassifier()
        self.clock = clock
        self.environment = environment
        self._lock = asyncio.Lock()

    async def record(self, classified: ClassifiedError, metadata: Optional[Dict[str, Any]] = None) -> str:
        now = self.clock()
        metadata = dict(metadata or {})
        metadata.setdefault("correlation_id", new_id(classified.context.service))
        log = ErrorLog(error=classified, metadata=metadata, created_at=now)
        log_id = await self.store.insert_error_log(log)
        logger.debug(f"Recorded {classified.category.value} error {log_id} for {classified.context.service}")
        return log_id

    async def aggregate(self, log_id: str) -> Optional[ErrorAggregate]:
        """Fold an error log into its hourly bucket; a log is only counted once"""
        async with self._lock:
            log = await self.store.get_error_log(log_id)
            if log is None:
                logger.warning(f"Cannot aggregate unknown error log {log_id}")
                return None

            error = log.error
            window = hour_window(log.created_at)
            aggregate = await self.store.get_aggregate(window, error.context.service, error.category)
            if log.aggregated:
                return aggregate

            if aggregate is None:
                aggregate = ErrorAggregate(
                    time_window=window,
                    service=error.context.service,
                    category=error.category,
                    severity=error.severity,
                    last_seen=log.created_at,
                )
            aggregate.count += 1
            aggregate.last_seen = max(aggregate.last_seen, log.created_at)
            aggregate.severity = highest_severity(aggregate.severity, error.severity)
            if error.fingerprint not in aggregate.fingerprints:
                aggregate.fingerprints.append(error.fingerprint)
            if error.aggregation_key not in aggregate.aggregation_keys:
                aggregate.aggregation_keys.append(error.aggregation_key)
            aggregate.sample_error_ids = (aggregate.sample_error_ids + [log.id])[-MAX_SAMPLE_ERRORS:]
            aggregate.user_impact_counts[error.user_impact.value] = (
                aggregate.user_impact_counts.get(error.user_impact.value, 0) + 1
            )
            aggregate.business_impact_counts[error.business_impact.value] = (
                aggregate.business_impact_counts.get(error.business_impact.value, 0) + 1
            )

            log.aggregated = True
            await self.store.save_aggregate(aggregate)
            await self.store.save_error_log(log)
            return aggregate

    async def report(
        self,
        error: Union[BaseException, str],
        service: str,
        operation: str,
        metadata: Optional[Dict[str, Any]] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
    ) -> str:
        """Classify, record and aggregate an error; returns the log id"""
        context = ErrorContext(
            service=service,
            operation=operation,
            environment=self.environment,
            timestamp=self.clock(),
            metadata=dict(metadata or {}),
        )
        classified = self.classifier.classify(error, context, category=category, severity=severity)
        log_id = await self.record(classified, metadata)
        await self.aggregate(log_id)
        return log_id

    async def query_error_logs(
        self,
        service: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        fingerprint: Optional[str] = None,
        aggregation_key: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        logs = await self.store.list_error_logs()
        matches = []
        for log in logs:
            error = log.error
            if service and error.context.service != service:
                continue
            if category and error.category != category:
                continue
            if severity and error.severity != severity:
                continue
            if start and error.context.timestamp < start:
                continue
            if end and error.context.timestamp > end:
                continue
            if fingerprint and error.fingerprint != fingerprint:
                continue
            if aggregation_key and error.aggregation_key != aggregation_key:
                continue
            matches.append(log)

        total = len(matches)
        return {
            "logs": matches[offset:offset + limit],
            "total": total,
            "has_more": offset + limit < total,
        }

    async def get_error_patterns(
        self, start: datetime, end: datetime, service: Optional[str] = None
    ) -> Dict[str, Any]:
        """Top errors, breakdowns and hourly trend over the aggregates in a time range"""
        aggregates = await self.store.aggregates_in_range(hour_window(start), hour_window(end), service)

        fingerprint_counts: Dict[str, Dict[str, Any]] = {}
        category_counts: Dict[str, int] = defaultdict(int)
        severity_counts: Dict[str, int] = defaultdict(int)
        user_impact = {impact.value: 0 for impact in UserImpact}
        business_impact = {impact.value: 0 for impact in BusinessImpact}
        hourly: Dict[int, Dict[str, int]] = {}

        for aggregate in aggregates:
            for fp in aggregate.fingerprints:
                if fp in fingerprint_counts:
                    fingerprint_counts[fp]["count"] += aggregate.count
                else:
                    fingerprint_counts[fp] = {
                        "count": aggregate.count,
                        "category": aggregate.category.value,
                        "severity": aggregate.severity.value,
                    }
            category_counts[aggregate.category.value] += aggregate.count
            severity_counts[aggregate.severity.value] += aggregate.count
            for impact, count in aggregate.user_impact_counts.items():
                user_impact[impact] = user_impact.get(impact, 0) + count
            for impact, count in aggregate.business_impact_counts.items():
                business_impact[impact] = business_impact.get(impact, 0) + count

            bucket = hourly.setdefault(aggregate.time_window, {"error_count": 0, "severity_weighted_count": 0})
            bucket["error_count"] += aggregate.count
            bucket["severity_weighted_count"] += aggregate.count * SEVERITY_ORDER[aggregate.severity]

        total_errors = sum(category_counts.values())

        logs = await self.store.list_error_logs()
        sample_messages = {}
        for log in logs:
            sample_messages.setdefault(log.error.fingerprint, log.error.message)

        top = sorted(fingerprint_counts.items(), key=lambda item: item[1]["count"], reverse=True)[:10]
        top_errors = [
            {
                "fingerprint": fp,
                "message": sample_messages.get(fp, "Unknown error"),
                "count": data["count"],
                "category": data["category"],
                "severity": data["severity"],
            }
            for fp, data in top
        ]

        def breakdown(counts: Dict[str, int], key: str) -> List[Dict[str, Any]]:
            return [
                {
                    key: name,
                    "count": count,
                    "percentage": round(count / total_errors * 100) if total_errors else 0,
                }
                for name, count in sorted(counts.items(), key=lambda item: item[1], reverse=True)
            ]

        return {
            "total_errors": total_errors,
            "top_errors": top_errors,
            "category_breakdown": breakdown(category_counts, "category"),
            "severity_distribution": breakdown(severity_counts, "severity"),
            "impact_analysis": {
                "user_impact": user_impact,
                "business_impact": business_impact,
            },
            "hourly_trend": [
                {"hour": hour, **data} for hour, data in sorted(hourly.items())
            ],
        }

    async def mark_resolved(
        self,
        log_id: str,
        resolved_by: str,
        resolved_action: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[ErrorLog]:
        log = await self.store.get_error_log(log_id)
        if log is None:
            logger.warning(f"Cannot resolve unknown error log {log_id}")
            return None
        log.resolution = ErrorResolution(
            resolved_at=self.clock(),
            resolved_by=resolved_by,
            resolved_action=resolved_action,
            notes=notes,
        )
        await self.store.save_error_log(log)
        logger.info(f"Error {log_id} resolved by {resolved_by}")
        return log
