"""
Recovery workflows and cross-service orchestration
"""

from .orchestrator import RecoveryOrchestrator
from .status import OrchestrationMetrics, RecoveryStatusService
from .steps import (
    RecoveryStepAction,
    StepContext,
    StepRegistry,
    StepResult,
    default_step_registry,
)
from .workflow_engine import InitiateResult, RecoveryResult, RecoveryWorkflowEngine, StepExecution

__all__ = [
    "RecoveryOrchestrator",
    "OrchestrationMetrics",
    "RecoveryStatusService",
    "RecoveryStepAction",
    "StepContext",
    "StepRegistry",
    "StepResult",
    "default_step_registry",
    "InitiateResult",
    "RecoveryResult",
    "RecoveryWorkflowEngine",
    "StepExecution",
]
