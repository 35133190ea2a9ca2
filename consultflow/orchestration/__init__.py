"""
Orchestration Package

Core components of the tiered consultation workflow:
- Complexity classification and tier routing
- Consultation cache with quality-weighted expiry
- Tier escalation state machine and handoff validation
- Quality gate with one improvement pass
- Execution orchestrator with a bounded recovery chain
- Dependency-ordered parallel batch execution
- Versioned project context
"""

from .cache import ConsultationCache, SimilarConsultation, fingerprint, task_similarity
from .classifier import ComplexityClassifier, WeightedComplexityClassifier
from .context import ProjectContextStore
from .enums import CacheFreshness, TelemetryEventType
from .escalation import EscalationState, EscalationStateMachine, HandoffValidation
from .orchestrator import ExecutionOrchestrator, OrchestratorStats
from .parallel_executor import ParallelDependencyExecutor, compute_depths, plan_groups
from .quality import QualityGate, apply_improvements
from .retry import RetryBudget, RetryPolicy
from .routing import ConsultantDirectory, Router, TierRouter
from .store import (
    CONSULTATIONS,
    CONTEXT,
    EXECUTIONS,
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordStore,
    RedisRecordStore,
    build_record_store,
)
from .telemetry import (
    InMemoryTelemetrySink,
    LoggingTelemetrySink,
    TelemetryEmitter,
    TelemetryEvent,
    TelemetrySink,
    WebhookTelemetrySink,
)

__all__ = [
    # Core
    "ExecutionOrchestrator",
    "OrchestratorStats",
    "ParallelDependencyExecutor",
    "compute_depths",
    "plan_groups",
    # Decisions
    "ComplexityClassifier",
    "WeightedComplexityClassifier",
    "Router",
    "TierRouter",
    "ConsultantDirectory",
    "QualityGate",
    "apply_improvements",
    "EscalationState",
    "EscalationStateMachine",
    "HandoffValidation",
    "RetryBudget",
    "RetryPolicy",
    # State
    "ConsultationCache",
    "SimilarConsultation",
    "fingerprint",
    "task_similarity",
    "ProjectContextStore",
    "RecordStore",
    "InMemoryRecordStore",
    "RedisRecordStore",
    "PostgresRecordStore",
    "build_record_store",
    "CONSULTATIONS",
    "CONTEXT",
    "EXECUTIONS",
    # Telemetry
    "CacheFreshness",
    "TelemetryEventType",
    "TelemetryEvent",
    "TelemetrySink",
    "TelemetryEmitter",
    "InMemoryTelemetrySink",
    "LoggingTelemetrySink",
    "WebhookTelemetrySink",
]
