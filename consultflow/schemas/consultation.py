from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Annotated
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


Score = Annotated[float, Field(ge=0.0, le=1.0)]


class Tier(str, Enum):
    DIRECT = "DIRECT"
    TIER_1 = "TIER_1"
    TIER_2 = "TIER_2"
    TIER_3 = "TIER_3"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def ordered(cls) -> tuple["Tier", ...]:
        return _TIER_ORDER


_TIER_ORDER: tuple[Tier, ...] = (Tier.DIRECT, Tier.TIER_1, Tier.TIER_2, Tier.TIER_3)


class WorkPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class QualityLevel(str, Enum):
    EXCELLENT = "excellent"
    ACCEPTABLE = "acceptable"
    MINIMAL = "minimal"
    INSUFFICIENT = "insufficient"


class WorkItem(BaseModel):
    """A unit of work submitted for consultation; immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    description: str = Field(default="")
    requirements: tuple[str, ...] = Field(default=())
    constraints: tuple[str, ...] = Field(default=())
    dependencies: tuple[str, ...] = Field(default=())
    priority: WorkPriority = Field(default=WorkPriority.NORMAL)
    critical: bool = Field(default=False, description="A failure aborts every later dependency group.")
    metadata: dict[str, Any] = Field(default_factory=dict)


class ComplexityAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Tier
    score: float = Field(..., ge=0.0, le=10.0)
    rationale: tuple[str, ...] = Field(default=())
    dimensions: dict[str, float] = Field(default_factory=dict)
    confidence: Score = 0.8


class TimeEstimate(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: int
    max: int
    unit: str


class RouteAlternative(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Tier
    reason: str
    consultant_id: str | None = None


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    work_item_id: str
    tier: Tier
    consultant_id: str | None = None
    confidence: Score = 0.8
    alternatives: tuple[RouteAlternative, ...] = Field(default=())
    domain: str = "general"
    protocol: str = ""
    estimated_time: TimeEstimate | None = None
    quality_checks: tuple[str, ...] = Field(default=())
    reason: str | None = None


class Improvement(BaseModel):
    model_config = ConfigDict(frozen=True)

    area: str = Field(..., min_length=1)
    suggestions: tuple[str, ...] = Field(default=())
    impact: Score = Field(default=0.0, description="Expected score uplift once the improvement is applied.")
    priority: int = Field(default=0)


class Recommendation(BaseModel):
    """Consultant output. The core reads only ``score`` and ``improvements``; ``content`` is opaque."""

    model_config = ConfigDict(frozen=True)

    content: dict[str, Any] = Field(default_factory=dict)
    score: Score
    improvements: tuple[Improvement, ...] = Field(default=())
    applied_improvements: tuple[str, ...] = Field(default=())


class HandoffRequest(BaseModel):
    """A consultant's declaration that a higher tier should take over."""

    model_config = ConfigDict(frozen=True)

    required: bool = True
    reason: str = ""
    assessment: str = ""
    target_tier: Tier | None = None
    target_consultant: str | None = None
    constraints: tuple[str, ...] = Field(default=())


class ConsultationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendation: Recommendation
    handoff: HandoffRequest | None = None

    @property
    def handoff_required(self) -> bool:
        return self.handoff is not None and self.handoff.required


class ConsultationRecord(BaseModel):
    """Cache entry. Only ``access_count`` and ``last_accessed_at`` change after creation."""

    fingerprint: str
    consultant_id: str
    recommendation: Recommendation
    quality_score: Score
    work_item: WorkItem | None = Field(default=None, description="Item the consultation answered; used for similarity lookups.")
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    access_count: int = Field(default=0, ge=0)
    last_accessed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class EscalationVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    needed: bool = False
    reasons: tuple[str, ...] = Field(default=())


class QualityAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: Score
    passed: bool
    level: QualityLevel
    improvements: tuple[Improvement, ...] = Field(default=())
    escalation: EscalationVerdict = Field(default_factory=EscalationVerdict)
    improvement_attempted: bool = False


class HandoffDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    work_item_id: str
    from_tier: Tier
    to_tier: Tier
    reason: str = ""
    assessment: str = ""
    constraints: tuple[str, ...] = Field(default=())
    recommendations: Recommendation | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ErrorDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    recovery_path: tuple[str, ...] = Field(default=())


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    work_item_id: str
    status: ExecutionStatus
    consultant_id: str | None = None
    tier: Tier | None = None
    recommendation: Recommendation | None = None
    quality_assessment: QualityAssessment | None = None
    duration_ms: float = 0.0
    error: ErrorDetail | None = None
    fallback: bool = False
    cached: bool = False
    needs_review: bool = False
    tiers_visited: tuple[Tier, ...] = Field(default=())
    routing_history: tuple[RoutingDecision, ...] = Field(default=())
    annotations: tuple[str, ...] = Field(default=())
    context_version: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED


class ExecutionRecord(BaseModel):
    """Audit record of one batch run."""

    record_id: str = Field(default_factory=lambda: str(uuid4()))
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    results: list[ExecutionResult] = Field(default_factory=list)
    groups: list[list[str]] = Field(default_factory=list)
    group_durations_ms: list[float] = Field(default_factory=list)
    aborted: bool = False
    aborted_after_group: int | None = None
    abort_reason: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    def summary(self) -> dict[str, Any]:
        succeeded = sum(1 for result in self.results if result.succeeded)
        return {
            "record_id": self.record_id,
            "status": self.status.value,
            "total": len(self.results),
            "succeeded": succeeded,
            "failed": len(self.results) - succeeded,
            "fallbacks": sum(1 for result in self.results if result.fallback),
            "groups": len(self.groups),
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
        }


class ProjectContext(BaseModel):
    """Immutable snapshot of shared project state at a given version."""

    model_config = ConfigDict(frozen=True)

    decisions: tuple[dict[str, Any], ...] = Field(default=())
    constraints: tuple[str, ...] = Field(default=())
    objectives: tuple[str, ...] = Field(default=())
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=_utcnow)


__all__ = [
    "Tier",
    "WorkPriority",
    "ExecutionStatus",
    "QualityLevel",
    "WorkItem",
    "ComplexityAssessment",
    "TimeEstimate",
    "RouteAlternative",
    "RoutingDecision",
    "Improvement",
    "Recommendation",
    "HandoffRequest",
    "ConsultationOutcome",
    "ConsultationRecord",
    "EscalationVerdict",
    "QualityAssessment",
    "HandoffDocument",
    "ErrorDetail",
    "ExecutionResult",
    "ExecutionRecord",
    "ProjectContext",
]
