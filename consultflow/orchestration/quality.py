from __future__ import annotations

from typing import Any

from ..core.config import QualitySettings
from ..core.logging import get_logger
from ..core.metrics import record_quality_outcome
from ..schemas.consultation import (
    EscalationVerdict,
    Improvement,
    QualityAssessment,
    QualityLevel,
    Recommendation,
    WorkItem,
)
from .enums import TelemetryEventType
from .telemetry import TelemetryEmitter

logger = get_logger(name=__name__)


class QualityGate:
    """Deterministic accept / improve / escalate decision over a recommendation score."""

    def __init__(self, thresholds: QualitySettings, *, telemetry: TelemetryEmitter | None = None) -> None:
        self._thresholds = thresholds
        self._telemetry = telemetry

    @property
    def thresholds(self) -> QualitySettings:
        return self._thresholds

    def level_for(self, score: float) -> QualityLevel:
        if score >= self._thresholds.excellent:
            return QualityLevel.EXCELLENT
        if score >= self._thresholds.acceptable:
            return QualityLevel.ACCEPTABLE
        if score >= self._thresholds.review:
            return QualityLevel.MINIMAL
        return QualityLevel.INSUFFICIENT

    def evaluate(
        self,
        recommendation: Recommendation,
        item: WorkItem,
        *,
        improvement_attempted: bool = False,
    ) -> QualityAssessment:
        score = recommendation.score
        passed = score >= self._thresholds.acceptable
        reasons: list[str] = []
        if not passed and improvement_attempted and score < self._thresholds.review:
            reasons.append(f"score {score:.2f} below review threshold {self._thresholds.review:.2f} after improvement")
            if not recommendation.improvements:
                reasons.append("consultant offered no further improvements")
        improvements = tuple(sorted(recommendation.improvements, key=lambda improvement: -improvement.priority))
        assessment = QualityAssessment(
            score=score,
            passed=passed,
            level=self.level_for(score),
            improvements=() if passed else improvements,
            escalation=EscalationVerdict(needed=bool(reasons), reasons=tuple(reasons)),
            improvement_attempted=improvement_attempted,
        )
        record_quality_outcome(level=assessment.level.value, passed=passed, score=score)
        logger.debug(
            "quality_evaluated",
            work_item_id=item.id,
            score=score,
            passed=passed,
            escalate=assessment.escalation.needed,
        )
        if self._telemetry is not None:
            self._telemetry.emit(
                TelemetryEventType.QUALITY_EVALUATED,
                work_item_id=item.id,
                score=score,
                passed=passed,
                level=assessment.level.value,
                escalation_needed=assessment.escalation.needed,
                improvement_attempted=improvement_attempted,
            )
        return assessment


def apply_improvements(recommendation: Recommendation, improvements: tuple[Improvement, ...]) -> Recommendation:
    """Return a new recommendation with each improvement applied by area.

    The score rises by the summed impact of the applied improvements, capped at
    1.0. The input recommendation is never modified.
    """
    if not improvements:
        return recommendation
    content: dict[str, Any] = dict(recommendation.content)
    applied = list(recommendation.applied_improvements)
    uplift = 0.0
    for improvement in improvements:
        if improvement.area in applied:
            continue
        if improvement.area == "clarity":
            content.setdefault("rationale", "Improved clarity")
        elif improvement.area == "specificity":
            content.setdefault("timeline", "To be determined")
            content.setdefault("resources", ["Development team"])
        elif improvement.area == "completeness":
            content.setdefault("risks", [])
            content.setdefault("benefits", [])
        else:
            notes = list(content.get("improvements", []))
            notes.extend(improvement.suggestions)
            content["improvements"] = notes
        applied.append(improvement.area)
        uplift += improvement.impact
    return Recommendation(
        content=content,
        score=min(1.0, round(recommendation.score + uplift, 6)),
        improvements=(),
        applied_improvements=tuple(applied),
    )


__all__ = ["QualityGate", "apply_improvements"]
