"""
Tier Escalation State Machine

Work items move through DIRECT -> TIER_1 -> TIER_2 -> TIER_3. Transitions are
one-directional and each one must be backed by a complete handoff document.
TIER_3 loops onto itself: there is nothing above it, so callers surface a
failing TIER_3 result for review instead of escalating again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ..core.errors import EscalationError, HandoffValidationError
from ..core.logging import get_logger
from ..core.metrics import record_escalation
from ..schemas.consultation import HandoffDocument, Recommendation, Tier
from .enums import TelemetryEventType
from .telemetry import TelemetryEmitter

logger = get_logger(name=__name__)


@dataclass(slots=True)
class HandoffValidation:
    valid: bool
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EscalationState:
    """Per-item escalation track; mutated only by ``EscalationStateMachine.transition``."""

    work_item_id: str
    tier: Tier
    history: list[Tier] = field(default_factory=list)
    handoffs: list[HandoffDocument] = field(default_factory=list)
    annotations: list[str] = field(default_factory=list)
    terminal: bool = False

    @property
    def transitions(self) -> int:
        return len(self.history) - 1

    def annotate(self, note: str) -> None:
        self.annotations.append(note)


class EscalationStateMachine:
    def __init__(self, *, telemetry: TelemetryEmitter | None = None) -> None:
        self._telemetry = telemetry

    @staticmethod
    def start(work_item_id: str, tier: Tier) -> EscalationState:
        return EscalationState(work_item_id=work_item_id, tier=tier, history=[tier])

    @staticmethod
    def next_tier(tier: Tier) -> Tier:
        ordered = Tier.ordered()
        return ordered[min(tier.rank + 1, len(ordered) - 1)]

    @staticmethod
    def can_escalate(tier: Tier) -> bool:
        return tier is not Tier.TIER_3

    def build_document(
        self,
        state: EscalationState,
        *,
        reason: str,
        assessment: str,
        constraints: Iterable[str] = (),
        recommendations: Recommendation | None = None,
        target_tier: Tier | None = None,
    ) -> HandoffDocument:
        to_tier = self.next_tier(state.tier)
        if target_tier is not None and target_tier.rank > state.tier.rank:
            to_tier = target_tier
        return HandoffDocument(
            work_item_id=state.work_item_id,
            from_tier=state.tier,
            to_tier=to_tier,
            reason=reason,
            assessment=assessment,
            constraints=tuple(constraints),
            recommendations=recommendations,
        )

    @staticmethod
    def validate(document: HandoffDocument) -> HandoffValidation:
        issues: list[str] = []
        if not document.reason.strip():
            issues.append("handoff reason is empty")
        if not document.assessment.strip():
            issues.append("handoff assessment is empty")

        checklist: list[str] = []
        if not document.constraints:
            checklist.append("List the constraints the receiving tier must respect")
        if document.recommendations is None:
            checklist.append("Attach the current recommendation so the receiving tier can build on it")
        if document.to_tier.rank - document.from_tier.rank > 1:
            checklist.append("Target tier skips an intermediate tier; confirm the jump is intended")
        return HandoffValidation(valid=not issues, issues=issues, recommendations=checklist)

    def transition(self, state: EscalationState, document: HandoffDocument) -> Tier:
        if document.work_item_id != state.work_item_id:
            raise EscalationError(
                "Handoff document belongs to a different work item",
                details={"expected": state.work_item_id, "received": document.work_item_id},
            )
        if document.from_tier is not state.tier:
            raise EscalationError(
                f"Handoff originates at {document.from_tier.value} but item is at {state.tier.value}",
                details={"work_item_id": state.work_item_id},
            )

        validation = self.validate(document)
        if not validation.valid:
            note = f"handoff {document.from_tier.value}->{document.to_tier.value} rejected: {'; '.join(validation.issues)}"
            state.annotate(note)
            record_escalation(from_tier=document.from_tier.value, to_tier=document.to_tier.value, outcome="rejected")
            logger.warning(
                "handoff_rejected",
                work_item_id=state.work_item_id,
                from_tier=document.from_tier.value,
                to_tier=document.to_tier.value,
                issues=validation.issues,
            )
            self._emit(
                TelemetryEventType.ESCALATION_REJECTED,
                work_item_id=state.work_item_id,
                from_tier=document.from_tier.value,
                to_tier=document.to_tier.value,
                issues=validation.issues,
            )
            raise HandoffValidationError(
                f"Handoff for '{state.work_item_id}' is incomplete",
                issues=validation.issues,
                details={"tier": state.tier.value},
            )

        if document.to_tier.rank < document.from_tier.rank:
            raise EscalationError(
                f"Cannot downgrade from {document.from_tier.value} to {document.to_tier.value}",
                details={"work_item_id": state.work_item_id},
            )

        if state.tier is Tier.TIER_3:
            state.terminal = True
            state.handoffs.append(document)
            record_escalation(from_tier=Tier.TIER_3.value, to_tier=Tier.TIER_3.value, outcome="terminal")
            logger.info("escalation_terminal", work_item_id=state.work_item_id)
            return Tier.TIER_3

        if document.to_tier is document.from_tier:
            raise EscalationError(
                f"Transition from {document.from_tier.value} must target a higher tier",
                details={"work_item_id": state.work_item_id},
            )

        state.tier = document.to_tier
        state.history.append(document.to_tier)
        state.handoffs.append(document)
        if validation.recommendations:
            state.annotate(f"handoff checklist: {'; '.join(validation.recommendations)}")
        record_escalation(from_tier=document.from_tier.value, to_tier=document.to_tier.value, outcome="accepted")
        logger.info(
            "escalation_transitioned",
            work_item_id=state.work_item_id,
            from_tier=document.from_tier.value,
            to_tier=document.to_tier.value,
            reason=document.reason,
        )
        self._emit(
            TelemetryEventType.ESCALATION_TRANSITIONED,
            work_item_id=state.work_item_id,
            from_tier=document.from_tier.value,
            to_tier=document.to_tier.value,
            reason=document.reason,
        )
        return state.tier

    def _emit(self, event_type: TelemetryEventType, **data: object) -> None:
        if self._telemetry is not None:
            self._telemetry.emit(event_type, **data)


__all__ = ["HandoffValidation", "EscalationState", "EscalationStateMachine"]
