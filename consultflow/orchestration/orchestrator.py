"""
Execution Orchestrator

Drives one work item through cache lookup, consultation, the quality gate,
escalation, and context update. Failures of the selected route fall through a
bounded recovery chain: the routing alternatives first, then a DIRECT
pass-through flagged as a fallback, and finally ``ExhaustedError``.
"""

from __future__ import annotations

import asyncio
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from ..consultants.base import Consultant, ConsultantRegistry
from ..core.config import Settings, get_settings
from ..core.errors import (
    ClassificationError,
    ConsultationError,
    EscalationError,
    ExhaustedError,
    OrchestrationError,
    ValidationError,
)
from ..core.logging import configure_logging, get_logger
from ..core.metrics import observe_execution, record_recovery_attempt, render_metrics
from ..schemas.consultation import (
    ConsultationOutcome,
    ErrorDetail,
    ExecutionResult,
    ExecutionStatus,
    HandoffRequest,
    ProjectContext,
    QualityAssessment,
    Recommendation,
    RoutingDecision,
    Tier,
    WorkItem,
)
from .cache import ConsultationCache, fingerprint
from .classifier import ComplexityClassifier, WeightedComplexityClassifier
from .context import ProjectContextStore
from .enums import TelemetryEventType
from .escalation import EscalationState, EscalationStateMachine
from .quality import QualityGate, apply_improvements
from .retry import RetryBudget, RetryPolicy
from .routing import TierRouter
from .store import RecordStore, build_record_store
from .telemetry import TelemetryEmitter, TelemetrySink

logger = get_logger(name=__name__)


@dataclass(slots=True)
class OrchestratorStats:
    tasks_processed: int = 0
    completed: int = 0
    failed: int = 0
    cache_hits: int = 0
    escalations: int = 0
    fallbacks: int = 0
    needs_review: int = 0
    routing_distribution: Counter = field(default_factory=Counter)
    quality_scores: list[float] = field(default_factory=list)


class ExecutionOrchestrator:
    def __init__(
        self,
        *,
        registry: ConsultantRegistry,
        settings: Settings | None = None,
        router: TierRouter | None = None,
        classifier: ComplexityClassifier | None = None,
        cache: ConsultationCache | None = None,
        quality_gate: QualityGate | None = None,
        escalation: EscalationStateMachine | None = None,
        context_store: ProjectContextStore | None = None,
        record_store: RecordStore | None = None,
        telemetry: TelemetryEmitter | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._telemetry = telemetry or TelemetryEmitter()
        self._registry = registry
        self._record_store = record_store
        self._router = router or TierRouter(telemetry=self._telemetry)
        self._classifier: ComplexityClassifier = classifier or WeightedComplexityClassifier()
        self._cache = cache or ConsultationCache(
            self._settings.cache,
            record_store=record_store,
            telemetry=self._telemetry,
        )
        self._gate = quality_gate or QualityGate(self._settings.quality, telemetry=self._telemetry)
        self._escalation = escalation or EscalationStateMachine(telemetry=self._telemetry)
        self._context = context_store or ProjectContextStore(record_store=record_store, telemetry=self._telemetry)
        self._retry_policy = RetryPolicy.from_settings(self._settings.execution)
        self._timeout_seconds = self._settings.execution.timeout_ms / 1000
        self._history: deque[ExecutionResult] = deque(maxlen=self._settings.execution.history_limit)
        self._stats = OrchestratorStats()

    @classmethod
    async def create(
        cls,
        *,
        registry: ConsultantRegistry,
        settings: Settings | None = None,
        record_store: RecordStore | None = None,
        extra_sinks: Iterable[TelemetrySink] = (),
    ) -> "ExecutionOrchestrator":
        """Build an orchestrator with persisted cache records and context restored."""
        resolved = settings or get_settings()
        configure_logging(resolved.observability.log_level)
        store = record_store or build_record_store(resolved.storage)
        telemetry = TelemetryEmitter.from_settings(resolved.telemetry, extra_sinks=extra_sinks)
        context_store = await ProjectContextStore.load(store, telemetry=telemetry)
        cache = ConsultationCache(resolved.cache, record_store=store, telemetry=telemetry)
        await cache.load()
        return cls(
            registry=registry,
            settings=resolved,
            cache=cache,
            context_store=context_store,
            record_store=store,
            telemetry=telemetry,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def cache(self) -> ConsultationCache:
        return self._cache

    @property
    def context_store(self) -> ProjectContextStore:
        return self._context

    @property
    def telemetry(self) -> TelemetryEmitter:
        return self._telemetry

    @property
    def record_store(self) -> RecordStore | None:
        return self._record_store

    async def process(self, item: WorkItem) -> ExecutionResult:
        """Classify, route, and execute a single work item."""
        started = datetime.now(timezone.utc)
        try:
            assessment = self._classifier.classify(item)
            decision = self._router.route(item, assessment, self._context.snapshot())
        except Exception as exc:
            self._stats.tasks_processed += 1
            self._note_failure(item, None, exc, started=started)
            raise
        return await self.execute(decision, item=item)

    async def execute_item(self, item: WorkItem) -> ExecutionResult:
        """Like ``process`` but converts per-item failures into a failed result."""
        started = datetime.now(timezone.utc)
        try:
            return await self.process(item)
        except OrchestrationError as exc:
            return self._failed_result(item, exc, started=started)
        except Exception as exc:
            logger.exception("work_item_unexpected_failure", work_item_id=item.id)
            return self._failed_result(item, exc, started=started)

    async def execute(self, decision: RoutingDecision, *, item: WorkItem) -> ExecutionResult:
        if decision.work_item_id != item.id:
            raise ValueError(f"Routing decision targets '{decision.work_item_id}', not '{item.id}'")
        started = datetime.now(timezone.utc)
        budget = RetryBudget.from_settings(self._settings.execution)
        self._stats.tasks_processed += 1
        self._stats.routing_distribution[decision.tier.value] += 1
        trail: list[RoutingDecision] = []
        try:
            return await self._run(decision, item, budget=budget, started=started, trail=trail)
        except (ValidationError, EscalationError, ClassificationError) as exc:
            self._note_failure(item, decision.tier, exc, started=started)
            if isinstance(exc, ValidationError):
                issues = list(getattr(exc, "issues", ()))
                raise EscalationError(
                    f"Escalation for '{item.id}' blocked: {exc.message}",
                    details={**exc.details, "issues": issues, "annotations": [f"handoff rejected: {'; '.join(issues)}"]},
                ) from exc
            raise
        except Exception as exc:
            logger.warning(
                "execution_route_failed",
                work_item_id=item.id,
                tier=decision.tier.value,
                consultant=decision.consultant_id,
                error=str(exc),
            )
            try:
                return await self._recover(decision, item, exc, budget=budget, started=started, trail=trail)
            except ExhaustedError as exhausted:
                self._note_failure(item, decision.tier, exhausted, started=started)
                raise

    def export_metrics(self) -> tuple[bytes, str] | None:
        if not self._settings.observability.prometheus_enabled:
            return None
        return render_metrics()

    def recent_results(self, limit: int | None = None) -> list[ExecutionResult]:
        results = list(self._history)
        if limit is not None:
            results = results[-limit:]
        return results

    def get_stats(self) -> dict[str, Any]:
        scores = self._stats.quality_scores
        cache_stats = self._cache.stats()
        return {
            "tasks_processed": self._stats.tasks_processed,
            "completed": self._stats.completed,
            "failed": self._stats.failed,
            "escalations": self._stats.escalations,
            "fallbacks": self._stats.fallbacks,
            "needs_review": self._stats.needs_review,
            "cache_hits": self._stats.cache_hits,
            "cache_hit_rate": cache_stats["hit_rate"],
            "average_quality_score": sum(scores) / len(scores) if scores else 0.0,
            "routing_distribution": dict(self._stats.routing_distribution),
            "context_version": self._context.version,
        }

    async def _run(
        self,
        decision: RoutingDecision,
        item: WorkItem,
        *,
        budget: RetryBudget,
        started: datetime,
        recovery_path: Sequence[str] = (),
        trail: list[RoutingDecision] | None = None,
    ) -> ExecutionResult:
        state = self._escalation.start(item.id, decision.tier)
        # decisions from earlier failed attempts stay at the front of the audit trail
        decisions = trail if trail is not None else []
        prior_tiers = tuple(earlier.tier for earlier in decisions)
        decisions.append(decision)
        current = decision

        while True:
            context = self._context.snapshot()
            consultant = self._registry.resolve(current.consultant_id)

            if current.tier is Tier.DIRECT:
                outcome = await self._consult(consultant, item, context, budget)
                if outcome.handoff_required and outcome.handoff is not None:
                    current = self._escalate_on_handoff(state, item, context, outcome.handoff, outcome.recommendation)
                    decisions.append(current)
                    continue
                return await self._complete(
                    item,
                    state,
                    decisions,
                    recommendation=outcome.recommendation,
                    quality=None,
                    started=started,
                    recovery_path=recovery_path,
                    prior_tiers=prior_tiers,
                )

            key = fingerprint(consultant.consultant_id, item, context)
            record = await self._cache.get(key)
            if record is not None:
                return await self._complete(
                    item,
                    state,
                    decisions,
                    recommendation=record.recommendation,
                    quality=self._gate.evaluate(record.recommendation, item),
                    started=started,
                    cached=True,
                    recovery_path=recovery_path,
                    prior_tiers=prior_tiers,
                )

            outcome = await self._consult(consultant, item, context, budget)
            terminal_handoff = False
            if outcome.handoff_required and outcome.handoff is not None:
                if self._escalation.can_escalate(state.tier):
                    current = self._escalate_on_handoff(state, item, context, outcome.handoff, outcome.recommendation)
                    decisions.append(current)
                    continue
                terminal_handoff = True
                state.annotate("handoff requested at TIER_3; result surfaced for review")

            recommendation = outcome.recommendation
            quality = self._gate.evaluate(recommendation, item)
            if not quality.passed:
                recommendation = apply_improvements(recommendation, quality.improvements)
                self._telemetry.emit(
                    TelemetryEventType.QUALITY_IMPROVED,
                    work_item_id=item.id,
                    areas=list(recommendation.applied_improvements),
                    score_before=quality.score,
                    score_after=recommendation.score,
                )
                quality = self._gate.evaluate(recommendation, item, improvement_attempted=True)

            if quality.passed and not terminal_handoff:
                await self._cache.store(
                    key,
                    consultant_id=consultant.consultant_id,
                    recommendation=recommendation,
                    quality_score=quality.score,
                    item=item,
                )
                return await self._complete(
                    item,
                    state,
                    decisions,
                    recommendation=recommendation,
                    quality=quality,
                    started=started,
                    recovery_path=recovery_path,
                    prior_tiers=prior_tiers,
                )

            if quality.escalation.needed and not terminal_handoff:
                document = self._escalation.build_document(
                    state,
                    reason="quality gate requires escalation",
                    assessment="; ".join(quality.escalation.reasons),
                    constraints=item.constraints,
                    recommendations=recommendation,
                )
                next_tier = self._escalation.transition(state, document)
                if not state.terminal:
                    current = self._router.route_to_tier(
                        item,
                        next_tier,
                        context,
                        reason=f"escalated from {document.from_tier.value}: {document.reason}",
                    )
                    decisions.append(current)
                    continue
                state.annotate("quality gate failed at TIER_3; result surfaced for review")

            return await self._complete(
                item,
                state,
                decisions,
                recommendation=recommendation,
                quality=quality,
                started=started,
                needs_review=True,
                recovery_path=recovery_path,
                prior_tiers=prior_tiers,
            )

    def _escalate_on_handoff(
        self,
        state: EscalationState,
        item: WorkItem,
        context: ProjectContext,
        handoff: HandoffRequest,
        recommendation: Recommendation,
    ) -> RoutingDecision:
        document = self._escalation.build_document(
            state,
            reason=handoff.reason,
            assessment=handoff.assessment,
            constraints=tuple(item.constraints) + tuple(handoff.constraints),
            recommendations=recommendation,
            target_tier=handoff.target_tier,
        )
        next_tier = self._escalation.transition(state, document)
        return self._router.route_to_tier(
            item,
            next_tier,
            context,
            reason=f"handoff from {document.from_tier.value}: {document.reason}",
            preferred_consultant=handoff.target_consultant,
        )

    async def _consult(
        self,
        consultant: Consultant,
        item: WorkItem,
        context: ProjectContext,
        budget: RetryBudget,
    ) -> ConsultationOutcome:
        async for attempt in self._retry_policy.retrying(budget):
            with attempt:
                budget.consume()
                return await self._invoke(consultant, item, context)
        raise ConsultationError(f"Consultant '{consultant.consultant_id}' produced no outcome")  # pragma: no cover

    async def _invoke(self, consultant: Consultant, item: WorkItem, context: ProjectContext) -> ConsultationOutcome:
        try:
            outcome = await asyncio.wait_for(consultant.consult(item, context), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ConsultationError(
                f"Consultant '{consultant.consultant_id}' timed out after {self._timeout_seconds}s",
                details={"consultant_id": consultant.consultant_id},
            ) from exc
        except ConsultationError:
            raise
        except Exception as exc:
            raise ConsultationError(
                f"Consultant '{consultant.consultant_id}' failed: {exc}",
                details={"consultant_id": consultant.consultant_id},
            ) from exc
        if not isinstance(outcome, ConsultationOutcome):
            raise ConsultationError(
                f"Consultant '{consultant.consultant_id}' returned {type(outcome).__name__}",
                details={"consultant_id": consultant.consultant_id},
            )
        return outcome

    async def _recover(
        self,
        decision: RoutingDecision,
        item: WorkItem,
        error: Exception,
        *,
        budget: RetryBudget,
        started: datetime,
        trail: list[RoutingDecision] | None = None,
    ) -> ExecutionResult:
        trail = trail if trail is not None else [decision]
        path = [_describe_step("primary", decision.tier, decision.consultant_id, error)]
        for alternative in decision.alternatives:
            if alternative.tier is Tier.DIRECT:
                continue
            candidate = self._router.route_to_tier(
                item,
                alternative.tier,
                self._context.snapshot(),
                reason=f"recovery: {alternative.reason}",
                preferred_consultant=alternative.consultant_id,
            )
            self._telemetry.emit(
                TelemetryEventType.RECOVERY_ATTEMPTED,
                work_item_id=item.id,
                tier=candidate.tier.value,
                consultant_id=candidate.consultant_id,
            )
            try:
                result = await self._run(
                    candidate,
                    item,
                    budget=budget,
                    started=started,
                    recovery_path=tuple(path),
                    trail=trail,
                )
            except Exception as exc:
                record_recovery_attempt(stage="alternative", outcome="failed")
                path.append(_describe_step("alternative", candidate.tier, candidate.consultant_id, exc))
                logger.warning(
                    "recovery_alternative_failed",
                    work_item_id=item.id,
                    tier=candidate.tier.value,
                    consultant=candidate.consultant_id,
                    error=str(exc),
                )
                continue
            record_recovery_attempt(stage="alternative", outcome="succeeded")
            return result

        fallback_state = self._escalation.start(item.id, Tier.DIRECT)
        fallback_decision = RoutingDecision(
            work_item_id=item.id,
            tier=Tier.DIRECT,
            consultant_id=None,
            confidence=0.0,
            protocol="direct-implementation",
            reason="fallback after recovery chain",
        )
        try:
            outcome = await self._invoke(self._registry.direct_handler, item, self._context.snapshot())
        except Exception as exc:
            record_recovery_attempt(stage="fallback", outcome="failed")
            path.append(_describe_step("fallback", Tier.DIRECT, None, exc))
            logger.error("recovery_exhausted", work_item_id=item.id, recovery_path=path)
            raise ExhaustedError(
                f"All recovery options for '{item.id}' failed",
                recovery_path=path,
                details={"tier": decision.tier.value, "consultant_id": decision.consultant_id},
            ) from exc

        record_recovery_attempt(stage="fallback", outcome="succeeded")
        path.append("fallback:DIRECT succeeded")
        self._telemetry.emit(
            TelemetryEventType.RECOVERY_FALLBACK,
            work_item_id=item.id,
            recovery_path=path,
            original_error=type(error).__name__,
        )
        return await self._complete(
            item,
            fallback_state,
            [*trail, fallback_decision],
            recommendation=outcome.recommendation,
            quality=None,
            started=started,
            fallback=True,
            recovery_path=path,
            prior_tiers=tuple(earlier.tier for earlier in trail),
        )

    async def _complete(
        self,
        item: WorkItem,
        state: EscalationState,
        decisions: Sequence[RoutingDecision],
        *,
        recommendation: Recommendation,
        quality: QualityAssessment | None,
        started: datetime,
        cached: bool = False,
        fallback: bool = False,
        needs_review: bool = False,
        recovery_path: Sequence[str] = (),
        prior_tiers: Sequence[Tier] = (),
    ) -> ExecutionResult:
        final = decisions[-1]
        context_version: int | None = None
        if not cached:
            context_version = await self._context.record_decision(
                {
                    "work_item_id": item.id,
                    "tier": state.tier.value,
                    "consultant_id": final.consultant_id,
                    "quality_score": quality.score if quality is not None else None,
                    "fallback": fallback,
                    "needs_review": needs_review,
                }
            )
        annotations = list(state.annotations)
        annotations.extend(f"recovery: {step}" for step in recovery_path)
        duration_ms = (datetime.now(timezone.utc) - started).total_seconds() * 1000
        result = ExecutionResult(
            work_item_id=item.id,
            status=ExecutionStatus.COMPLETED,
            consultant_id=final.consultant_id,
            tier=state.tier,
            recommendation=recommendation,
            quality_assessment=quality,
            duration_ms=duration_ms,
            fallback=fallback,
            cached=cached,
            needs_review=needs_review,
            tiers_visited=(*prior_tiers, *state.history),
            routing_history=tuple(decisions),
            annotations=tuple(annotations),
            context_version=context_version,
        )

        self._stats.completed += 1
        self._stats.escalations += state.transitions
        self._stats.cache_hits += int(cached)
        self._stats.fallbacks += int(fallback)
        self._stats.needs_review += int(needs_review)
        if quality is not None:
            self._stats.quality_scores.append(quality.score)
        self._history.append(result)
        observe_execution(status=result.status.value, tier=state.tier.value, latency=duration_ms / 1000)
        logger.info(
            "work_item_completed",
            work_item_id=item.id,
            tier=state.tier.value,
            consultant=final.consultant_id,
            cached=cached,
            fallback=fallback,
            needs_review=needs_review,
            duration_ms=round(duration_ms, 2),
        )
        self._telemetry.emit(
            TelemetryEventType.EXECUTION_COMPLETED,
            work_item_id=item.id,
            tier=state.tier.value,
            consultant_id=final.consultant_id,
            cached=cached,
            fallback=fallback,
            needs_review=needs_review,
            tiers_visited=[tier.value for tier in state.history],
        )
        return result

    def _note_failure(self, item: WorkItem, tier: Tier | None, error: Exception, *, started: datetime) -> None:
        self._stats.failed += 1
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        tier_label = tier.value if tier is not None else "unrouted"
        observe_execution(status=ExecutionStatus.FAILED.value, tier=tier_label, latency=duration)
        self._telemetry.emit(
            TelemetryEventType.EXECUTION_FAILED,
            work_item_id=item.id,
            tier=tier.value if tier is not None else None,
            error_kind=getattr(error, "kind", type(error).__name__),
            message=str(error),
        )

    def _failed_result(self, item: WorkItem, error: Exception, *, started: datetime) -> ExecutionResult:
        details: dict[str, Any] = getattr(error, "details", {}) or {}
        tier_value = details.get("tier")
        result = ExecutionResult(
            work_item_id=item.id,
            status=ExecutionStatus.FAILED,
            consultant_id=details.get("consultant_id"),
            tier=Tier(tier_value) if tier_value else None,
            duration_ms=(datetime.now(timezone.utc) - started).total_seconds() * 1000,
            error=ErrorDetail(
                kind=getattr(error, "kind", type(error).__name__),
                message=str(error),
                recovery_path=tuple(getattr(error, "recovery_path", ())),
            ),
            annotations=tuple(details.get("annotations", ())),
        )
        self._history.append(result)
        logger.warning(
            "work_item_failed",
            work_item_id=item.id,
            error_kind=result.error.kind if result.error else None,
            message=str(error),
        )
        return result


def _describe_step(stage: str, tier: Tier, consultant_id: str | None, error: Exception) -> str:
    kind = getattr(error, "kind", type(error).__name__)
    return f"{stage}:{tier.value}:{consultant_id or 'direct'} failed ({kind})"


__all__ = ["OrchestratorStats", "ExecutionOrchestrator"]
