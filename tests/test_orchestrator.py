from __future__ import annotations

import asyncio

import pytest

from consultflow.consultants.base import ConsultantRegistry
from consultflow.core.errors import ClassificationError, EscalationError, ExhaustedError, HandoffValidationError
from consultflow.orchestration.enums import TelemetryEventType
from consultflow.orchestration.orchestrator import ExecutionOrchestrator
from consultflow.orchestration.routing import TierRouter
from consultflow.orchestration.store import InMemoryRecordStore
from consultflow.orchestration.telemetry import InMemoryTelemetrySink, TelemetryEmitter
from consultflow.schemas.consultation import (
    ComplexityAssessment,
    ConsultationOutcome,
    ExecutionStatus,
    HandoffRequest,
    Improvement,
    ProjectContext,
    Tier,
    WorkItem,
)

from tests.helpers.stubs import FailingConsultant, ScriptedConsultant, make_settings, outcome

ITEM = WorkItem(id="plugin-arch", description="Design the plugin architecture", constraints=("python only",))


class _SleepyConsultant:
    def __init__(self, consultant_id: str, tier: Tier) -> None:
        self.consultant_id = consultant_id
        self.tier = tier
        self.domain = "general"

    async def consult(self, item: WorkItem, context: ProjectContext) -> ConsultationOutcome:
        await asyncio.sleep(1)
        return outcome(0.9)


class _FixedClassifier:
    def __init__(self, tier: Tier) -> None:
        self.tier = tier

    def classify(self, item: WorkItem) -> ComplexityAssessment:
        return ComplexityAssessment(tier=self.tier, score=5.0)


def _orchestrator(
    *consultants: object,
    direct: object | None = None,
    classifier: _FixedClassifier | None = None,
    **execution: object,
) -> ExecutionOrchestrator:
    registry = ConsultantRegistry(direct_handler=direct)  # type: ignore[arg-type]
    for consultant in consultants:
        registry.register(consultant)  # type: ignore[arg-type]
    return ExecutionOrchestrator(registry=registry, settings=make_settings(**execution), classifier=classifier)


def _decision(tier: Tier, item: WorkItem = ITEM):
    return TierRouter().route_to_tier(item, tier, ProjectContext())


@pytest.mark.asyncio
async def test_accepted_result_is_cached_and_reused_without_consulting() -> None:
    consultant = ScriptedConsultant("architecture-generalist", Tier.TIER_1, [outcome(0.9, summary="plugin registry")])
    orchestrator = _orchestrator(consultant)

    first = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)
    second = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert first.status is ExecutionStatus.COMPLETED
    assert not first.cached
    assert second.cached
    assert second.recommendation == first.recommendation
    assert len(consultant.calls) == 1
    assert first.context_version == 1
    assert orchestrator.context_store.version == 1


@pytest.mark.asyncio
async def test_tier_one_handoff_moves_work_to_tier_two() -> None:
    generalist = ScriptedConsultant(
        "architecture-generalist",
        Tier.TIER_1,
        [outcome(0.5, handoff=HandoffRequest(reason="needs plugin isolation expertise", assessment="sandboxing required"))],
    )
    specialist = ScriptedConsultant("database-specialist", Tier.TIER_2, [outcome(0.92, summary="sandboxed loader")])
    orchestrator = _orchestrator(generalist, specialist)

    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert result.tier is Tier.TIER_2
    assert result.consultant_id == "database-specialist"
    assert result.tiers_visited == (Tier.TIER_1, Tier.TIER_2)
    assert [decision.tier for decision in result.routing_history] == [Tier.TIER_1, Tier.TIER_2]
    assert result.recommendation is not None
    assert result.recommendation.content == {"summary": "sandboxed loader"}
    assert orchestrator.get_stats()["escalations"] == 1


@pytest.mark.asyncio
async def test_incomplete_handoff_is_blocked_and_item_stays_put() -> None:
    generalist = ScriptedConsultant(
        "architecture-generalist",
        Tier.TIER_1,
        [outcome(0.5, handoff=HandoffRequest(reason="", assessment="too broad"))],
    )
    specialist = ScriptedConsultant("database-specialist", Tier.TIER_2, [outcome(0.9)])
    orchestrator = _orchestrator(generalist, specialist, classifier=_FixedClassifier(Tier.TIER_1))

    with pytest.raises(EscalationError) as excinfo:
        await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert isinstance(excinfo.value.__cause__, HandoffValidationError)
    assert excinfo.value.details["tier"] == "TIER_1"
    assert specialist.calls == []

    failed = await orchestrator.execute_item(ITEM)
    assert failed.status is ExecutionStatus.FAILED
    assert failed.error is not None and failed.error.kind == "EscalationError"


@pytest.mark.asyncio
async def test_failing_route_and_alternatives_fall_back_to_direct() -> None:
    primary = FailingConsultant("architecture-generalist", Tier.TIER_1)
    alternative = FailingConsultant("database-specialist", Tier.TIER_2)
    orchestrator = _orchestrator(primary, alternative)

    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert result.status is ExecutionStatus.COMPLETED
    assert result.fallback
    assert result.tier is Tier.DIRECT
    assert result.consultant_id is None
    assert len(primary.calls) == 3
    assert len(alternative.calls) == 3
    assert result.tiers_visited == (Tier.TIER_1, Tier.TIER_2, Tier.DIRECT)
    assert [decision.tier for decision in result.routing_history] == [Tier.TIER_1, Tier.TIER_2, Tier.DIRECT]
    assert any(note.startswith("recovery: primary:TIER_1") for note in result.annotations)
    assert orchestrator.get_stats()["fallbacks"] == 1


@pytest.mark.asyncio
async def test_successful_alternative_keeps_primary_route_in_history() -> None:
    primary = FailingConsultant("architecture-generalist", Tier.TIER_1)
    alternative = ScriptedConsultant("database-specialist", Tier.TIER_2, [outcome(0.9, summary="isolated loader")])
    orchestrator = _orchestrator(primary, alternative)

    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert result.status is ExecutionStatus.COMPLETED
    assert not result.fallback
    assert result.consultant_id == "database-specialist"
    assert result.tiers_visited == (Tier.TIER_1, Tier.TIER_2)
    assert [decision.consultant_id for decision in result.routing_history] == [
        "architecture-generalist",
        "database-specialist",
    ]
    assert any(note.startswith("recovery: primary:TIER_1") for note in result.annotations)


@pytest.mark.asyncio
async def test_failing_fallback_exhausts_recovery() -> None:
    orchestrator = _orchestrator(direct=FailingConsultant("direct", Tier.DIRECT))

    with pytest.raises(ExhaustedError) as excinfo:
        await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    path = excinfo.value.recovery_path
    assert path[0].startswith("primary:TIER_1:architecture-generalist")
    assert path[-1].startswith("fallback:DIRECT")
    assert len(path) == 3


@pytest.mark.asyncio
async def test_retry_budget_caps_invocations_across_the_chain() -> None:
    primary = FailingConsultant("architecture-generalist", Tier.TIER_1)
    alternative = FailingConsultant("database-specialist", Tier.TIER_2)
    orchestrator = _orchestrator(primary, alternative, max_total_attempts=2)

    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert len(primary.calls) == 2
    assert alternative.calls == []
    assert result.fallback


@pytest.mark.asyncio
async def test_transient_failure_is_retried() -> None:
    consultant = ScriptedConsultant(
        "architecture-generalist",
        Tier.TIER_1,
        [RuntimeError("flaky"), outcome(0.85)],
    )
    orchestrator = _orchestrator(consultant)
    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)
    assert not result.fallback
    assert len(consultant.calls) == 2


@pytest.mark.asyncio
async def test_timeout_counts_as_consultation_failure() -> None:
    orchestrator = _orchestrator(
        _SleepyConsultant("architecture-generalist", Tier.TIER_1),
        timeout_ms=10,
        retry_attempts=1,
    )
    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)
    assert result.fallback
    assert any("ConsultationError" in note for note in result.annotations)


@pytest.mark.asyncio
async def test_improvement_pass_can_lift_score_over_threshold() -> None:
    consultant = ScriptedConsultant(
        "architecture-generalist",
        Tier.TIER_1,
        [outcome(0.7, improvements=(Improvement(area="completeness", impact=0.1),))],
    )
    orchestrator = _orchestrator(consultant)
    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert result.quality_assessment is not None
    assert result.quality_assessment.passed
    assert result.recommendation is not None
    assert result.recommendation.applied_improvements == ("completeness",)
    assert result.tier is Tier.TIER_1
    assert len(orchestrator.cache) == 1


@pytest.mark.asyncio
async def test_low_quality_after_improvement_escalates() -> None:
    generalist = ScriptedConsultant(
        "architecture-generalist",
        Tier.TIER_1,
        [outcome(0.5, improvements=(Improvement(area="clarity", impact=0.05),))],
    )
    specialist = ScriptedConsultant("database-specialist", Tier.TIER_2, [outcome(0.8)])
    orchestrator = _orchestrator(generalist, specialist)

    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert result.tiers_visited == (Tier.TIER_1, Tier.TIER_2)
    assert result.consultant_id == "database-specialist"
    assert not result.needs_review


@pytest.mark.asyncio
async def test_review_band_result_is_accepted_for_review_and_not_cached() -> None:
    consultant = ScriptedConsultant(
        "architecture-generalist",
        Tier.TIER_1,
        [outcome(0.6, improvements=(Improvement(area="specificity", impact=0.05),))],
    )
    orchestrator = _orchestrator(consultant)
    result = await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)

    assert result.status is ExecutionStatus.COMPLETED
    assert result.needs_review
    assert result.tier is Tier.TIER_1
    assert len(orchestrator.cache) == 0


@pytest.mark.asyncio
async def test_tier_three_quality_failure_is_surfaced_for_review() -> None:
    architect = ScriptedConsultant("system-architect", Tier.TIER_3, [outcome(0.3)])
    orchestrator = _orchestrator(architect)

    result = await orchestrator.execute(_decision(Tier.TIER_3), item=ITEM)

    assert result.needs_review
    assert result.tier is Tier.TIER_3
    assert result.tiers_visited == (Tier.TIER_3,)
    assert len(architect.calls) == 1


@pytest.mark.asyncio
async def test_direct_work_uses_pass_through_handler() -> None:
    orchestrator = _orchestrator()
    result = await orchestrator.process(WorkItem(id="typo", description="fix typo in footer"))

    assert result.tier is Tier.DIRECT
    assert result.consultant_id is None
    assert result.quality_assessment is None
    assert not result.fallback
    assert result.recommendation is not None
    assert result.recommendation.content["approach"] == "direct-implementation"


@pytest.mark.asyncio
async def test_mismatched_decision_is_rejected() -> None:
    orchestrator = _orchestrator()
    other = WorkItem(id="other", description="something else")
    with pytest.raises(ValueError):
        await orchestrator.execute(_decision(Tier.TIER_1), item=other)


@pytest.mark.asyncio
async def test_stats_history_and_telemetry() -> None:
    sink = InMemoryTelemetrySink()
    registry = ConsultantRegistry()
    registry.register(ScriptedConsultant("architecture-generalist", Tier.TIER_1, [outcome(0.8)]))
    orchestrator = ExecutionOrchestrator(
        registry=registry,
        settings=make_settings(),
        telemetry=TelemetryEmitter([sink]),
    )

    await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)
    await orchestrator.execute(_decision(Tier.TIER_1), item=ITEM)
    await orchestrator.process(WorkItem(id="typo", description="fix typo in footer"))
    await orchestrator.telemetry.flush()

    stats = orchestrator.get_stats()
    assert stats["tasks_processed"] == 3
    assert stats["routing_distribution"] == {"TIER_1": 2, "DIRECT": 1}
    assert stats["cache_hits"] == 1
    assert stats["average_quality_score"] == pytest.approx(0.8)
    assert len(orchestrator.recent_results()) == 3
    assert len(orchestrator.recent_results(limit=1)) == 1
    assert len(sink.of_type(TelemetryEventType.EXECUTION_COMPLETED)) == 3
    assert sink.of_type(TelemetryEventType.CACHE_HIT)


@pytest.mark.asyncio
async def test_create_restores_context_and_cache_from_record_store() -> None:
    store = InMemoryRecordStore()
    consultant = ScriptedConsultant("architecture-generalist", Tier.TIER_1, [outcome(0.9)])
    registry = ConsultantRegistry()
    registry.register(consultant)
    settings = make_settings()

    first = await ExecutionOrchestrator.create(registry=registry, settings=settings, record_store=store)
    await first.execute(_decision(Tier.TIER_1), item=ITEM)

    second = await ExecutionOrchestrator.create(registry=registry, settings=settings, record_store=store)
    result = await second.execute(_decision(Tier.TIER_1), item=ITEM)

    assert second.context_store.version == 1
    assert result.cached
    assert len(consultant.calls) == 1


def test_metrics_export_respects_observability_settings() -> None:
    orchestrator = _orchestrator()
    exported = orchestrator.export_metrics()
    assert exported is not None
    payload, content_type = exported
    assert b"consultflow_" in payload
    assert content_type.startswith("text/plain")


class _BrokenClassifier:
    def classify(self, item: WorkItem) -> ComplexityAssessment:
        raise ClassificationError(f"cannot assess '{item.id}'")


@pytest.mark.asyncio
async def test_classification_failure_is_counted_and_reported() -> None:
    sink = InMemoryTelemetrySink()
    orchestrator = ExecutionOrchestrator(
        registry=ConsultantRegistry(),
        settings=make_settings(),
        classifier=_BrokenClassifier(),
        telemetry=TelemetryEmitter([sink]),
    )

    result = await orchestrator.execute_item(ITEM)
    await orchestrator.telemetry.flush()

    assert result.status is ExecutionStatus.FAILED
    assert result.error is not None and result.error.kind == "ClassificationError"
    stats = orchestrator.get_stats()
    assert stats["failed"] == 1
    assert stats["tasks_processed"] == 1
    failures = sink.of_type(TelemetryEventType.EXECUTION_FAILED)
    assert len(failures) == 1
    assert failures[0].data["error_kind"] == "ClassificationError"
    assert failures[0].data["tier"] is None
