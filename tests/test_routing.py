from __future__ import annotations

import pytest

from consultflow.orchestration.routing import TIER_PROFILES, TierRouter
from consultflow.orchestration.telemetry import InMemoryTelemetrySink, TelemetryEmitter
from consultflow.orchestration.enums import TelemetryEventType
from consultflow.schemas.consultation import ComplexityAssessment, ProjectContext, Tier, WorkItem

CONTEXT = ProjectContext()


def _assessment(tier: Tier) -> ComplexityAssessment:
    return ComplexityAssessment(tier=tier, score=5.0)


def test_direct_decision_has_no_consultant() -> None:
    router = TierRouter()
    item = WorkItem(id="d1", description="fix typo in footer")
    decision = router.route(item, _assessment(Tier.DIRECT), CONTEXT)
    assert decision.tier is Tier.DIRECT
    assert decision.consultant_id is None
    assert decision.domain == "general"
    assert decision.protocol == TIER_PROFILES[Tier.DIRECT].protocol
    assert [alternative.tier for alternative in decision.alternatives] == [Tier.TIER_1]


def test_tier_two_data_work_goes_to_database_specialist() -> None:
    router = TierRouter()
    item = WorkItem(id="d2", description="Optimize the database query for reports")
    decision = router.route(item, _assessment(Tier.TIER_2), CONTEXT)
    assert decision.domain == "data"
    assert decision.consultant_id == "database-specialist"
    assert [(alternative.tier, alternative.consultant_id) for alternative in decision.alternatives] == [
        (Tier.TIER_1, "data-generalist"),
        (Tier.TIER_3, "data-architect"),
    ]
    assert decision.confidence == pytest.approx(0.8)


def test_keywords_break_ties_between_candidates() -> None:
    router = TierRouter()
    item = WorkItem(id="d3", description="Define governance policy and lineage for the data warehouse")
    decision = router.route_to_tier(item, Tier.TIER_3, CONTEXT)
    assert decision.consultant_id == "governance-architect"
    assert decision.alternatives[-1].consultant_id == "system-architect"


def test_preferred_consultant_is_honored_when_known() -> None:
    router = TierRouter()
    item = WorkItem(id="d4", description="Add OAuth login with jwt tokens")
    decision = router.route_to_tier(item, Tier.TIER_2, CONTEXT, preferred_consultant="api-design-specialist")
    assert decision.consultant_id == "api-design-specialist"
    unknown = router.route_to_tier(item, Tier.TIER_2, CONTEXT, preferred_consultant="nobody")
    assert unknown.consultant_id == "auth-systems-specialist"


def test_confidence_grows_with_detail() -> None:
    router = TierRouter()
    item = WorkItem(
        id="d5",
        description="Complex advanced caching layer for the product catalogue with detailed invalidation",
        requirements=("p99 under 20ms",),
    )
    assert router.confidence(item, Tier.TIER_2) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_routing_emits_telemetry() -> None:
    sink = InMemoryTelemetrySink()
    telemetry = TelemetryEmitter([sink])
    router = TierRouter(telemetry=telemetry)
    router.route(WorkItem(id="d6", description="Build a REST api endpoint"), _assessment(Tier.TIER_1), CONTEXT)
    await telemetry.flush()
    events = sink.of_type(TelemetryEventType.ROUTING_DECIDED)
    assert len(events) == 1
    assert events[0].data["consultant_id"] == "integration-generalist"
