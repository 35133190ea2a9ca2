from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence

from ..core.logging import get_logger
from ..core.metrics import record_routing_decision
from ..schemas.consultation import (
    ComplexityAssessment,
    ProjectContext,
    RouteAlternative,
    RoutingDecision,
    Tier,
    TimeEstimate,
    WorkItem,
)
from .enums import TelemetryEventType
from .telemetry import TelemetryEmitter

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class TierProfile:
    protocol: str
    estimate: TimeEstimate
    quality_checks: tuple[str, ...]
    indicators: tuple[str, ...] = ()


TIER_PROFILES: Mapping[Tier, TierProfile] = {
    Tier.DIRECT: TierProfile(
        protocol="direct-implementation",
        estimate=TimeEstimate(min=15, max=60, unit="minutes"),
        quality_checks=("syntax-check", "basic-testing"),
        indicators=("simple", "basic", "quick", "straightforward"),
    ),
    Tier.TIER_1: TierProfile(
        protocol="consultation-protocol",
        estimate=TimeEstimate(min=1, max=4, unit="hours"),
        quality_checks=("syntax-check", "integration-testing", "code-review"),
        indicators=("moderate", "standard", "typical"),
    ),
    Tier.TIER_2: TierProfile(
        protocol="deep-analysis-protocol",
        estimate=TimeEstimate(min=4, max=24, unit="hours"),
        quality_checks=("comprehensive-testing", "security-audit", "performance-review", "architecture-review"),
        indicators=("complex", "advanced", "detailed"),
    ),
    Tier.TIER_3: TierProfile(
        protocol="coordination-protocol",
        estimate=TimeEstimate(min=1, max=5, unit="days"),
        quality_checks=(
            "full-qa-suite",
            "security-audit",
            "performance-audit",
            "architecture-audit",
            "compliance-check",
        ),
        indicators=("enterprise", "large-scale", "critical", "strategic"),
    ),
}


DEFAULT_DOMAIN_PATTERNS: Mapping[str, tuple[str, ...]] = {
    "architecture": ("architecture", "design", "pattern", "scalability", "system design"),
    "security": ("auth", "security", "encryption", "oauth", "jwt", "permission", "vulnerability"),
    "performance": ("performance", "optimization", "cache", "speed", "latency", "memory"),
    "data": ("database", "query", "data", "analytics", "migration", "sql", "nosql"),
    "integration": ("api", "integration", "service", "webhook", "event", "microservice"),
    "frontend": ("ui", "component", "react", "vue", "angular", "css", "responsive"),
    "testing": ("test", "testing", "qa", "automation", "ci/cd", "quality"),
    "ml": ("ml", "ai", "machine learning", "model", "prediction", "analytics"),
}


def detect_domain(text: str, patterns: Mapping[str, tuple[str, ...]] = DEFAULT_DOMAIN_PATTERNS) -> str:
    """Domain whose patterns match the text most often; "general" when none match."""
    lowered = text.lower()
    best_match = "general"
    best_score = 0
    for domain, keywords in patterns.items():
        score = sum(1 for keyword in keywords if keyword in lowered)
        if score > best_score:
            best_score = score
            best_match = domain
    return best_match


DEFAULT_CONSULTANT_MAP: Mapping[Tier, Mapping[str, tuple[str, ...]]] = {
    Tier.TIER_1: {
        "architecture": ("architecture-generalist",),
        "security": ("security-generalist",),
        "performance": ("performance-generalist",),
        "data": ("data-generalist",),
        "integration": ("integration-generalist",),
        "frontend": ("frontend-generalist",),
        "general": ("architecture-generalist",),
    },
    Tier.TIER_2: {
        "data": ("database-specialist",),
        "integration": ("api-design-specialist",),
        "security": ("auth-systems-specialist",),
        "performance": ("performance-optimization-specialist",),
        "ml": ("ml-integration-specialist",),
        "testing": ("testing-strategy-specialist",),
        "general": ("database-specialist",),
    },
    Tier.TIER_3: {
        "architecture": ("system-architect",),
        "integration": ("integration-architect",),
        "performance": ("scale-architect",),
        "security": ("security-architect",),
        "data": ("data-architect", "governance-architect"),
        "general": ("system-architect",),
    },
}


DEFAULT_CONSULTANT_KEYWORDS: Mapping[str, tuple[str, ...]] = {
    "database-specialist": ("database", "sql", "query", "data"),
    "api-design-specialist": ("api", "rest", "graphql", "endpoint"),
    "auth-systems-specialist": ("auth", "oauth", "jwt", "login"),
    "performance-optimization-specialist": ("performance", "optimization", "speed"),
    "ml-integration-specialist": ("ml", "ai", "model", "prediction"),
    "testing-strategy-specialist": ("test", "testing", "qa", "automation"),
    "data-architect": ("warehouse", "lake", "pipeline", "schema"),
    "governance-architect": ("governance", "compliance", "policy", "lineage"),
}


class Router(Protocol):
    def route(self, item: WorkItem, assessment: ComplexityAssessment, context: ProjectContext) -> RoutingDecision:
        ...


@dataclass(slots=True)
class ConsultantDirectory:
    """Tier -> domain -> candidate consultant ids, with keyword hints for tie-breaking."""

    mapping: Mapping[Tier, Mapping[str, tuple[str, ...]]] = field(default_factory=lambda: DEFAULT_CONSULTANT_MAP)
    keywords: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: DEFAULT_CONSULTANT_KEYWORDS)

    def candidates(self, tier: Tier, domain: str) -> tuple[str, ...]:
        if tier is Tier.DIRECT:
            return ()
        tier_map = self.mapping.get(tier, {})
        return tuple(tier_map.get(domain) or tier_map.get("general") or ())

    def general(self, tier: Tier) -> str | None:
        if tier is Tier.DIRECT:
            return None
        defaults = self.mapping.get(tier, {}).get("general") or ()
        return defaults[0] if defaults else None


class TierRouter:
    """Selects a consultant for the assessed tier and proposes recovery alternatives."""

    def __init__(
        self,
        *,
        directory: ConsultantDirectory | None = None,
        domain_patterns: Mapping[str, Sequence[str]] | None = None,
        telemetry: TelemetryEmitter | None = None,
    ) -> None:
        self._directory = directory or ConsultantDirectory()
        self._domain_patterns = {
            domain: tuple(patterns) for domain, patterns in (domain_patterns or DEFAULT_DOMAIN_PATTERNS).items()
        }
        self._telemetry = telemetry
        logger.info(
            "tier_router_initialized",
            domains=len(self._domain_patterns),
            consultants=sum(len(ids) for tier_map in self._directory.mapping.values() for ids in tier_map.values()),
        )

    def route(self, item: WorkItem, assessment: ComplexityAssessment, context: ProjectContext) -> RoutingDecision:
        return self.route_to_tier(item, assessment.tier, context)

    def route_to_tier(
        self,
        item: WorkItem,
        tier: Tier,
        context: ProjectContext,
        *,
        reason: str | None = None,
        preferred_consultant: str | None = None,
    ) -> RoutingDecision:
        domain = self.identify_domain(item)
        consultant_id = self._select_consultant(item, tier, domain, preferred_consultant)
        profile = TIER_PROFILES[tier]
        decision = RoutingDecision(
            work_item_id=item.id,
            tier=tier,
            consultant_id=consultant_id,
            confidence=self.confidence(item, tier),
            alternatives=self.alternatives(item, tier, domain, primary=consultant_id),
            domain=domain,
            protocol=profile.protocol,
            estimated_time=profile.estimate,
            quality_checks=profile.quality_checks,
            reason=reason,
        )
        record_routing_decision(tier=tier.value, domain=domain)
        logger.info(
            "work_item_routed",
            work_item_id=item.id,
            tier=tier.value,
            consultant=consultant_id,
            domain=domain,
            context_version=context.version,
        )
        if self._telemetry is not None:
            self._telemetry.emit(
                TelemetryEventType.ROUTING_DECIDED,
                work_item_id=item.id,
                tier=tier.value,
                consultant_id=consultant_id,
                domain=domain,
                confidence=decision.confidence,
                reason=reason,
            )
        return decision

    def identify_domain(self, item: WorkItem) -> str:
        return detect_domain(item.description, self._domain_patterns)

    def confidence(self, item: WorkItem, tier: Tier) -> float:
        confidence = 0.8
        if len(item.description) > 50:
            confidence += 0.1
        if item.requirements:
            confidence += 0.1
        text = item.description.lower()
        if any(indicator in text for indicator in TIER_PROFILES[tier].indicators):
            confidence += 0.1
        return round(min(confidence, 1.0), 4)

    def alternatives(
        self,
        item: WorkItem,
        tier: Tier,
        domain: str,
        *,
        primary: str | None,
    ) -> tuple[RouteAlternative, ...]:
        options: list[RouteAlternative] = []
        rank = tier.rank
        ordered = Tier.ordered()
        if rank > 0:
            lower = ordered[rank - 1]
            options.append(
                RouteAlternative(
                    tier=lower,
                    reason=_LOWER_REASONS[tier],
                    consultant_id=self._select_consultant(item, lower, domain, None),
                )
            )
        if rank < len(ordered) - 1:
            higher = ordered[rank + 1]
            options.append(
                RouteAlternative(
                    tier=higher,
                    reason=_HIGHER_REASONS[tier],
                    consultant_id=self._select_consultant(item, higher, domain, None),
                )
            )
        general = self._directory.general(tier)
        if general is not None and general != primary:
            options.append(
                RouteAlternative(
                    tier=tier,
                    reason="If the domain consultant is unavailable",
                    consultant_id=general,
                )
            )
        return tuple(options)

    def _select_consultant(
        self,
        item: WorkItem,
        tier: Tier,
        domain: str,
        preferred: str | None,
    ) -> str | None:
        if tier is Tier.DIRECT:
            return None
        candidates = self._directory.candidates(tier, domain)
        if preferred and (preferred in candidates or self._directory_knows(tier, preferred)):
            return preferred
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]
        text = item.description.lower()
        best = candidates[0]
        best_relevance = 0
        for candidate in candidates:
            relevance = sum(1 for keyword in self._directory.keywords.get(candidate, ()) if keyword in text)
            if relevance > best_relevance:
                best_relevance = relevance
                best = candidate
        return best

    def _directory_knows(self, tier: Tier, consultant_id: str) -> bool:
        return any(consultant_id in ids for ids in self._directory.mapping.get(tier, {}).values())


_LOWER_REASONS: Mapping[Tier, str] = {
    Tier.TIER_1: "If task is simpler than assessed",
    Tier.TIER_2: "If deep analysis not required",
    Tier.TIER_3: "If coordination not needed",
}

_HIGHER_REASONS: Mapping[Tier, str] = {
    Tier.DIRECT: "If complications arise",
    Tier.TIER_1: "If deeper expertise needed",
    Tier.TIER_2: "If architectural oversight required",
}


__all__ = [
    "TierProfile",
    "TIER_PROFILES",
    "DEFAULT_DOMAIN_PATTERNS",
    "detect_domain",
    "DEFAULT_CONSULTANT_MAP",
    "DEFAULT_CONSULTANT_KEYWORDS",
    "Router",
    "ConsultantDirectory",
    "TierRouter",
]
