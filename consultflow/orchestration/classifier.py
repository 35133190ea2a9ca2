from __future__ import annotations

import re
from typing import Mapping, Protocol

from ..core.errors import ClassificationError
from ..core.logging import get_logger
from ..schemas.consultation import ComplexityAssessment, Tier, WorkItem

logger = get_logger(name=__name__)


class ComplexityClassifier(Protocol):
    def classify(self, item: WorkItem) -> ComplexityAssessment:
        ...


def _any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def _count(text: str, keyword: str) -> int:
    return len(re.findall(re.escape(keyword), text))


class WeightedComplexityClassifier:
    """Keyword heuristic scoring eight weighted dimensions on a 1-10 scale."""

    DIMENSION_WEIGHTS: Mapping[str, float] = {
        "scope": 0.20,
        "technical": 0.25,
        "domain": 0.20,
        "risk": 0.15,
        "temporal": 0.05,
        "stakeholder": 0.05,
        "uncertainty": 0.05,
        "dependencies": 0.05,
    }

    TIER_CUTOFFS: tuple[tuple[float, Tier], ...] = (
        (3.5, Tier.DIRECT),
        (6.5, Tier.TIER_1),
        (8.5, Tier.TIER_2),
    )

    _DOMAIN_KEYWORDS: Mapping[str, tuple[tuple[str, ...], float]] = {
        "security": (
            ("auth", "security", "encryption", "oauth", "jwt", "permission", "vulnerability", "threat", "compliance", "audit"),
            2.5,
        ),
        "performance": (
            ("optimization", "cache", "performance", "speed", "latency", "bottleneck", "profiling", "monitoring"),
            2.0,
        ),
        "data": (
            ("database", "query", "data", "analytics", "migration", "etl", "warehouse", "lake", "governance"),
            2.0,
        ),
        "architecture": (
            ("architecture", "design", "pattern", "scalability", "microservices", "distributed", "system design"),
            2.5,
        ),
        "integration": (
            ("api", "integration", "service", "webhook", "event", "messaging", "orchestration", "choreography"),
            2.0,
        ),
        "ml": (
            ("machine learning", "ai", "model", "training", "inference", "ml", "neural", "algorithm"),
            3.0,
        ),
        "devops": (
            ("deployment", "ci/cd", "infrastructure", "kubernetes", "docker", "monitoring", "observability"),
            1.5,
        ),
    }

    _TECHNICAL_TERMS = (
        "react",
        "nodejs",
        "python",
        "javascript",
        "typescript",
        "docker",
        "kubernetes",
        "aws",
        "gcp",
        "azure",
        "postgresql",
        "mongodb",
        "redis",
        "graphql",
        "rest api",
        "microservices",
    )

    def classify(self, item: WorkItem) -> ComplexityAssessment:
        text = item.description.strip().lower()
        if not text:
            raise ClassificationError(
                f"Work item '{item.id}' has no description to assess",
                details={"work_item_id": item.id},
            )
        dimensions = {
            "scope": self._scope(text),
            "technical": self._technical(text),
            "domain": self._domain(text),
            "risk": self._risk(text),
            "temporal": self._temporal(text),
            "stakeholder": self._stakeholder(text),
            "uncertainty": self._uncertainty(text),
            "dependencies": self._dependencies(text),
        }
        score = sum(value * self.DIMENSION_WEIGHTS[name] for name, value in dimensions.items())
        adjusted = self._adjust(score, dimensions)
        tier = self._tier_for(adjusted)
        assessment = ComplexityAssessment(
            tier=tier,
            score=round(min(adjusted, 10.0), 4),
            rationale=tuple(self._rationale(dimensions)),
            dimensions={name: round(value, 4) for name, value in dimensions.items()},
            confidence=self._confidence(item, dimensions),
        )
        logger.debug("work_item_classified", work_item_id=item.id, tier=tier.value, score=assessment.score)
        return assessment

    def _tier_for(self, score: float) -> Tier:
        for cutoff, tier in self.TIER_CUTOFFS:
            if score <= cutoff:
                return tier
        return Tier.TIER_3

    @staticmethod
    def _adjust(score: float, dimensions: Mapping[str, float]) -> float:
        adjusted = score
        if dimensions["risk"] > 8 and dimensions["uncertainty"] > 7:
            adjusted += 1.0
        if dimensions["dependencies"] > 8 and dimensions["stakeholder"] > 6:
            adjusted += 0.5
        if dimensions["technical"] > 8 and dimensions["domain"] > 8:
            adjusted += 0.5
        return min(adjusted, 10.0)

    @staticmethod
    def _scope(text: str) -> float:
        score = 1.0
        if any(_count(text, keyword) > 1 for keyword in ("component", "module", "service", "system")):
            score += 2
        if sum(1 for layer in ("frontend", "backend", "database", "api", "ui", "server") if layer in text) > 1:
            score += 2
        if _any(text, ("integrate", "connect", "sync", "webhook", "api")):
            score += 1
        if _any(text, ("data flow", "pipeline", "stream", "queue", "event")):
            score += 1
        return min(score, 10.0)

    @staticmethod
    def _technical(text: str) -> float:
        score = 1.0
        if _any(text, ("new", "implement", "introduce", "adopt", "migrate")):
            score += 2
        if _any(text, ("performance", "optimize", "fast", "speed", "latency", "cache")):
            score += 2
        if _any(text, ("algorithm", "sort", "search", "optimize", "complex logic")):
            score += 3
        if _any(text, ("concurrent", "parallel", "async", "thread", "queue")):
            score += 2
        return min(score, 10.0)

    def _domain(self, text: str) -> float:
        depth = 0.0
        for keywords, weight in self._DOMAIN_KEYWORDS.values():
            matches = sum(1 for keyword in keywords if keyword in text)
            depth += matches * weight
        return min(1.0 + min(depth / 2, 8.0), 10.0)

    @staticmethod
    def _risk(text: str) -> float:
        score = 1.0
        if _any(text, ("production", "live", "deploy", "release", "critical")):
            score += 3
        if _any(text, ("migration", "data change", "schema", "consistency")):
            score += 2
        if _any(text, ("security", "auth", "permission", "encryption", "sensitive")):
            score += 2
        if _any(text, ("breaking change", "compatibility", "legacy", "version")):
            score += 2
        return min(score, 10.0)

    @staticmethod
    def _estimated_minutes(text: str) -> int:
        if _any(text, ("fix", "update", "change", "modify")):
            return 5
        if _any(text, ("implement", "create", "build", "develop")):
            return 20
        if _any(text, ("design", "architect", "migrate", "refactor", "transform")):
            return 60
        return 15

    def _temporal(self, text: str) -> float:
        score = 1.0
        if _any(text, ("urgent", "asap", "immediate", "critical", "emergency")):
            score += 2
        if _any(text, ("deadline", "timeline", "schedule", "time-sensitive")):
            score += 1
        if _any(text, ("roadmap", "strategic", "long-term", "future", "evolution")):
            score += 3
        minutes = self._estimated_minutes(text)
        if minutes > 30:
            score += 2
        if minutes > 90:
            score += 1
        return min(score, 10.0)

    @staticmethod
    def _stakeholder(text: str) -> float:
        score = 1.0
        mentions = sum(
            _count(text, keyword) for keyword in ("stakeholder", "team", "department", "user", "client", "customer")
        )
        score += min(mentions, 3)
        if _any(text, ("approval", "sign-off", "review", "governance", "compliance")):
            score += 2
        if _any(text, ("cross-functional", "multi-team", "coordination", "collaboration")):
            score += 2
        return min(score, 10.0)

    @staticmethod
    def _uncertainty(text: str) -> float:
        score = 1.0
        if _any(text, ("unclear", "unknown", "investigate", "research", "explore")):
            score += 3
        if _any(text, ("experiment", "prototype", "proof of concept", "pilot", "trial")):
            score += 2
        if _any(text, ("tbd", "to be determined", "flexible", "adaptive", "iterative")):
            score += 2
        score += min(text.count("?") * 0.5, 2.0)
        return min(score, 10.0)

    @staticmethod
    def _dependencies(text: str) -> float:
        score = 1.0
        linked = sum(
            1
            for keyword in ("depends on", "requires", "needs", "prerequisite", "blocks", "blocked by")
            if keyword in text
        )
        score += min(linked * 1.5, 4.0)
        if _any(text, ("external", "third-party", "3rd party", "vendor", "partner")):
            score += 2
        systems = sum(1 for keyword in ("system", "service", "component", "module", "library") if keyword in text)
        score += min(systems * 0.5, 2.0)
        return min(score, 10.0)

    def _confidence(self, item: WorkItem, dimensions: Mapping[str, float]) -> float:
        confidence = 0.8
        length = len(item.description)
        if length < 50:
            confidence -= 0.2
        if length > 200:
            confidence += 0.1
        if dimensions["uncertainty"] > 7:
            confidence -= 0.3
        if dimensions["uncertainty"] < 3:
            confidence += 0.1
        if _any(item.description.lower(), self._TECHNICAL_TERMS):
            confidence += 0.1
        return round(max(0.3, min(1.0, confidence)), 4)

    @staticmethod
    def _rationale(dimensions: Mapping[str, float]) -> list[str]:
        reasons: list[str] = []
        if dimensions["scope"] > 7:
            reasons.append("High scope complexity due to multi-component impact")
        if dimensions["technical"] > 7:
            reasons.append("High technical complexity requiring specialized expertise")
        if dimensions["domain"] > 7:
            reasons.append("High domain complexity spanning multiple areas")
        if dimensions["risk"] > 7:
            reasons.append("High risk requiring careful consideration")
        if dimensions["uncertainty"] > 6:
            reasons.append("Significant uncertainty requiring exploration")
        if dimensions["dependencies"] > 6:
            reasons.append("Complex dependencies requiring coordination")
        if not reasons:
            reasons.append("Relatively straightforward task suitable for direct implementation")
        return reasons


__all__ = ["ComplexityClassifier", "WeightedComplexityClassifier"]
