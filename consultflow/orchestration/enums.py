from __future__ import annotations

from enum import Enum


class TelemetryEventType(str, Enum):
    ROUTING_DECIDED = "routing.decided"
    CACHE_HIT = "cache.hit"
    CACHE_MISS = "cache.miss"
    CACHE_STORED = "cache.stored"
    CACHE_EVICTED = "cache.evicted"
    QUALITY_EVALUATED = "quality.evaluated"
    QUALITY_IMPROVED = "quality.improved"
    ESCALATION_TRANSITIONED = "escalation.transitioned"
    ESCALATION_REJECTED = "escalation.rejected"
    RECOVERY_ATTEMPTED = "recovery.attempted"
    RECOVERY_FALLBACK = "recovery.fallback"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    GROUP_STARTED = "group.started"
    GROUP_SETTLED = "group.settled"
    BATCH_ABORTED = "batch.aborted"
    BATCH_COMPLETED = "batch.completed"
    CONTEXT_UPDATED = "context.updated"


class CacheFreshness(str, Enum):
    VERY_FRESH = "very-fresh"
    FRESH = "fresh"
    ACCEPTABLE = "acceptable"
    STALE = "stale"


__all__ = ["TelemetryEventType", "CacheFreshness"]
