from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

ROUTING_DECISIONS_TOTAL = Counter(
    "consultflow_routing_decisions_total",
    "Routing decisions grouped by tier and domain",
    labelnames=("tier", "domain"),
)

CACHE_LOOKUPS_TOTAL = Counter(
    "consultflow_cache_lookups_total",
    "Consultation cache lookups grouped by outcome",
    labelnames=("outcome",),
)

CACHE_EVICTIONS_TOTAL = Counter(
    "consultflow_cache_evictions_total",
    "Consultation records removed from the cache grouped by cause",
    labelnames=("cause",),
)

CACHE_SIZE_GAUGE = Gauge(
    "consultflow_cache_entries",
    "Current number of consultation records held in the cache",
)

QUALITY_OUTCOMES_TOTAL = Counter(
    "consultflow_quality_outcomes_total",
    "Quality gate outcomes grouped by level and pass state",
    labelnames=("level", "passed"),
)

QUALITY_SCORE = Histogram(
    "consultflow_quality_score",
    "Distribution of quality scores produced by the gate",
    buckets=(0.0, 0.2, 0.4, 0.6, 0.75, 0.9, 1.0),
)

ESCALATIONS_TOTAL = Counter(
    "consultflow_escalations_total",
    "Tier transitions grouped by origin, target, and outcome",
    labelnames=("from_tier", "to_tier", "outcome"),
)

RECOVERY_ATTEMPTS_TOTAL = Counter(
    "consultflow_recovery_attempts_total",
    "Error recovery steps grouped by stage and outcome",
    labelnames=("stage", "outcome"),
)

EXECUTIONS_TOTAL = Counter(
    "consultflow_executions_total",
    "Work item executions grouped by final status and tier",
    labelnames=("status", "tier"),
)

EXECUTION_LATENCY_SECONDS = Histogram(
    "consultflow_execution_latency_seconds",
    "End-to-end latency of a single work item execution",
    labelnames=("tier",),
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

GROUP_SIZE = Histogram(
    "consultflow_execution_group_size",
    "Number of work items executed concurrently per dependency group",
    buckets=(1, 2, 3, 4, 5, 8, 13, 21),
)

BATCH_OUTCOMES_TOTAL = Counter(
    "consultflow_batch_outcomes_total",
    "Execution record outcomes",
    labelnames=("status",),
)

CONTEXT_VERSION_GAUGE = Gauge(
    "consultflow_project_context_version",
    "Latest project context version",
)

TELEMETRY_FAILURES_TOTAL = Counter(
    "consultflow_telemetry_failures_total",
    "Telemetry events that a sink failed to accept",
    labelnames=("sink",),
)


def record_routing_decision(*, tier: str, domain: str) -> None:
    ROUTING_DECISIONS_TOTAL.labels(tier=tier, domain=domain).inc()


def increment_cache_hit() -> None:
    CACHE_LOOKUPS_TOTAL.labels(outcome="hit").inc()


def increment_cache_miss() -> None:
    CACHE_LOOKUPS_TOTAL.labels(outcome="miss").inc()


def record_cache_eviction(*, cause: str, count: int = 1) -> None:
    if count > 0:
        CACHE_EVICTIONS_TOTAL.labels(cause=cause).inc(count)


def set_cache_size(size: int) -> None:
    CACHE_SIZE_GAUGE.set(size)


def record_quality_outcome(*, level: str, passed: bool, score: float) -> None:
    QUALITY_OUTCOMES_TOTAL.labels(level=level, passed=str(passed).lower()).inc()
    QUALITY_SCORE.observe(score)


def record_escalation(*, from_tier: str, to_tier: str, outcome: str) -> None:
    ESCALATIONS_TOTAL.labels(from_tier=from_tier, to_tier=to_tier, outcome=outcome).inc()


def record_recovery_attempt(*, stage: str, outcome: str) -> None:
    RECOVERY_ATTEMPTS_TOTAL.labels(stage=stage, outcome=outcome).inc()


def observe_execution(*, status: str, tier: str, latency: float) -> None:
    EXECUTIONS_TOTAL.labels(status=status, tier=tier).inc()
    EXECUTION_LATENCY_SECONDS.labels(tier=tier).observe(max(latency, 0.0))


def observe_group_size(size: int) -> None:
    GROUP_SIZE.observe(size)


def record_batch_outcome(*, status: str) -> None:
    BATCH_OUTCOMES_TOTAL.labels(status=status).inc()


def set_context_version(version: int) -> None:
    CONTEXT_VERSION_GAUGE.set(version)


def increment_telemetry_failure(*, sink: str) -> None:
    TELEMETRY_FAILURES_TOTAL.labels(sink=sink).inc()


def render_metrics() -> tuple[bytes, str]:
    """Prometheus exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = [
    "record_routing_decision",
    "increment_cache_hit",
    "increment_cache_miss",
    "record_cache_eviction",
    "set_cache_size",
    "record_quality_outcome",
    "record_escalation",
    "record_recovery_attempt",
    "observe_execution",
    "observe_group_size",
    "record_batch_outcome",
    "set_context_version",
    "increment_telemetry_failure",
    "render_metrics",
]
