"""
Parallel Dependency Execution Module

Runs a batch of work items in dependency order. Items are grouped by their
dependency depth; every item of a group runs concurrently (bounded by
``max_parallel``) and the whole group settles before the next one starts.
A failed critical item aborts every later group.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping, Sequence

from ..core.config import ExecutionSettings
from ..core.errors import ConfigurationError, CyclicDependencyError, UnknownDependencyError
from ..core.logging import get_logger
from ..core.metrics import observe_group_size, record_batch_outcome
from ..schemas.consultation import (
    ErrorDetail,
    ExecutionRecord,
    ExecutionResult,
    ExecutionStatus,
    WorkItem,
)
from .enums import TelemetryEventType
from .orchestrator import ExecutionOrchestrator
from .store import EXECUTIONS, RecordStore
from .telemetry import TelemetryEmitter

logger = get_logger(name=__name__)

ItemRunner = Callable[[WorkItem], Awaitable[ExecutionResult]]


def index_items(items: Sequence[WorkItem]) -> dict[str, WorkItem]:
    """Map ids to items, rejecting duplicate ids and dependencies outside the batch."""
    indexed: dict[str, WorkItem] = {}
    for item in items:
        if item.id in indexed:
            raise ConfigurationError(f"Duplicate work item id '{item.id}'", details={"work_item_id": item.id})
        indexed[item.id] = item
    for item in items:
        missing = [dep for dep in item.dependencies if dep not in indexed]
        if missing:
            raise UnknownDependencyError(
                f"Work item '{item.id}' depends on unknown items: {', '.join(missing)}",
                details={"work_item_id": item.id, "missing": missing},
            )
    return indexed


def compute_depths(items: Sequence[WorkItem]) -> dict[str, int]:
    """Depth of each item: 0 without dependencies, else one more than its deepest dependency."""
    indexed = index_items(items)
    depths: dict[str, int] = {}
    visiting: list[str] = []

    def visit(item_id: str) -> int:
        if item_id in depths:
            return depths[item_id]
        if item_id in visiting:
            cycle = visiting[visiting.index(item_id):] + [item_id]
            raise CyclicDependencyError(
                f"Dependency cycle detected: {' -> '.join(cycle)}",
                cycle=cycle,
            )
        visiting.append(item_id)
        dependencies = indexed[item_id].dependencies
        depth = 1 + max(visit(dep) for dep in dependencies) if dependencies else 0
        visiting.pop()
        depths[item_id] = depth
        return depth

    for item in items:
        visit(item.id)
    return depths


def plan_groups(items: Sequence[WorkItem]) -> list[list[WorkItem]]:
    """Group items by increasing depth, keeping submission order inside a group."""
    depths = compute_depths(items)
    if not depths:
        return []
    groups: list[list[WorkItem]] = [[] for _ in range(max(depths.values()) + 1)]
    for item in items:
        groups[depths[item.id]].append(item)
    return groups


class ParallelDependencyExecutor:
    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        *,
        settings: ExecutionSettings | None = None,
        record_store: RecordStore | None = None,
        telemetry: TelemetryEmitter | None = None,
        runner: ItemRunner | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._settings = settings or orchestrator.settings.execution
        self._record_store = record_store if record_store is not None else orchestrator.record_store
        self._telemetry = telemetry or orchestrator.telemetry
        self._runner: ItemRunner = runner or orchestrator.execute_item
        self._stop_requested = False

    @property
    def max_parallel(self) -> int:
        return self._settings.max_parallel

    def request_stop(self) -> None:
        """Stop issuing new groups; items already running are left to settle."""
        self._stop_requested = True

    async def execute_set(self, items: Sequence[WorkItem]) -> ExecutionRecord:
        groups = plan_groups(items)
        self._stop_requested = False
        record = ExecutionRecord(groups=[[item.id for item in group] for group in groups])
        semaphore = asyncio.Semaphore(self._settings.max_parallel)
        logger.info(
            "batch_started",
            record_id=record.record_id,
            items=len(items),
            groups=len(groups),
            max_parallel=self._settings.max_parallel,
        )

        for index, group in enumerate(groups):
            if self._stop_requested:
                self._abort(record, after_group=index - 1, reason="stop requested")
                break
            results, duration_ms = await self._run_group(index, group, semaphore, record_id=record.record_id)
            record.results.extend(results)
            record.group_durations_ms.append(duration_ms)
            failures = [result for result in results if not result.succeeded]
            if failures:
                logger.warning(
                    "group_failures",
                    record_id=record.record_id,
                    group=index,
                    failed=[result.work_item_id for result in failures],
                )
            if self._has_critical_failure(group, failures):
                self._abort(record, after_group=index, reason="critical item failed")
                break

        record.completed_at = datetime.now(timezone.utc)
        if self._record_store is not None:
            await self._record_store.put(EXECUTIONS, record.record_id, record.model_dump(mode="json"))
        record_batch_outcome(status=record.status.value)
        summary = record.summary()
        logger.info("batch_completed", **summary)
        self._telemetry.emit(
            TelemetryEventType.BATCH_COMPLETED,
            **summary,
            group_durations_ms=record.group_durations_ms,
        )
        return record

    async def _run_group(
        self,
        index: int,
        group: list[WorkItem],
        semaphore: asyncio.Semaphore,
        *,
        record_id: str,
    ) -> tuple[list[ExecutionResult], float]:
        started = datetime.now(timezone.utc)
        observe_group_size(len(group))
        self._telemetry.emit(
            TelemetryEventType.GROUP_STARTED,
            record_id=record_id,
            group=index,
            items=[item.id for item in group],
        )

        async def run(item: WorkItem) -> ExecutionResult:
            async with semaphore:
                return await self._run_item(item)

        results = list(await asyncio.gather(*(run(item) for item in group)))
        duration_ms = (datetime.now(timezone.utc) - started).total_seconds() * 1000
        self._telemetry.emit(
            TelemetryEventType.GROUP_SETTLED,
            record_id=record_id,
            group=index,
            succeeded=sum(1 for result in results if result.succeeded),
            failed=sum(1 for result in results if not result.succeeded),
            duration_ms=duration_ms,
        )
        return results, duration_ms

    async def _run_item(self, item: WorkItem) -> ExecutionResult:
        started = datetime.now(timezone.utc)
        try:
            return await self._runner(item)
        except Exception as exc:
            logger.exception("work_item_runner_failed", work_item_id=item.id)
            return ExecutionResult(
                work_item_id=item.id,
                status=ExecutionStatus.FAILED,
                duration_ms=(datetime.now(timezone.utc) - started).total_seconds() * 1000,
                error=ErrorDetail(
                    kind=getattr(exc, "kind", type(exc).__name__),
                    message=str(exc),
                    recovery_path=tuple(getattr(exc, "recovery_path", ())),
                ),
            )

    @staticmethod
    def _has_critical_failure(group: Sequence[WorkItem], failures: Sequence[ExecutionResult]) -> bool:
        critical: Mapping[str, bool] = {item.id: item.critical for item in group}
        return any(critical.get(result.work_item_id, False) for result in failures)

    def _abort(self, record: ExecutionRecord, *, after_group: int, reason: str) -> None:
        record.status = ExecutionStatus.FAILED
        record.aborted = True
        record.aborted_after_group = after_group
        record.abort_reason = reason
        skipped = [item_id for group in record.groups[after_group + 1:] for item_id in group]
        logger.error(
            "batch_aborted",
            record_id=record.record_id,
            after_group=after_group,
            reason=reason,
            skipped=skipped,
        )
        self._telemetry.emit(
            TelemetryEventType.BATCH_ABORTED,
            record_id=record.record_id,
            after_group=after_group,
            reason=reason,
            skipped=skipped,
        )


__all__ = [
    "ItemRunner",
    "index_items",
    "compute_depths",
    "plan_groups",
    "ParallelDependencyExecutor",
]
