from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from ..core.logging import get_logger
from ..core.metrics import set_context_version
from ..schemas.consultation import ProjectContext
from .enums import TelemetryEventType
from .store import CONTEXT, RecordStore
from .telemetry import TelemetryEmitter

logger = get_logger(name=__name__)

_SNAPSHOT_KEY = "project"


class ProjectContextStore:
    """Versioned, append-only project context.

    Readers receive immutable snapshots, so they never observe a partial merge.
    Writers are serialized through ``update``; every accepted update bumps the
    version by exactly one and returns the new version number.
    """

    def __init__(
        self,
        *,
        initial: ProjectContext | None = None,
        record_store: RecordStore | None = None,
        telemetry: TelemetryEmitter | None = None,
    ) -> None:
        self._current = initial or ProjectContext()
        self._record_store = record_store
        self._telemetry = telemetry
        self._lock = asyncio.Lock()

    @classmethod
    async def load(
        cls,
        record_store: RecordStore,
        *,
        telemetry: TelemetryEmitter | None = None,
    ) -> "ProjectContextStore":
        payload = await record_store.get(CONTEXT, _SNAPSHOT_KEY)
        initial = ProjectContext.model_validate(payload) if payload else None
        if initial is not None:
            logger.info("project_context_loaded", version=initial.version)
        return cls(initial=initial, record_store=record_store, telemetry=telemetry)

    def snapshot(self) -> ProjectContext:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def is_stale(self, version: int) -> bool:
        return version < self._current.version

    async def update(
        self,
        *,
        decisions: Iterable[Mapping[str, Any]] = (),
        constraints: Iterable[str] = (),
        objectives: Iterable[str] = (),
    ) -> int:
        new_decisions = tuple(dict(decision) for decision in decisions)
        async with self._lock:
            current = self._current
            merged_constraints = _merge_unique(current.constraints, constraints)
            merged_objectives = _merge_unique(current.objectives, objectives)
            if (
                not new_decisions
                and merged_constraints == current.constraints
                and merged_objectives == current.objectives
            ):
                return current.version
            updated = ProjectContext(
                decisions=current.decisions + new_decisions,
                constraints=merged_constraints,
                objectives=merged_objectives,
                version=current.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            if self._record_store is not None:
                await self._record_store.put(CONTEXT, _SNAPSHOT_KEY, updated.model_dump(mode="json"))
            self._current = updated

        set_context_version(updated.version)
        logger.debug(
            "project_context_updated",
            version=updated.version,
            decisions=len(new_decisions),
            constraints=len(updated.constraints),
            objectives=len(updated.objectives),
        )
        if self._telemetry is not None:
            self._telemetry.emit(
                TelemetryEventType.CONTEXT_UPDATED,
                version=updated.version,
                decisions_added=len(new_decisions),
            )
        return updated.version

    async def record_decision(self, decision: Mapping[str, Any]) -> int:
        return await self.update(decisions=[decision])


def _merge_unique(existing: tuple[str, ...], additions: Iterable[str]) -> tuple[str, ...]:
    merged = list(existing)
    seen = set(existing)
    for value in additions:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        merged.append(normalized)
    return tuple(merged)


__all__ = ["ProjectContextStore"]
