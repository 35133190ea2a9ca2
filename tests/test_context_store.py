from __future__ import annotations

import asyncio

import pytest

from consultflow.orchestration.context import ProjectContextStore
from consultflow.orchestration.enums import TelemetryEventType
from consultflow.orchestration.store import CONTEXT, InMemoryRecordStore
from consultflow.orchestration.telemetry import InMemoryTelemetrySink, TelemetryEmitter


@pytest.mark.asyncio
async def test_update_bumps_version_and_keeps_old_snapshot_intact() -> None:
    store = ProjectContextStore()
    before = store.snapshot()

    version = await store.update(constraints=["postgres only", " postgres only "], objectives=["ship v2"])

    assert version == 1
    assert before.version == 0
    assert before.constraints == ()
    after = store.snapshot()
    assert after.constraints == ("postgres only",)
    assert after.objectives == ("ship v2",)
    assert store.is_stale(before.version)


@pytest.mark.asyncio
async def test_noop_update_keeps_version() -> None:
    store = ProjectContextStore()
    await store.update(constraints=["gdpr"])
    assert await store.update(constraints=["gdpr"]) == 1
    assert store.version == 1


@pytest.mark.asyncio
async def test_concurrent_decisions_each_get_their_own_version() -> None:
    store = ProjectContextStore()
    versions = await asyncio.gather(*(store.record_decision({"work_item_id": f"w{i}"}) for i in range(10)))
    assert sorted(versions) == list(range(1, 11))
    assert len(store.snapshot().decisions) == 10


@pytest.mark.asyncio
async def test_context_persists_and_reloads() -> None:
    record_store = InMemoryRecordStore()
    sink = InMemoryTelemetrySink()
    telemetry = TelemetryEmitter([sink])
    store = ProjectContextStore(record_store=record_store, telemetry=telemetry)
    await store.update(objectives=["reduce latency"])
    await telemetry.flush()

    assert record_store.keys(CONTEXT) == ["project"]
    assert len(sink.of_type(TelemetryEventType.CONTEXT_UPDATED)) == 1

    reloaded = await ProjectContextStore.load(record_store)
    assert reloaded.version == 1
    assert reloaded.snapshot().objectives == ("reduce latency",)
