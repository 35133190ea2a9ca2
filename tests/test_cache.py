from __future__ import annotations

import pytest

from consultflow.core.config import CacheSettings
from consultflow.orchestration.cache import ConsultationCache, fingerprint
from consultflow.orchestration.enums import CacheFreshness
from consultflow.orchestration.store import CONSULTATIONS, InMemoryRecordStore
from consultflow.schemas.consultation import ProjectContext, WorkItem

from tests.helpers.stubs import ManualClock, recommendation


def _cache(clock: ManualClock, **settings: object) -> ConsultationCache:
    return ConsultationCache(CacheSettings(**settings), now=clock)  # type: ignore[arg-type]


def test_fingerprint_ignores_whitespace_case_and_ordering() -> None:
    first = WorkItem(id="a", description="Add  OAuth login", requirements=("jwt", "sso"))
    second = WorkItem(id="b", description="add oauth   login ", requirements=("sso", "jwt", "jwt"))
    assert fingerprint("auth-systems-specialist", first) == fingerprint("auth-systems-specialist", second)


def test_fingerprint_depends_on_consultant_and_context_constraints() -> None:
    item = WorkItem(id="a", description="Tune the query planner")
    base = fingerprint("database-specialist", item, ProjectContext())
    assert base != fingerprint("data-generalist", item, ProjectContext())
    assert base != fingerprint("database-specialist", item, ProjectContext(constraints=("postgres only",)))
    assert base == fingerprint("database-specialist", item, ProjectContext(decisions=({"work_item_id": "x"},), version=4))


@pytest.mark.asyncio
async def test_high_quality_record_lives_one_and_a_half_ttl() -> None:
    clock = ManualClock()
    cache = _cache(clock, ttl_ms=1000)
    record = await cache.store("k", consultant_id="c", recommendation=recommendation(0.95), quality_score=0.95)
    assert (record.expires_at - record.created_at).total_seconds() == pytest.approx(1.5)

    clock.advance(milliseconds=1400)
    assert await cache.get("k") is not None

    clock.advance(milliseconds=100)
    assert await cache.get("k") is None
    assert "k" not in cache
    assert cache.stats()["evictions"] == 1


@pytest.mark.asyncio
async def test_regular_quality_record_uses_base_ttl() -> None:
    clock = ManualClock()
    cache = _cache(clock, ttl_ms=1000)
    await cache.store("k", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    clock.advance(milliseconds=1000)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_hit_returns_same_recommendation_and_bumps_access() -> None:
    clock = ManualClock()
    cache = _cache(clock)
    await cache.store("k", consultant_id="c", recommendation=recommendation(0.9, summary="plan"), quality_score=0.9)

    clock.advance(milliseconds=10)
    first = await cache.get("k")
    second = await cache.get("k")
    assert first is not None and second is not None
    assert first.recommendation == second.recommendation
    assert second.access_count == 2
    assert second.last_accessed_at == clock.current

    first.access_count = 99
    third = await cache.get("k")
    assert third is not None and third.access_count == 3


@pytest.mark.asyncio
async def test_pressure_eviction_drops_least_used_entries() -> None:
    clock = ManualClock()
    cache = _cache(clock, max_size=3, eviction_fraction=0.25)
    for key in ("a", "b", "c"):
        await cache.store(key, consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
        clock.advance(milliseconds=1)
    await cache.get("a")
    await cache.get("c")

    await cache.store("d", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)

    assert "b" not in cache
    assert all(key in cache for key in ("a", "c", "d"))
    assert len(cache) == 3


@pytest.mark.asyncio
async def test_evict_under_pressure_removes_at_least_one() -> None:
    clock = ManualClock()
    cache = _cache(clock)
    await cache.store("only", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    assert await cache.evict_under_pressure(0.1) == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_stats_track_hits_and_misses() -> None:
    clock = ManualClock()
    cache = _cache(clock)
    await cache.store("k", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    await cache.get("k")
    await cache.get("missing")
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == pytest.approx(0.5)
    assert stats["size"] == 1


@pytest.mark.asyncio
async def test_records_persist_and_reload_without_expired_entries() -> None:
    clock = ManualClock()
    store = InMemoryRecordStore()
    cache = ConsultationCache(CacheSettings(ttl_ms=1000), record_store=store, now=clock)  # type: ignore[call-arg]
    await cache.store("short", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    await cache.store("long", consultant_id="c", recommendation=recommendation(0.95), quality_score=0.95)
    assert sorted(store.keys(CONSULTATIONS)) == ["long", "short"]

    clock.advance(milliseconds=1200)
    restored = ConsultationCache(CacheSettings(ttl_ms=1000), record_store=store, now=clock)  # type: ignore[call-arg]
    assert await restored.load() == 1
    assert "long" in restored


def test_freshness_labels_follow_record_age() -> None:
    clock = ManualClock()
    cache = _cache(clock)
    record = cache.build_record("k", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    assert cache.freshness(record) is CacheFreshness.VERY_FRESH
    clock.advance(hours=3)
    assert cache.freshness(record) is CacheFreshness.FRESH
    clock.advance(hours=10)
    assert cache.freshness(record) is CacheFreshness.ACCEPTABLE
    clock.advance(hours=20)
    assert cache.freshness(record) is CacheFreshness.STALE


@pytest.mark.asyncio
async def test_find_similar_returns_live_matches_most_similar_first() -> None:
    clock = ManualClock()
    cache = _cache(clock, ttl_ms=1000)
    query = WorkItem(id="q", description="Optimize database query latency", requirements=("postgres",))
    await cache.store(
        "stale",
        consultant_id="database-specialist",
        recommendation=recommendation(0.8),
        quality_score=0.8,
        item=WorkItem(id="s", description="Optimize database query latency", requirements=("postgres",)),
    )
    clock.advance(milliseconds=1100)
    await cache.store(
        "close",
        consultant_id="database-specialist",
        recommendation=recommendation(0.8),
        quality_score=0.8,
        item=WorkItem(id="a", description="Optimize database query performance", requirements=("postgres",)),
    )
    await cache.store(
        "partial",
        consultant_id="database-specialist",
        recommendation=recommendation(0.8),
        quality_score=0.8,
        item=WorkItem(id="b", description="Optimize database storage", requirements=("postgres",)),
    )
    await cache.store(
        "unrelated",
        consultant_id="frontend-specialist",
        recommendation=recommendation(0.8),
        quality_score=0.8,
        item=WorkItem(id="c", description="Redesign the marketing landing page css"),
    )
    await cache.store("anonymous", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)

    matches = await cache.find_similar(query)

    assert [match.record.fingerprint for match in matches] == ["close", "partial"]
    assert matches[0].similarity == pytest.approx(0.84)
    assert matches[1].similarity == pytest.approx(0.76)
    assert cache.stats()["hits"] == 0


@pytest.mark.asyncio
async def test_find_similar_honours_threshold() -> None:
    clock = ManualClock()
    cache = _cache(clock)
    stored = WorkItem(id="a", description="Redesign the marketing landing page css")
    await cache.store("k", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8, item=stored)
    query = WorkItem(id="q", description="Optimize database query latency")
    assert await cache.find_similar(query) == []
    assert [match.record.fingerprint for match in await cache.find_similar(query, threshold=0.2)] == ["k"]


@pytest.mark.asyncio
async def test_expired_lookup_keeps_persisted_copy_replaced_concurrently(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = ManualClock()
    store = InMemoryRecordStore()
    cache = ConsultationCache(CacheSettings(ttl_ms=1000), record_store=store, now=clock)  # type: ignore[call-arg]
    await cache.store("k", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    clock.advance(milliseconds=1500)
    replacement = cache.build_record("k", consultant_id="c", recommendation=recommendation(0.85), quality_score=0.85)

    def replaced_meanwhile(*, cause: str, count: int = 1) -> None:
        cache._entries["k"] = replacement

    monkeypatch.setattr("consultflow.orchestration.cache.record_cache_eviction", replaced_meanwhile)

    assert await cache.get("k") is None
    assert "k" in cache
    assert store.keys(CONSULTATIONS) == ["k"]


@pytest.mark.asyncio
async def test_expired_lookup_removes_persisted_copy() -> None:
    clock = ManualClock()
    store = InMemoryRecordStore()
    cache = ConsultationCache(CacheSettings(ttl_ms=1000), record_store=store, now=clock)  # type: ignore[call-arg]
    await cache.store("k", consultant_id="c", recommendation=recommendation(0.8), quality_score=0.8)
    clock.advance(milliseconds=1500)
    assert await cache.get("k") is None
    assert store.keys(CONSULTATIONS) == []
