from __future__ import annotations

import asyncio
import hashlib
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..core.config import CacheSettings
from ..core.logging import get_logger
from ..core.metrics import increment_cache_hit, increment_cache_miss, record_cache_eviction, set_cache_size
from ..schemas.consultation import ConsultationRecord, ProjectContext, Recommendation, WorkItem
from ..utils.json_encoding import encode_json
from .enums import CacheFreshness, TelemetryEventType
from .routing import detect_domain
from .store import CONSULTATIONS, RecordStore
from .telemetry import TelemetryEmitter

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]

_WHITESPACE = re.compile(r"\s+")


def _normalize_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value.strip().lower())


def _normalize_list(values: tuple[str, ...] | list[str]) -> list[str]:
    return sorted({_normalize_text(value) for value in values if value and value.strip()})


def fingerprint(consultant_id: str, item: WorkItem, context: ProjectContext | None = None) -> str:
    """Stable hash of (consultant, normalized item, normalized context).

    The item contributes its description, requirements, and constraints; ids,
    priority, and dependencies are routing concerns and do not change the
    consultation. The context contributes its constraints and objectives only,
    because the decision log grows after every execution.
    """
    payload: dict[str, Any] = {
        "consultant": consultant_id,
        "item": {
            "description": _normalize_text(item.description),
            "requirements": _normalize_list(item.requirements),
            "constraints": _normalize_list(item.constraints),
        },
        "context": {
            "constraints": _normalize_list(context.constraints) if context else [],
            "objectives": _normalize_list(context.objectives) if context else [],
        },
    }
    return hashlib.sha256(encode_json(payload).encode("utf-8")).hexdigest()


_COMPLEXITY_HINTS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("enterprise", "distributed", "complex", "advanced"), 8),
    (("integrate", "optimize", "scale", "design"), 5),
)


def _complexity_hint(text: str) -> int:
    for keywords, level in _COMPLEXITY_HINTS:
        if any(keyword in text for keyword in keywords):
            return level
    return 2


def _text_similarity(first: str, second: str) -> float:
    left = set(first.split())
    right = set(second.split())
    union = left | right
    return len(left & right) / len(union) if union else 0.0


def _requirements_similarity(first: WorkItem, second: WorkItem) -> float:
    left = set(_normalize_list(first.requirements))
    right = set(_normalize_list(second.requirements))
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return len(left & right) / max(len(left), len(right))


def task_similarity(first: WorkItem, second: WorkItem) -> float:
    """Weighted similarity in [0, 1] of two work items.

    Description word overlap weighs 0.4, detected domain 0.3, rough complexity
    0.2 and shared requirements 0.1.
    """
    first_text = _normalize_text(first.description)
    second_text = _normalize_text(second.description)
    domain = 1.0 if detect_domain(first_text) == detect_domain(second_text) else 0.3
    complexity = max(0.0, 1 - abs(_complexity_hint(first_text) - _complexity_hint(second_text)) / 10)
    return (
        _text_similarity(first_text, second_text) * 0.4
        + domain * 0.3
        + complexity * 0.2
        + _requirements_similarity(first, second) * 0.1
    )


@dataclass(slots=True, frozen=True)
class SimilarConsultation:
    record: ConsultationRecord
    similarity: float


class ConsultationCache:
    """Fingerprint-addressed store of accepted consultation outcomes."""

    def __init__(
        self,
        settings: CacheSettings | None = None,
        *,
        record_store: RecordStore | None = None,
        telemetry: TelemetryEmitter | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        self._settings = settings or CacheSettings()  # type: ignore[call-arg]
        self._record_store = record_store
        self._telemetry = telemetry
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))
        self._entries: dict[str, ConsultationRecord] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def ttl_for(self, quality_score: float) -> timedelta:
        ttl_ms = float(self._settings.ttl_ms)
        if quality_score > self._settings.high_quality_score:
            ttl_ms *= self._settings.ttl_extension_factor
        return timedelta(milliseconds=ttl_ms)

    def build_record(
        self,
        key: str,
        *,
        consultant_id: str,
        recommendation: Recommendation,
        quality_score: float,
        item: WorkItem | None = None,
    ) -> ConsultationRecord:
        created = self._now()
        return ConsultationRecord(
            fingerprint=key,
            consultant_id=consultant_id,
            recommendation=recommendation,
            quality_score=quality_score,
            work_item=item,
            created_at=created,
            expires_at=created + self.ttl_for(quality_score),
            access_count=0,
            last_accessed_at=None,
        )

    async def get(self, key: str) -> ConsultationRecord | None:
        now = self._now()
        expired = False
        async with self._lock:
            record = self._entries.get(key)
            if record is not None and record.is_expired(now):
                del self._entries[key]
                expired = True
                record = None
            if record is None:
                self._misses += 1
            else:
                self._hits += 1
                record.access_count += 1
                record.last_accessed_at = now
                record = record.model_copy(deep=True)
            size = len(self._entries)

        if expired:
            self._evictions += 1
            record_cache_eviction(cause="expired")
            async with self._lock:
                # a concurrent put may have replaced the expired entry meanwhile
                if key not in self._entries:
                    await self._forget(key)
        set_cache_size(size)
        if record is None:
            increment_cache_miss()
            logger.debug("cache_miss", fingerprint=key, expired=expired)
            self._emit(TelemetryEventType.CACHE_MISS, fingerprint=key, expired=expired)
            return None
        increment_cache_hit()
        logger.debug("cache_hit", fingerprint=key, access_count=record.access_count)
        self._emit(
            TelemetryEventType.CACHE_HIT,
            fingerprint=key,
            consultant_id=record.consultant_id,
            access_count=record.access_count,
        )
        return record

    async def put(self, key: str, record: ConsultationRecord) -> None:
        if record.fingerprint != key:
            record = record.model_copy(update={"fingerprint": key})
        async with self._lock:
            self._entries[key] = record.model_copy(deep=True)
            over_capacity = len(self._entries) > self._settings.max_size

        await self._persist(record)
        self._emit(
            TelemetryEventType.CACHE_STORED,
            fingerprint=key,
            consultant_id=record.consultant_id,
            quality_score=record.quality_score,
            expires_at=record.expires_at,
        )
        if over_capacity:
            await self.evict_under_pressure()
            await self.evict_expired()
        set_cache_size(len(self._entries))

    async def store(
        self,
        key: str,
        *,
        consultant_id: str,
        recommendation: Recommendation,
        quality_score: float,
        item: WorkItem | None = None,
    ) -> ConsultationRecord:
        record = self.build_record(
            key,
            consultant_id=consultant_id,
            recommendation=recommendation,
            quality_score=quality_score,
            item=item,
        )
        await self.put(key, record)
        return record

    async def evict_expired(self) -> int:
        now = self._now()
        async with self._lock:
            stale = [key for key, record in self._entries.items() if record.is_expired(now)]
            for key in stale:
                del self._entries[key]
        await self._account_evictions(stale, cause="expired")
        return len(stale)

    async def evict_under_pressure(self, target_fraction: float | None = None) -> int:
        fraction = self._settings.eviction_fraction if target_fraction is None else target_fraction
        if not 0.0 < fraction <= 1.0:
            raise ValueError("target_fraction must be within (0, 1]")
        async with self._lock:
            if not self._entries:
                return 0
            count = max(1, math.floor(len(self._entries) * fraction))
            ranked = sorted(
                self._entries.values(),
                key=lambda record: (record.access_count, record.last_accessed_at or record.created_at),
            )
            victims = [record.fingerprint for record in ranked[:count]]
            for key in victims:
                del self._entries[key]
        await self._account_evictions(victims, cause="pressure")
        return len(victims)

    async def load(self) -> int:
        """Hydrate live records from the record store; expired ones are skipped."""
        if self._record_store is None:
            return 0
        now = self._now()
        loaded = 0
        for payload in await self._record_store.list(CONSULTATIONS):
            record = ConsultationRecord.model_validate(payload)
            if record.is_expired(now):
                continue
            async with self._lock:
                self._entries[record.fingerprint] = record
            loaded += 1
        set_cache_size(len(self._entries))
        logger.info("consultation_cache_loaded", records=loaded)
        return loaded

    async def find_similar(self, item: WorkItem, *, threshold: float = 0.7) -> list[SimilarConsultation]:
        """Live records answering items similar to ``item``, most similar first.

        Lookups here do not count as hits and leave access statistics untouched.
        """
        now = self._now()
        async with self._lock:
            candidates = [
                record.model_copy(deep=True)
                for record in self._entries.values()
                if record.work_item is not None and not record.is_expired(now)
            ]
        matches = [
            SimilarConsultation(record=record, similarity=task_similarity(item, record.work_item))
            for record in candidates
            if record.work_item is not None
        ]
        matches = [match for match in matches if match.similarity >= threshold]
        matches.sort(key=lambda match: match.similarity, reverse=True)
        logger.debug("similar_consultations", work_item_id=item.id, matches=len(matches), threshold=threshold)
        return matches

    def freshness(self, record: ConsultationRecord) -> CacheFreshness:
        age_hours = (self._now() - record.created_at).total_seconds() / 3600
        if age_hours < 1:
            return CacheFreshness.VERY_FRESH
        if age_hours < 6:
            return CacheFreshness.FRESH
        if age_hours < 24:
            return CacheFreshness.ACCEPTABLE
        return CacheFreshness.STALE

    def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self._settings.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "evictions": self._evictions,
        }

    async def clear(self) -> None:
        async with self._lock:
            keys = list(self._entries)
            self._entries.clear()
        for key in keys:
            await self._forget(key)
        set_cache_size(0)

    async def _account_evictions(self, keys: list[str], *, cause: str) -> None:
        if not keys:
            return
        self._evictions += len(keys)
        record_cache_eviction(cause=cause, count=len(keys))
        for key in keys:
            await self._forget(key)
        logger.info("cache_evicted", cause=cause, count=len(keys), remaining=len(self._entries))
        self._emit(TelemetryEventType.CACHE_EVICTED, cause=cause, count=len(keys))

    async def _persist(self, record: ConsultationRecord) -> None:
        if self._record_store is None:
            return
        await self._record_store.put(CONSULTATIONS, record.fingerprint, record.model_dump(mode="json"))

    async def _forget(self, key: str) -> None:
        if self._record_store is None:
            return
        await self._record_store.delete(CONSULTATIONS, key)

    def _emit(self, event_type: TelemetryEventType, **data: Any) -> None:
        if self._telemetry is not None:
            self._telemetry.emit(event_type, **data)


__all__ = ["fingerprint", "task_similarity", "SimilarConsultation", "ConsultationCache"]
