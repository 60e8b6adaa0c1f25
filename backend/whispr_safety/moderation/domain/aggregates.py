"""Per-content report counters used for threshold escalation."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from whispr_safety.moderation.domain.models import ContentType, ReportCategory


@dataclass(frozen=True, slots=True)
class ReportAggregate:
    content_type: ContentType
    content_id: str
    total_reports: int = 0
    weighted_total: float = 0.0
    unique_reporters: int = 0
    categories: Mapping[ReportCategory, int] = field(default_factory=dict)
    claimed_tiers: frozenset[str] = frozenset()


class ReportAggregateStore(Protocol):
    """Atomic counters per content item.

    ``record`` stores one contribution per report id, so concurrent reports
    never lose an update and recording the same report again changes nothing.
    ``claim_tier`` succeeds exactly once per (content item, tier).
    """

    async def record(
        self,
        content_type: ContentType,
        content_id: str,
        *,
        report_id: str,
        reporter_id: str,
        weight: float,
        category: ReportCategory,
    ) -> ReportAggregate:
        ...

    async def snapshot(self, content_type: ContentType, content_id: str) -> ReportAggregate:
        ...

    async def claim_tier(self, content_type: ContentType, content_id: str, tier: str) -> bool:
        ...


@dataclass(slots=True)
class _Counters:
    weights: dict[str, float] = field(default_factory=dict)
    categories: dict[str, ReportCategory] = field(default_factory=dict)
    reporters: set[str] = field(default_factory=set)
    claimed: set[str] = field(default_factory=set)


class InMemoryReportAggregateStore(ReportAggregateStore):
    def __init__(self) -> None:
        self._counters: dict[tuple[ContentType, str], _Counters] = {}
        self._lock = asyncio.Lock()

    async def record(
        self,
        content_type: ContentType,
        content_id: str,
        *,
        report_id: str,
        reporter_id: str,
        weight: float,
        category: ReportCategory,
    ) -> ReportAggregate:
        async with self._lock:
            counters = self._counters.setdefault((content_type, content_id), _Counters())
            counters.weights[report_id] = weight
            counters.categories[report_id] = category
            counters.reporters.add(reporter_id)
            return self._freeze(content_type, content_id, counters)

    async def snapshot(self, content_type: ContentType, content_id: str) -> ReportAggregate:
        async with self._lock:
            counters = self._counters.get((content_type, content_id))
            if counters is None:
                return ReportAggregate(content_type=content_type, content_id=content_id)
            return self._freeze(content_type, content_id, counters)

    async def claim_tier(self, content_type: ContentType, content_id: str, tier: str) -> bool:
        async with self._lock:
            counters = self._counters.setdefault((content_type, content_id), _Counters())
            if tier in counters.claimed:
                return False
            counters.claimed.add(tier)
            return True

    @staticmethod
    def _freeze(content_type: ContentType, content_id: str, counters: _Counters) -> ReportAggregate:
        return ReportAggregate(
            content_type=content_type,
            content_id=content_id,
            total_reports=len(counters.weights),
            weighted_total=sum(counters.weights.values()),
            unique_reporters=len(counters.reporters),
            categories=dict(Counter(counters.categories.values())),
            claimed_tiers=frozenset(counters.claimed),
        )
