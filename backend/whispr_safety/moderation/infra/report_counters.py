"""Report aggregate counters backed by Redis hashes and sets."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError

from whispr_safety.moderation.domain.aggregates import ReportAggregate
from whispr_safety.moderation.domain.errors import PersistenceError
from whispr_safety.moderation.domain.models import ContentType, ReportCategory


@dataclass
class RedisReportAggregateStore:
    """Keys live under ``<prefix>:<type>:<id>:``.

    ``weights`` and ``categories`` are hashes keyed by report id, ``reporters``
    is a set and ``tiers`` holds the escalation claims.
    """

    client: Redis
    prefix: str = "mod:report_agg"

    def _key(self, content_type: ContentType, content_id: str, suffix: str) -> str:
        return f"{self.prefix}:{content_type.value}:{content_id}:{suffix}"

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
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key(content_type, content_id, "weights"), report_id, weight)
                pipe.hset(self._key(content_type, content_id, "categories"), report_id, category.value)
                pipe.sadd(self._key(content_type, content_id, "reporters"), reporter_id)
                await pipe.execute()
        except RedisError as exc:
            raise PersistenceError("record_report_aggregate", str(exc)) from exc
        return await self.snapshot(content_type, content_id)

    async def snapshot(self, content_type: ContentType, content_id: str) -> ReportAggregate:
        try:
            weights = await self.client.hvals(self._key(content_type, content_id, "weights"))
            categories = await self.client.hvals(self._key(content_type, content_id, "categories"))
            unique = await self.client.scard(self._key(content_type, content_id, "reporters"))
            claimed = await self.client.hkeys(self._key(content_type, content_id, "tiers"))
        except RedisError as exc:
            raise PersistenceError("load_report_aggregate", str(exc)) from exc
        return ReportAggregate(
            content_type=content_type,
            content_id=content_id,
            total_reports=len(weights),
            weighted_total=sum(float(value) for value in weights),
            unique_reporters=int(unique),
            categories=dict(Counter(ReportCategory(_text(value)) for value in categories)),
            claimed_tiers=frozenset(_text(name) for name in claimed),
        )

    async def claim_tier(self, content_type: ContentType, content_id: str, tier: str) -> bool:
        try:
            claimed = await self.client.hsetnx(self._key(content_type, content_id, "tiers"), tier, 1)
        except RedisError as exc:
            raise PersistenceError("claim_escalation_tier", str(exc)) from exc
        return bool(claimed)


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value
