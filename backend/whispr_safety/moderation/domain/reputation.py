"""Per-user reputation state machine: impact, recovery, appeals and overrides."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Protocol, Sequence
from uuid import uuid4

from whispr_safety.moderation.domain import policy
from whispr_safety.moderation.domain.errors import ConcurrentUpdateError, NotFoundError, PersistenceError
from whispr_safety.moderation.domain.models import (
    ADMIN_ADJUSTMENT,
    LocalModerationResult,
    ModerationAction,
    ReputationLevel,
    Severity,
    UserReputation,
    Violation,
    ViolationRecord,
    ViolationType,
)
from whispr_safety.obs import metrics as obs_metrics
from whispr_safety.settings import settings

logger = logging.getLogger(__name__)


def clamp(value: int, minimum: int = policy.MIN_SCORE, maximum: int = policy.MAX_SCORE) -> int:
    return max(minimum, min(maximum, value))


def level_for_score(score: int) -> ReputationLevel:
    """Map a raw score onto its trust level; total over all integers."""

    for level in (
        ReputationLevel.TRUSTED,
        ReputationLevel.VERIFIED,
        ReputationLevel.STANDARD,
        ReputationLevel.FLAGGED,
    ):
        if score >= policy.REPUTATION_THRESHOLDS[level]:
            return level
    return ReputationLevel.BANNED


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_violation_impact(violation_type: ViolationType | str, severity: Severity) -> int:
    """Base impact for the type scaled by severity, without any level multiplier."""

    try:
        kind = ViolationType(violation_type)
    except ValueError:
        base = policy.DEFAULT_VIOLATION_IMPACT
    else:
        base = policy.VIOLATION_IMPACT_SCORES.get(kind, policy.DEFAULT_VIOLATION_IMPACT)
    return _round_half_up(base * policy.SEVERITY_MULTIPLIERS[severity])


def penalty_multiplier(level: ReputationLevel) -> float:
    return policy.PENALTY_MULTIPLIERS[level]


def calculate_reputation_impact(violations: Iterable[Violation], level: ReputationLevel) -> int:
    """Total impact of a moderation result, amplified for less trusted levels."""

    total = 0.0
    for violation in violations:
        base = policy.VIOLATION_IMPACT_SCORES.get(violation.type, policy.DEFAULT_VIOLATION_IMPACT)
        total += base * policy.SEVERITY_MULTIPLIERS[violation.severity]
    return _round_half_up(total * penalty_multiplier(level))


def is_appealable(level: ReputationLevel, violations: Iterable[Violation] = ()) -> bool:
    if level is ReputationLevel.BANNED:
        return False
    if level is ReputationLevel.FLAGGED and any(v.severity is Severity.CRITICAL for v in violations):
        return False
    return True


def appeal_time_limit(level: ReputationLevel) -> int:
    return policy.APPEAL_TIME_LIMITS[level]


def auto_appeal_threshold(level: ReputationLevel) -> float:
    return policy.AUTO_APPEAL_THRESHOLDS[level]


def can_auto_appeal(level: ReputationLevel, confidence: float) -> bool:
    """Content is auto-reversed when classifier confidence sits below the level threshold."""

    return confidence < auto_appeal_threshold(level)


def recovery_rate(level: ReputationLevel) -> float:
    return policy.RECOVERY_RATES[level]


def level_description(level: ReputationLevel) -> str:
    return policy.LEVEL_DESCRIPTIONS[level]


def days_since_last_violation(reputation: UserReputation, now: datetime | None = None) -> int | None:
    if reputation.last_violation is None:
        return None
    elapsed = (now or _now()) - reputation.last_violation
    return max(0, math.floor(elapsed.total_seconds() / 86400))


def recovery_baseline(reputation: UserReputation) -> int:
    """Score recovery starts from; falls back to the current score when none was pinned."""

    return reputation.recovery_baseline if reputation.recovery_baseline is not None else reputation.score


def calculate_recovery_target(reputation: UserReputation, now: datetime | None = None) -> int:
    """Score the user should hold after time-based recovery.

    Recovery is recomputed from the post-violation baseline and the time since
    ``last_violation`` rather than accumulated, so applying it repeatedly in
    the same window yields the same score. The result never lowers the score.
    """

    days = days_since_last_violation(reputation, now)
    if days is None or days < policy.RECOVERY_MIN_DAYS:
        return reputation.score
    days = min(days, policy.RECOVERY_MAX_DAYS)
    baseline = recovery_baseline(reputation)
    rate = recovery_rate(level_for_score(baseline))
    target = min(policy.MAX_SCORE, _round_half_up(baseline + rate * days))
    return max(reputation.score, target)


def default_reputation(user_id: str, *, now: datetime | None = None, score: int = policy.DEFAULT_REPUTATION_SCORE) -> UserReputation:
    timestamp = now or _now()
    bounded = clamp(score)
    return UserReputation(
        user_id=user_id,
        score=bounded,
        level=level_for_score(bounded),
        created_at=timestamp,
        updated_at=timestamp,
    )


@dataclass(frozen=True, slots=True)
class ReputationAssessment:
    """Policy view of one moderation result for one author."""

    level: ReputationLevel
    reputation_impact: int
    is_appealable: bool
    appeal_time_limit_days: int
    penalty_multiplier: float
    auto_appeal_threshold: float


@dataclass(frozen=True, slots=True)
class ReputationStats:
    total_users: int = 0
    average_score: float = 0.0
    level_distribution: Mapping[ReputationLevel, int] = field(default_factory=dict)
    banned_users: int = 0


def calculate_reputation_stats(reputations: Sequence[UserReputation]) -> ReputationStats:
    if not reputations:
        return ReputationStats(level_distribution={level: 0 for level in ReputationLevel})
    distribution = {level: 0 for level in ReputationLevel}
    for reputation in reputations:
        distribution[reputation.level] += 1
    average = sum(rep.score for rep in reputations) / len(reputations)
    return ReputationStats(
        total_users=len(reputations),
        average_score=round(average, 2),
        level_distribution=distribution,
        banned_users=distribution[ReputationLevel.BANNED],
    )


class ReputationRepository(Protocol):
    """Storage contract for reputation records.

    ``save_user_reputation`` is an optimistic write: ``expected_version`` is the
    version the caller read (``None`` for a record that must not exist yet).
    A stale version raises :class:`ConcurrentUpdateError`. Other failures are
    raised as :class:`PersistenceError`.
    """

    async def load_user_reputation(self, user_id: str) -> UserReputation | None:
        ...

    async def save_user_reputation(self, reputation: UserReputation, *, expected_version: int | None) -> UserReputation:
        ...

    async def append_violation_record(self, user_id: str, record: ViolationRecord) -> UserReputation:
        ...

    async def list_user_reputations(self) -> Sequence[UserReputation]:
        ...

    async def count_active_banned_users(self) -> int:
        ...


Mutation = Callable[[UserReputation], UserReputation | None]


class ReputationService:
    """Owns reputation mutations; every write is a retried read-modify-write."""

    def __init__(
        self,
        repository: ReputationRepository,
        *,
        write_retries: int | None = None,
        default_score: int | None = None,
    ) -> None:
        self._repo = repository
        self._retries = max(1, write_retries if write_retries is not None else settings.reputation_write_retries)
        self._default_score = clamp(default_score if default_score is not None else settings.reputation_default_score)

    # --- Reads -------------------------------------------------------------

    async def get_user_reputation(self, user_id: str, *, now: datetime | None = None) -> UserReputation:
        """Return the stored reputation, creating the default record on first access."""

        existing = await self._repo.load_user_reputation(user_id)
        if existing is not None:
            return existing
        fresh = default_reputation(user_id, now=now, score=self._default_score)
        try:
            created = await self._repo.save_user_reputation(fresh, expected_version=None)
        except ConcurrentUpdateError:
            # Another writer created it first.
            raced = await self._repo.load_user_reputation(user_id)
            if raced is None:
                raise
            return raced
        logger.info("reputation created", extra={"user_id": user_id, "score": created.score})
        return created

    async def assess_moderation(self, user_id: str, result: LocalModerationResult) -> ReputationAssessment:
        reputation = await self.get_user_reputation(user_id)
        level = reputation.level
        return ReputationAssessment(
            level=level,
            reputation_impact=calculate_reputation_impact(result.violations, level),
            is_appealable=is_appealable(level, result.violations),
            appeal_time_limit_days=appeal_time_limit(level),
            penalty_multiplier=penalty_multiplier(level),
            auto_appeal_threshold=auto_appeal_threshold(level),
        )

    async def get_reputation_stats(self) -> ReputationStats:
        try:
            reputations = await self._repo.list_user_reputations()
        except PersistenceError:
            logger.warning("reputation stats unavailable; returning zeroed stats", exc_info=True)
            return calculate_reputation_stats(())
        return calculate_reputation_stats(reputations)

    async def count_active_banned_users(self) -> int:
        count = await self._repo.count_active_banned_users()
        obs_metrics.BANNED_USERS_GAUGE.set(count)
        return count

    # --- Violations --------------------------------------------------------

    async def record_violation(
        self,
        user_id: str,
        *,
        whisper_id: str,
        violation_type: ViolationType,
        severity: Severity,
        notes: str = "",
        now: datetime | None = None,
    ) -> UserReputation:
        """Apply a confirmed violation at its base impact (no level multiplier)."""

        timestamp = now or _now()
        impact = calculate_violation_impact(violation_type, severity)

        def apply(current: UserReputation) -> UserReputation:
            record = _new_record(whisper_id, violation_type.value, severity, timestamp, notes)
            score = clamp(current.score - impact)
            return current.with_score(
                score,
                updated_at=timestamp,
                violation_history=current.violation_history + (record,),
                last_violation=timestamp,
                recovery_baseline=score,
            )

        updated = await self._mutate(user_id, "record_violation", apply, now=timestamp)
        logger.info(
            "violation recorded",
            extra={
                "user_id": user_id,
                "violation_type": violation_type.value,
                "severity": severity.value,
                "impact": impact,
                "score": updated.score,
            },
        )
        return updated

    async def record_moderation_outcome(
        self,
        user_id: str,
        *,
        whisper_id: str,
        result: LocalModerationResult,
        action: ModerationAction,
        now: datetime | None = None,
    ) -> UserReputation:
        """Apply a moderation result through the level penalty multiplier.

        One history record is appended per violation; the whisper counters
        track the action taken on the submission.
        """

        timestamp = now or _now()

        def apply(current: UserReputation) -> UserReputation:
            impact = calculate_reputation_impact(result.violations, current.level)
            records = tuple(
                _new_record(whisper_id, violation.type.value, violation.severity, timestamp, violation.description)
                for violation in result.violations
            )
            counters = {
                "total_whispers": current.total_whispers + 1,
                "flagged_whispers": current.flagged_whispers + (1 if action is ModerationAction.FLAG else 0),
                "rejected_whispers": current.rejected_whispers + (1 if action is ModerationAction.REJECT else 0),
                "approved_whispers": current.approved_whispers
                + (1 if action in (ModerationAction.APPROVE, ModerationAction.WARN) else 0),
            }
            if not records:
                return current.with_score(current.score, updated_at=timestamp, **counters)
            score = clamp(current.score - impact)
            return current.with_score(
                score,
                updated_at=timestamp,
                violation_history=current.violation_history + records,
                last_violation=timestamp,
                recovery_baseline=score,
                **counters,
            )

        return await self._mutate(user_id, "record_moderation_outcome", apply, now=timestamp)

    async def record_successful_content(self, user_id: str, *, now: datetime | None = None) -> UserReputation:
        timestamp = now or _now()

        def apply(current: UserReputation) -> UserReputation:
            bonus = _round_half_up(recovery_rate(current.level))
            return current.with_score(
                current.score + bonus,
                updated_at=timestamp,
                total_whispers=current.total_whispers + 1,
                approved_whispers=current.approved_whispers + 1,
            )

        return await self._mutate(user_id, "record_successful_content", apply, now=timestamp)

    async def note_violation(
        self,
        user_id: str,
        *,
        whisper_id: str,
        kind: str,
        severity: Severity = Severity.LOW,
        notes: str = "",
        now: datetime | None = None,
    ) -> UserReputation:
        """Append a history record without touching the score."""

        timestamp = now or _now()
        await self.get_user_reputation(user_id, now=timestamp)
        record = _new_record(whisper_id, kind, severity, timestamp, notes)
        updated = await self._repo.append_violation_record(user_id, record)
        obs_metrics.REPUTATION_UPDATES_TOTAL.labels(kind="note_violation").inc()
        logger.info("violation noted", extra={"user_id": user_id, "kind": kind})
        return updated

    async def resolve_violation_record(
        self,
        user_id: str,
        record_id: str,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> UserReputation:
        timestamp = now or _now()
        existing = await self._repo.load_user_reputation(user_id)
        if existing is None:
            raise NotFoundError(f"reputation {user_id} not found")

        def apply(current: UserReputation) -> UserReputation:
            history: list[ViolationRecord] = []
            found = False
            for record in current.violation_history:
                if record.id == record_id:
                    found = True
                    record = replace(record, resolved=True, notes=notes if notes is not None else record.notes)
                history.append(record)
            if not found:
                raise NotFoundError(f"violation record {record_id} not found")
            return replace(current, violation_history=tuple(history), updated_at=timestamp)

        return await self._mutate(user_id, "resolve_violation_record", apply, now=timestamp)

    # --- Score adjustments ---------------------------------------------------

    async def adjust_score(
        self,
        user_id: str,
        delta: int,
        *,
        kind: str,
        notes: str,
        whisper_id: str = "",
        severity: Severity = Severity.LOW,
        now: datetime | None = None,
    ) -> UserReputation:
        """Apply a signed delta and document it with a history record of ``kind``."""

        timestamp = now or _now()

        def apply(current: UserReputation) -> UserReputation:
            record = _new_record(whisper_id, kind, severity, timestamp, notes)
            score = clamp(current.score + delta)
            changes: dict[str, object] = {"violation_history": current.violation_history + (record,)}
            if delta < 0:
                changes["last_violation"] = timestamp
                changes["recovery_baseline"] = score
            return current.with_score(score, updated_at=timestamp, **changes)

        return await self._mutate(user_id, f"adjust_score:{kind}", apply, now=timestamp)

    async def admin_set_score(
        self,
        user_id: str,
        score: int,
        *,
        admin_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> UserReputation:
        """Set the score explicitly; always leaves an ``admin_adjustment`` record."""

        timestamp = now or _now()
        target = clamp(int(score))

        def apply(current: UserReputation) -> UserReputation:
            notes = f"Score changed from {current.score} to {target} by {admin_id}: {reason}"
            record = _new_record("", ADMIN_ADJUSTMENT, Severity.LOW, timestamp, notes)
            changes: dict[str, object] = {
                "violation_history": current.violation_history + (record,),
                "recovery_baseline": target,
            }
            if target < current.score:
                changes["last_violation"] = timestamp
            return current.with_score(target, updated_at=timestamp, **changes)

        updated = await self._mutate(user_id, "admin_set_score", apply, now=timestamp)
        logger.warning("reputation overridden", extra={"user_id": user_id, "admin_id": admin_id, "score": updated.score})
        return updated

    async def reset_reputation(
        self,
        user_id: str,
        *,
        admin_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> UserReputation:
        """Replace the record with a fresh default, keeping only the reset note."""

        timestamp = now or _now()

        def apply(current: UserReputation) -> UserReputation:
            notes = f"Reputation reset from {current.score} by {admin_id}: {reason}"
            record = _new_record("", ADMIN_ADJUSTMENT, Severity.LOW, timestamp, notes)
            fresh = default_reputation(user_id, now=timestamp, score=self._default_score)
            return replace(fresh, created_at=current.created_at, violation_history=(record,), version=current.version)

        return await self._mutate(user_id, "reset_reputation", apply, now=timestamp)

    # --- Recovery ------------------------------------------------------------

    async def process_recovery(self, user_id: str, *, now: datetime | None = None) -> UserReputation | None:
        """Apply time-based recovery; returns the new record or ``None`` when unchanged.

        Persistence failures are logged and swallowed since recovery is advisory.
        """

        timestamp = now or _now()
        recovered: list[int] = []

        def apply(current: UserReputation) -> UserReputation | None:
            recovered.clear()
            target = calculate_recovery_target(current, timestamp)
            if target <= current.score:
                return None
            recovered.append(target - current.score)
            # later runs in the same window must recompute from the same starting point
            return current.with_score(target, updated_at=timestamp, recovery_baseline=recovery_baseline(current))

        try:
            if await self._repo.load_user_reputation(user_id) is None:
                return None
            updated = await self._mutate(user_id, "process_recovery", apply, now=timestamp)
        except PersistenceError:
            logger.warning("reputation recovery skipped", extra={"user_id": user_id}, exc_info=True)
            return None
        if not recovered:
            return None
        logger.info("reputation recovered", extra={"user_id": user_id, "gain": recovered[0], "score": updated.score})
        return updated

    async def run_recovery_pass(self, *, now: datetime | None = None) -> list[UserReputation]:
        timestamp = now or _now()
        try:
            candidates = await self._repo.list_user_reputations()
        except PersistenceError:
            logger.warning("reputation recovery sweep could not list users", exc_info=True)
            return []
        results: list[UserReputation] = []
        for reputation in candidates:
            if reputation.last_violation is None:
                continue
            updated = await self.process_recovery(reputation.user_id, now=timestamp)
            if updated is not None:
                results.append(updated)
        return results

    # --- Internals -----------------------------------------------------------

    async def _mutate(self, user_id: str, operation: str, mutation: Mutation, *, now: datetime) -> UserReputation:
        for attempt in range(1, self._retries + 1):
            current = await self._repo.load_user_reputation(user_id)
            expected: int | None = current.version if current is not None else None
            base = current or default_reputation(user_id, now=now, score=self._default_score)
            updated = mutation(base)
            if updated is None:
                return base
            try:
                saved = await self._repo.save_user_reputation(updated, expected_version=expected)
            except ConcurrentUpdateError:
                obs_metrics.REPUTATION_WRITE_CONFLICTS_TOTAL.inc()
                logger.info(
                    "reputation write conflict",
                    extra={"user_id": user_id, "operation": operation, "attempt": attempt},
                )
                continue
            self._observe(base, saved, operation)
            return saved
        raise ConcurrentUpdateError(operation, user_id)

    @staticmethod
    def _observe(before: UserReputation, after: UserReputation, operation: str) -> None:
        obs_metrics.REPUTATION_UPDATES_TOTAL.labels(kind=operation.split(":", 1)[0]).inc()
        if before.level is not after.level:
            obs_metrics.REPUTATION_LEVEL_CHANGES_TOTAL.labels(
                from_level=before.level.value,
                to_level=after.level.value,
            ).inc()
            logger.info(
                "reputation level changed",
                extra={
                    "user_id": after.user_id,
                    "from_level": before.level.value,
                    "to_level": after.level.value,
                    "score": after.score,
                },
            )


def _new_record(whisper_id: str, kind: str, severity: Severity, timestamp: datetime, notes: str) -> ViolationRecord:
    return ViolationRecord(
        id=uuid4().hex,
        whisper_id=whisper_id,
        violation_type=kind,
        severity=severity,
        timestamp=timestamp,
        notes=notes,
    )


class InMemoryReputationRepository(ReputationRepository):
    """Reference repository used in tests and developer environments."""

    def __init__(self) -> None:
        self.records: dict[str, UserReputation] = {}
        self._lock = asyncio.Lock()

    async def load_user_reputation(self, user_id: str) -> UserReputation | None:
        return self.records.get(user_id)

    async def save_user_reputation(self, reputation: UserReputation, *, expected_version: int | None) -> UserReputation:
        async with self._lock:
            current = self.records.get(reputation.user_id)
            current_version = current.version if current is not None else None
            if current_version != expected_version:
                raise ConcurrentUpdateError("save_user_reputation", reputation.user_id)
            stored = replace(reputation, version=(expected_version or 0) + 1)
            self.records[reputation.user_id] = stored
            return stored

    async def append_violation_record(self, user_id: str, record: ViolationRecord) -> UserReputation:
        async with self._lock:
            current = self.records.get(user_id)
            if current is None:
                raise PersistenceError("append_violation_record", f"no reputation for {user_id}")
            stored = replace(
                current.with_record(record, updated_at=record.timestamp),
                version=current.version + 1,
            )
            self.records[user_id] = stored
            return stored

    async def list_user_reputations(self) -> Sequence[UserReputation]:
        return list(self.records.values())

    async def count_active_banned_users(self) -> int:
        return sum(1 for rep in self.records.values() if rep.level is ReputationLevel.BANNED)


__all__ = [
    "InMemoryReputationRepository",
    "ReputationAssessment",
    "ReputationRepository",
    "ReputationService",
    "ReputationStats",
    "appeal_time_limit",
    "auto_appeal_threshold",
    "calculate_recovery_target",
    "calculate_reputation_impact",
    "calculate_reputation_stats",
    "calculate_violation_impact",
    "can_auto_appeal",
    "clamp",
    "days_since_last_violation",
    "default_reputation",
    "is_appealable",
    "level_description",
    "level_for_score",
    "penalty_multiplier",
    "recovery_rate",
]
