from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from whispr_safety.moderation.domain.errors import ConcurrentUpdateError, NotFoundError, PersistenceError
from whispr_safety.moderation.domain.models import (
    ADMIN_ADJUSTMENT,
    REPORT_DISMISSED,
    WHISPER_FLAGGED,
    LocalModerationResult,
    ModerationAction,
    ReputationLevel,
    Severity,
    SuggestedAction,
    UserReputation,
    Violation,
    ViolationType,
)
from whispr_safety.moderation.domain.reputation import (
    InMemoryReputationRepository,
    ReputationService,
    default_reputation,
    level_for_score,
)


def _result(*violations: Violation) -> LocalModerationResult:
    return LocalModerationResult(
        flagged=bool(violations),
        matched_keywords=(),
        toxicity_score=0.5,
        spam_score=0.0,
        personal_info_detected=False,
        violations=violations,
    )


def _violation(violation_type: ViolationType, severity: Severity) -> Violation:
    return Violation(
        type=violation_type,
        severity=severity,
        confidence=0.8,
        description=f"{violation_type.value} keyword",
        suggested_action=SuggestedAction.REJECT,
    )


def _assert_level_in_sync(reputation: UserReputation) -> None:
    assert reputation.level is level_for_score(reputation.score)


class InterleavingRepository(InMemoryReputationRepository):
    """Lets a competing writer land between a read and the following save."""

    def __init__(self) -> None:
        super().__init__()
        self.interleaved = False

    async def save_user_reputation(self, reputation, *, expected_version):
        if not self.interleaved and expected_version is not None:
            self.interleaved = True
            current = self.records[reputation.user_id]
            competing = current.with_score(current.score - 10, updated_at=current.updated_at)
            self.records[reputation.user_id] = replace(competing, version=current.version + 1)
        return await super().save_user_reputation(reputation, expected_version=expected_version)


class AlwaysStaleRepository(InMemoryReputationRepository):
    async def save_user_reputation(self, reputation, *, expected_version):
        if expected_version is not None:
            raise ConcurrentUpdateError("save_user_reputation", reputation.user_id)
        return await super().save_user_reputation(reputation, expected_version=expected_version)


class UnavailableRepository(InMemoryReputationRepository):
    async def load_user_reputation(self, user_id):
        raise PersistenceError("load_user_reputation", "store offline")

    async def list_user_reputations(self):
        raise PersistenceError("list_user_reputations", "store offline")


@pytest.fixture
def service() -> ReputationService:
    return ReputationService(repository=InMemoryReputationRepository(), write_retries=5, default_score=75)


@pytest.mark.asyncio
async def test_first_access_creates_default(service: ReputationService, now) -> None:
    created = await service.get_user_reputation("u1", now=now)
    assert created.score == 75
    assert created.level is ReputationLevel.VERIFIED
    assert created.version == 1
    again = await service.get_user_reputation("u1", now=now)
    assert again == created


@pytest.mark.asyncio
async def test_record_violation_uses_base_impact(service: ReputationService, now) -> None:
    updated = await service.record_violation(
        "u1", whisper_id="w1", violation_type=ViolationType.HARASSMENT, severity=Severity.MEDIUM, now=now
    )
    assert updated.score == 60
    assert updated.level is ReputationLevel.STANDARD
    assert updated.last_violation == now
    assert updated.recovery_baseline == 60
    assert [record.violation_type for record in updated.violation_history] == ["harassment"]
    assert updated.violation_history[0].whisper_id == "w1"


@pytest.mark.asyncio
async def test_record_violation_floors_at_zero(service: ReputationService, now) -> None:
    for _ in range(2):
        updated = await service.record_violation(
            "u1", whisper_id="w1", violation_type=ViolationType.MINOR_SAFETY, severity=Severity.CRITICAL, now=now
        )
        _assert_level_in_sync(updated)
    assert updated.score == 0
    assert updated.level is ReputationLevel.BANNED


@pytest.mark.asyncio
async def test_moderation_outcome_applies_level_multiplier(service: ReputationService, now) -> None:
    result = _result(_violation(ViolationType.HARASSMENT, Severity.MEDIUM))
    verified = await service.record_moderation_outcome(
        "u1", whisper_id="w1", result=result, action=ModerationAction.FLAG, now=now
    )
    assert verified.score == 64
    assert (verified.total_whispers, verified.flagged_whispers, verified.rejected_whispers) == (1, 1, 0)

    await service.admin_set_score("u2", 40, admin_id="admin", reason="setup", now=now)
    flagged = await service.record_moderation_outcome(
        "u2", whisper_id="w2", result=result, action=ModerationAction.REJECT, now=now
    )
    assert flagged.score == 17
    assert flagged.level is ReputationLevel.BANNED
    assert flagged.rejected_whispers == 1


@pytest.mark.asyncio
async def test_moderation_outcome_records_each_violation(service: ReputationService, now) -> None:
    result = _result(
        _violation(ViolationType.HARASSMENT, Severity.HIGH),
        _violation(ViolationType.HARASSMENT, Severity.HIGH),
    )
    updated = await service.record_moderation_outcome(
        "u1", whisper_id="w1", result=result, action=ModerationAction.REJECT, now=now
    )
    assert updated.score == 41
    assert len(updated.violation_history) == 2
    _assert_level_in_sync(updated)


@pytest.mark.asyncio
async def test_successful_content_bonus_follows_level(service: ReputationService, now) -> None:
    verified = await service.record_successful_content("u1", now=now)
    assert verified.score == 77
    assert (verified.approved_whispers, verified.total_whispers) == (1, 1)

    await service.admin_set_score("u2", 95, admin_id="admin", reason="setup", now=now)
    trusted = await service.record_successful_content("u2", now=now)
    assert trusted.score == 97

    await service.admin_set_score("u3", 0, admin_id="admin", reason="setup", now=now)
    banned = await service.record_successful_content("u3", now=now)
    assert banned.score == 0


@pytest.mark.asyncio
async def test_admin_override_is_documented(service: ReputationService, now) -> None:
    updated = await service.admin_set_score("u1", 150, admin_id="mod-7", reason="appeal granted", now=now)
    assert updated.score == 100
    assert updated.level is ReputationLevel.TRUSTED
    record = updated.violation_history[-1]
    assert record.violation_type == ADMIN_ADJUSTMENT
    assert "75" in record.notes and "100" in record.notes
    assert "mod-7" in record.notes


@pytest.mark.asyncio
async def test_adjust_score_records_kind(service: ReputationService, now) -> None:
    updated = await service.adjust_score("u1", -10, kind=REPORT_DISMISSED, notes="false report", now=now)
    assert updated.score == 65
    assert updated.violation_history[-1].violation_type == REPORT_DISMISSED
    assert updated.last_violation == now


@pytest.mark.asyncio
async def test_note_violation_leaves_score(service: ReputationService, now) -> None:
    updated = await service.note_violation("u1", whisper_id="w1", kind=WHISPER_FLAGGED, now=now)
    assert updated.score == 75
    assert updated.violation_history[-1].violation_type == WHISPER_FLAGGED


@pytest.mark.asyncio
async def test_resolve_violation_record(service: ReputationService, now) -> None:
    updated = await service.record_violation(
        "u1", whisper_id="w1", violation_type=ViolationType.SPAM, severity=Severity.LOW, now=now
    )
    record_id = updated.violation_history[0].id
    resolved = await service.resolve_violation_record("u1", record_id, notes="appeal upheld", now=now)
    assert resolved.violation_history[0].resolved is True
    assert resolved.violation_history[0].notes == "appeal upheld"
    assert resolved.score == updated.score
    with pytest.raises(NotFoundError):
        await service.resolve_violation_record("u1", "missing", now=now)
    with pytest.raises(NotFoundError):
        await service.resolve_violation_record("nobody", record_id, now=now)


@pytest.mark.asyncio
async def test_reset_reputation(service: ReputationService, now) -> None:
    await service.record_violation(
        "u1", whisper_id="w1", violation_type=ViolationType.VIOLENCE, severity=Severity.HIGH, now=now
    )
    reset = await service.reset_reputation("u1", admin_id="admin", reason="account review", now=now)
    assert reset.score == 75
    assert reset.last_violation is None
    assert [record.violation_type for record in reset.violation_history] == [ADMIN_ADJUSTMENT]


@pytest.mark.asyncio
async def test_recovery_is_idempotent(service: ReputationService, now) -> None:
    violated = await service.record_violation(
        "u1", whisper_id="w1", violation_type=ViolationType.HATE_SPEECH, severity=Severity.HIGH, now=now
    )
    assert violated.score == 37

    assert await service.process_recovery("u1", now=now + timedelta(days=10)) is None

    day_40 = now + timedelta(days=40)
    first = await service.process_recovery("u1", now=day_40)
    assert first is not None and first.score == 57
    assert await service.process_recovery("u1", now=day_40 + timedelta(hours=3)) is None
    assert (await service.get_user_reputation("u1")).score == 57

    later = await service.process_recovery("u1", now=now + timedelta(days=60))
    assert later is not None and later.score == 67
    _assert_level_in_sync(later)


@pytest.mark.asyncio
async def test_recovery_pins_baseline_for_records_without_one(now) -> None:
    repository = InMemoryReputationRepository()
    seeded = default_reputation("u1", now=now - timedelta(days=90), score=50)
    repository.records["u1"] = replace(seeded, last_violation=now - timedelta(days=40), version=1)
    service = ReputationService(repository=repository)

    first = await service.process_recovery("u1", now=now)
    assert first is not None and first.score == 90
    assert first.recovery_baseline == 50
    assert await service.process_recovery("u1", now=now) is None
    assert await service.process_recovery("u1", now=now + timedelta(hours=6)) is None
    assert repository.records["u1"].score == 90


@pytest.mark.asyncio
async def test_recovery_skips_unknown_and_degrades(now) -> None:
    service = ReputationService(repository=InMemoryReputationRepository())
    assert await service.process_recovery("ghost", now=now) is None

    offline = ReputationService(repository=UnavailableRepository())
    assert await offline.process_recovery("u1", now=now) is None
    assert await offline.run_recovery_pass(now=now) == []
    stats = await offline.get_reputation_stats()
    assert stats.total_users == 0


@pytest.mark.asyncio
async def test_recovery_pass_only_touches_eligible_users(service: ReputationService, now) -> None:
    await service.record_violation(
        "old", whisper_id="w1", violation_type=ViolationType.SPAM, severity=Severity.MEDIUM, now=now - timedelta(days=45)
    )
    await service.record_violation(
        "recent", whisper_id="w2", violation_type=ViolationType.SPAM, severity=Severity.MEDIUM, now=now
    )
    await service.get_user_reputation("clean", now=now)
    updated = await service.run_recovery_pass(now=now)
    assert [rep.user_id for rep in updated] == ["old"]
    assert updated[0].score == 100


@pytest.mark.asyncio
async def test_concurrent_update_is_retried_without_losing_writes(now) -> None:
    repository = InterleavingRepository()
    service = ReputationService(repository=repository, write_retries=3)
    await service.get_user_reputation("u1", now=now)
    updated = await service.record_violation(
        "u1", whisper_id="w1", violation_type=ViolationType.SPAM, severity=Severity.LOW, now=now
    )
    assert repository.interleaved is True
    assert updated.score == 62
    assert updated.version == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise(now) -> None:
    service = ReputationService(repository=AlwaysStaleRepository(), write_retries=2)
    await service.get_user_reputation("u1", now=now)
    with pytest.raises(ConcurrentUpdateError):
        await service.record_successful_content("u1", now=now)


@pytest.mark.asyncio
async def test_parallel_violations_all_apply(service: ReputationService, now) -> None:
    await asyncio.gather(
        *(
            service.record_violation(
                "u1", whisper_id=f"w{i}", violation_type=ViolationType.SPAM, severity=Severity.LOW, now=now
            )
            for i in range(4)
        )
    )
    final = await service.get_user_reputation("u1")
    assert final.score == 63
    assert len(final.violation_history) == 4


@pytest.mark.asyncio
async def test_assess_moderation_for_flagged_author(service: ReputationService, now) -> None:
    await service.admin_set_score("u1", 30, admin_id="admin", reason="setup", now=now)
    assessment = await service.assess_moderation("u1", _result(_violation(ViolationType.VIOLENCE, Severity.CRITICAL)))
    assert assessment.level is ReputationLevel.FLAGGED
    assert assessment.reputation_impact == 90
    assert assessment.is_appealable is False
    assert assessment.appeal_time_limit_days == 3
    assert assessment.penalty_multiplier == 1.5
    assert assessment.auto_appeal_threshold == 0.9


@pytest.mark.asyncio
async def test_banned_count_and_stats(service: ReputationService, now) -> None:
    await service.admin_set_score("u1", 0, admin_id="admin", reason="ban", now=now)
    await service.get_user_reputation("u2", now=now)
    assert await service.count_active_banned_users() == 1
    stats = await service.get_reputation_stats()
    assert stats.total_users == 2
    assert stats.banned_users == 1
