from __future__ import annotations

from datetime import timedelta

import pytest

from whispr_safety.moderation.domain import reputation as rep
from whispr_safety.moderation.domain.models import (
    ReputationLevel,
    Severity,
    SuggestedAction,
    Violation,
    ViolationType,
)


def _violation(violation_type: ViolationType, severity: Severity) -> Violation:
    return Violation(
        type=violation_type,
        severity=severity,
        confidence=0.8,
        description="test",
        suggested_action=SuggestedAction.REJECT,
    )


@pytest.mark.parametrize(
    ("score", "level"),
    [
        (100, ReputationLevel.TRUSTED),
        (90, ReputationLevel.TRUSTED),
        (89, ReputationLevel.VERIFIED),
        (75, ReputationLevel.VERIFIED),
        (74, ReputationLevel.STANDARD),
        (50, ReputationLevel.STANDARD),
        (49, ReputationLevel.FLAGGED),
        (25, ReputationLevel.FLAGGED),
        (24, ReputationLevel.BANNED),
        (0, ReputationLevel.BANNED),
    ],
)
def test_level_for_score(score: int, level: ReputationLevel) -> None:
    assert rep.level_for_score(score) is level


def test_violation_impact_scales_by_severity() -> None:
    assert rep.calculate_violation_impact(ViolationType.HARASSMENT, Severity.MEDIUM) == 15
    assert rep.calculate_violation_impact(ViolationType.HATE_SPEECH, Severity.LOW) == 13
    assert rep.calculate_violation_impact(ViolationType.VIOLENCE, Severity.HIGH) == 45
    assert rep.calculate_violation_impact(ViolationType.MINOR_SAFETY, Severity.CRITICAL) == 70
    assert rep.calculate_violation_impact("whisper_flagged", Severity.MEDIUM) == 10


def test_reputation_impact_applies_level_multiplier() -> None:
    violations = [_violation(ViolationType.HARASSMENT, Severity.MEDIUM)]
    assert rep.calculate_reputation_impact(violations, ReputationLevel.TRUSTED) == 8
    assert rep.calculate_reputation_impact(violations, ReputationLevel.VERIFIED) == 11
    assert rep.calculate_reputation_impact(violations, ReputationLevel.STANDARD) == 15
    assert rep.calculate_reputation_impact(violations, ReputationLevel.FLAGGED) == 23
    assert rep.calculate_reputation_impact(violations, ReputationLevel.BANNED) == 30
    assert rep.calculate_reputation_impact([], ReputationLevel.FLAGGED) == 0


def test_appeal_policy() -> None:
    critical = [_violation(ViolationType.VIOLENCE, Severity.CRITICAL)]
    assert rep.is_appealable(ReputationLevel.BANNED) is False
    assert rep.is_appealable(ReputationLevel.FLAGGED, critical) is False
    assert rep.is_appealable(ReputationLevel.FLAGGED, [_violation(ViolationType.SPAM, Severity.LOW)]) is True
    assert rep.is_appealable(ReputationLevel.TRUSTED, critical) is True
    assert [rep.appeal_time_limit(level) for level in ReputationLevel] == [30, 14, 7, 3, 0]
    assert [rep.auto_appeal_threshold(level) for level in ReputationLevel] == [0.3, 0.5, 0.7, 0.9, 1.0]


def test_auto_appeal_requires_confidence_below_threshold() -> None:
    assert rep.can_auto_appeal(ReputationLevel.VERIFIED, 0.4) is True
    assert rep.can_auto_appeal(ReputationLevel.VERIFIED, 0.5) is False
    assert rep.can_auto_appeal(ReputationLevel.BANNED, 0.99) is True
    assert rep.can_auto_appeal(ReputationLevel.BANNED, 1.0) is False


def test_penalty_and_recovery_tables() -> None:
    assert [rep.penalty_multiplier(level) for level in ReputationLevel] == [0.5, 0.75, 1.0, 1.5, 2.0]
    assert [rep.recovery_rate(level) for level in ReputationLevel] == [2.0, 1.5, 1.0, 0.5, 0.0]
    assert rep.level_description(ReputationLevel.TRUSTED) == "Trusted user with fast appeals and reduced penalties"


def test_default_reputation(now) -> None:
    fresh = rep.default_reputation("u1", now=now)
    assert fresh.score == 75
    assert fresh.level is ReputationLevel.VERIFIED
    assert fresh.violation_history == ()
    assert fresh.last_violation is None


def test_with_score_keeps_level_in_sync(now) -> None:
    fresh = rep.default_reputation("u1", now=now)
    raised = fresh.with_score(120, updated_at=now)
    lowered = fresh.with_score(-5, updated_at=now)
    assert (raised.score, raised.level) == (100, ReputationLevel.TRUSTED)
    assert (lowered.score, lowered.level) == (0, ReputationLevel.BANNED)


def test_recovery_target_waits_for_grace_period(now) -> None:
    base = rep.default_reputation("u1", now=now).with_score(50, updated_at=now, recovery_baseline=50)
    assert rep.calculate_recovery_target(base, now) == 50
    violated = base.with_score(50, updated_at=now, last_violation=now - timedelta(days=29, hours=23))
    assert rep.calculate_recovery_target(violated, now) == 50
    eligible = base.with_score(50, updated_at=now, last_violation=now - timedelta(days=35, hours=20))
    assert rep.days_since_last_violation(eligible, now) == 35
    assert rep.calculate_recovery_target(eligible, now) == 85


def test_recovery_target_is_capped_and_never_lowers(now) -> None:
    flagged = rep.default_reputation("u1", now=now).with_score(
        30, updated_at=now, recovery_baseline=30, last_violation=now - timedelta(days=1000)
    )
    assert rep.calculate_recovery_target(flagged, now) == 100
    banned = rep.default_reputation("u2", now=now).with_score(
        10, updated_at=now, recovery_baseline=10, last_violation=now - timedelta(days=90)
    )
    assert rep.calculate_recovery_target(banned, now) == 10
    bumped = flagged.with_score(60, updated_at=now, last_violation=now - timedelta(days=31))
    assert rep.calculate_recovery_target(bumped, now) == 60


def test_reputation_stats(now) -> None:
    records = [
        rep.default_reputation("a", now=now),
        rep.default_reputation("b", now=now, score=95),
        rep.default_reputation("c", now=now, score=5),
    ]
    stats = rep.calculate_reputation_stats(records)
    assert stats.total_users == 3
    assert stats.average_score == 58.33
    assert stats.banned_users == 1
    assert stats.level_distribution[ReputationLevel.TRUSTED] == 1
    empty = rep.calculate_reputation_stats([])
    assert empty.total_users == 0
    assert empty.average_score == 0.0
