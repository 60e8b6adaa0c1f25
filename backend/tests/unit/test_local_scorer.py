from __future__ import annotations

import pytest

from whispr_safety.moderation.domain import scorer
from whispr_safety.moderation.domain.keywords import KeywordCatalog
from whispr_safety.moderation.domain.models import (
    LocalModerationResult,
    ModerationAction,
    Severity,
    SuggestedAction,
    Violation,
    ViolationType,
)

CATALOG = KeywordCatalog.from_mapping(
    {
        "keywords": {
            "HARASSMENT": ["stupid", "idiot", "ugly"],
            "HATE_SPEECH": ["hate", "racist"],
            "VIOLENCE": ["kill", "punch", "attack"],
            "SEXUAL_CONTENT": ["sex", "nude"],
            "DRUGS": ["drugs", "cocaine"],
            "SPAM": ["buy now", "click here"],
        }
    }
)


def _violation(severity: Severity, confidence: float = 0.8) -> Violation:
    return Violation(
        type=ViolationType.HARASSMENT,
        severity=severity,
        confidence=confidence,
        description="test",
        suggested_action=SuggestedAction.REJECT,
    )


def _result(**overrides) -> LocalModerationResult:
    values = {
        "flagged": True,
        "matched_keywords": (),
        "toxicity_score": 0.0,
        "spam_score": 0.0,
        "personal_info_detected": False,
    }
    values.update(overrides)
    return LocalModerationResult(**values)


def test_clean_text_scores_zero() -> None:
    result = scorer.moderate_text("Had a lovely walk in the park today.", CATALOG)
    assert result.flagged is False
    assert result.matched_keywords == ()
    assert result.toxicity_score == 0
    assert result.spam_score == 0
    assert result.personal_info_detected is False


def test_each_keyword_hit_is_its_own_violation() -> None:
    violations, matched = scorer.check_keyword_violations("You are stupid and ugly", CATALOG)
    assert matched == ["stupid", "ugly"]
    assert [v.type for v in violations] == [ViolationType.HARASSMENT, ViolationType.HARASSMENT]
    assert (violations[0].start_index, violations[0].end_index) == (8, 14)
    assert (violations[1].start_index, violations[1].end_index) == (19, 23)
    assert all(v.confidence == 0.8 for v in violations)
    assert all(v.suggested_action is SuggestedAction.REJECT for v in violations)


def test_repeated_keyword_is_not_deduplicated() -> None:
    violations, matched = scorer.check_keyword_violations("IDIOT, total idiot", CATALOG)
    assert matched == ["idiot", "idiot"]
    assert len(violations) == 2


@pytest.mark.parametrize("phrase", ["kill yourself", "KYS", "bomb", "Terrorist"])
def test_critical_phrases_override_category(phrase: str) -> None:
    for violation_type in (ViolationType.SPAM, ViolationType.HARASSMENT, ViolationType.DRUGS):
        assert scorer.determine_severity(violation_type, f"just {phrase} now", CATALOG) is Severity.CRITICAL


def test_severity_falls_back_to_category_default() -> None:
    assert scorer.determine_severity(ViolationType.HARASSMENT, "meanie", CATALOG) is Severity.MEDIUM
    assert scorer.determine_severity(ViolationType.VIOLENCE, "kick", CATALOG) is Severity.MEDIUM
    assert scorer.determine_severity(ViolationType.SEXUAL_CONTENT, "sex", CATALOG) is Severity.LOW
    assert scorer.determine_severity(ViolationType.SPAM, "buy now", CATALOG) is Severity.LOW
    assert scorer.determine_severity(ViolationType.DRUGS, "stupid drugs", CATALOG) is Severity.HIGH


def test_suggested_action_table() -> None:
    assert scorer.suggested_action(ViolationType.HATE_SPEECH) is SuggestedAction.REJECT
    assert scorer.suggested_action(ViolationType.DRUGS) is SuggestedAction.FLAG
    assert scorer.suggested_action(ViolationType.SPAM) is SuggestedAction.WARN
    assert scorer.suggested_action(ViolationType.PERSONAL_INFO) is SuggestedAction.REJECT
    assert scorer.suggested_action(ViolationType.COPYRIGHT) is SuggestedAction.FLAG


def test_toxicity_is_diluted_by_length() -> None:
    violations = [_violation(Severity.MEDIUM)]
    short = scorer.calculate_toxicity_score(violations, 50)
    long = scorer.calculate_toxicity_score(violations, 200)
    assert short == pytest.approx(0.4 / 1.5)
    assert long < short


def test_toxicity_grows_with_weight_and_is_clamped() -> None:
    one = scorer.calculate_toxicity_score([_violation(Severity.LOW)], 100)
    two = scorer.calculate_toxicity_score([_violation(Severity.LOW), _violation(Severity.HIGH)], 100)
    assert 0 < one < two <= 1
    assert scorer.calculate_toxicity_score([_violation(Severity.CRITICAL)] * 10, 0) == 1.0
    assert scorer.calculate_toxicity_score([], 10) == 0.0


def test_spam_signals_are_additive() -> None:
    assert scorer.calculate_spam_score("BUY THIS AMAZING PRODUCT", CATALOG) == pytest.approx(0.3)
    assert scorer.calculate_spam_score("What?! Really?! No way!!", CATALOG) == pytest.approx(0.2)
    assert scorer.calculate_spam_score("that was sooooo good", CATALOG) == pytest.approx(0.2)
    assert scorer.calculate_spam_score("buy now and click here", CATALOG) == pytest.approx(0.2)


def test_spam_score_is_capped() -> None:
    catalog = KeywordCatalog.from_mapping({"keywords": {"spam": ["free", "cash", "win", "now", "deal", "prize"]}})
    score = scorer.calculate_spam_score("FREE CASH!!! WIN NOW??? DEAL DEAL AAAA", catalog)
    assert score == 1.0


def test_personal_info_synthesises_violation() -> None:
    result = scorer.moderate_text("Call me at 555-123-4567", CATALOG)
    assert result.personal_info_detected is True
    assert result.flagged is True
    assert [v.type for v in result.violations] == [ViolationType.PERSONAL_INFO]
    synthesised = result.violations[0]
    assert synthesised.severity is Severity.HIGH
    assert synthesised.suggested_action is SuggestedAction.REJECT
    assert synthesised.confidence == 0.9


@pytest.mark.parametrize(
    "text",
    [
        "mail me at someone@example.com",
        "my ssn is 123-45-6789",
        "card 4111 1111 1111 1111",
        "I live at 42 Baker Street",
        "what is your phone number",
    ],
)
def test_personal_info_patterns(text: str) -> None:
    assert scorer.detect_personal_info(text, CATALOG) is True


def test_should_reject_immediately_rules() -> None:
    assert scorer.should_reject_immediately(_result(matched_keywords=("bomb",)), CATALOG) is True
    assert scorer.should_reject_immediately(_result(toxicity_score=0.81), CATALOG) is True
    assert scorer.should_reject_immediately(_result(toxicity_score=0.8), CATALOG) is False
    assert scorer.should_reject_immediately(_result(personal_info_detected=True), CATALOG) is True
    assert scorer.should_reject_immediately(_result(matched_keywords=("idiot",), toxicity_score=0.3), CATALOG) is False


def test_has_critical_violations() -> None:
    assert scorer.has_critical_violations("you should just KYS", CATALOG) is True
    assert scorer.has_critical_violations("have a nice day", CATALOG) is False


@pytest.mark.parametrize(
    ("overrides", "action", "reason"),
    [
        ({"flagged": False}, ModerationAction.APPROVE, "No violations detected"),
        ({"personal_info_detected": True, "toxicity_score": 0.9}, ModerationAction.REJECT, "Personal information detected"),
        ({"toxicity_score": 0.85}, ModerationAction.REJECT, "High toxicity content"),
        ({"toxicity_score": 0.7, "spam_score": 0.9}, ModerationAction.FLAG, "Moderate toxicity content"),
        ({"spam_score": 0.75}, ModerationAction.REJECT, "Spam content detected"),
        ({"spam_score": 0.55}, ModerationAction.FLAG, "Potential spam content"),
        ({"toxicity_score": 0.2}, ModerationAction.WARN, "Minor violations detected"),
    ],
)
def test_recommended_action_ladder(overrides, action: ModerationAction, reason: str) -> None:
    recommended = scorer.get_recommended_action(_result(**overrides))
    assert recommended.action is action
    assert recommended.reason == reason


def test_violation_stats_levels() -> None:
    stats = scorer.get_violation_stats(
        _result(matched_keywords=("a", "b"), toxicity_score=0.6, spam_score=0.3, personal_info_detected=True)
    )
    assert stats.total_violations == 3
    assert stats.keyword_violations == 2
    assert stats.toxicity_level == "high"
    assert stats.spam_level == "medium"
    assert scorer.get_violation_stats(_result(toxicity_score=0.8)).toxicity_level == "critical"
    assert scorer.get_violation_stats(_result(toxicity_score=0.29)).toxicity_level == "low"
    assert scorer.get_violation_stats(_result(spam_score=0.6)).spam_level == "high"


def test_moderation_summary() -> None:
    assert scorer.get_moderation_summary(_result(flagged=False)) == "Local moderation: No violations detected"
    summary = scorer.get_moderation_summary(_result(matched_keywords=("x", "y"), toxicity_score=0.62))
    assert summary == "Local moderation: 2 keyword violations, High toxicity (62.0%)"


@pytest.mark.parametrize(
    ("value", "error"),
    [
        (None, "Text must be a non-empty string"),
        ("", "Text must be a non-empty string"),
        (42, "Text must be a non-empty string"),
        ("   \n", "Text cannot be empty or whitespace only"),
        ("a" * 10_001, "Text is too long (maximum 10,000 characters)"),
    ],
)
def test_validate_text_input_rejects(value, error: str) -> None:
    validation = scorer.validate_text_input(value)
    assert validation.is_valid is False
    assert validation.error == error


def test_validate_text_input_accepts_limit() -> None:
    assert scorer.validate_text_input("a" * 10_000).is_valid is True
