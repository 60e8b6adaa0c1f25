"""Deterministic local text moderation heuristics.

Every function here is pure: given the same text and :class:`KeywordCatalog`
it returns the same violations and scores. No network calls, no randomness.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

from whispr_safety.moderation.domain import policy
from whispr_safety.moderation.domain.keywords import KeywordCatalog
from whispr_safety.moderation.domain.models import (
    LocalModerationResult,
    ModerationAction,
    RecommendedAction,
    Severity,
    SuggestedAction,
    Violation,
    ViolationStats,
    ViolationType,
)

MAX_TEXT_LENGTH = 10_000

_PUNCTUATION_RUN = re.compile(r"[!?]{2,}")
_REPEATED_CHARACTER = re.compile(r"([A-Za-z])\1{2,}")


@dataclass(frozen=True, slots=True)
class TextValidation:
    is_valid: bool
    error: str | None = None


def validate_text_input(text: Any, max_length: int = MAX_TEXT_LENGTH) -> TextValidation:
    if not isinstance(text, str) or not text:
        return TextValidation(False, "Text must be a non-empty string")
    if not text.strip():
        return TextValidation(False, "Text cannot be empty or whitespace only")
    if len(text) > max_length:
        return TextValidation(False, f"Text is too long (maximum {max_length:,} characters)")
    return TextValidation(True)


def determine_severity(violation_type: ViolationType, matched_text: str, catalog: KeywordCatalog) -> Severity:
    """Critical and high-severity phrases override the per-category default."""

    lowered = matched_text.lower()
    if any(keyword in lowered for keyword in catalog.critical_keywords):
        return Severity.CRITICAL
    if any(keyword in lowered for keyword in catalog.high_severity_keywords):
        return Severity.HIGH
    return policy.DEFAULT_SEVERITY_BY_TYPE.get(violation_type, Severity.LOW)


def suggested_action(violation_type: ViolationType) -> SuggestedAction:
    return policy.SUGGESTED_ACTIONS.get(violation_type, SuggestedAction.FLAG)


def check_keyword_violations(text: str, catalog: KeywordCatalog) -> tuple[list[Violation], list[str]]:
    """Scan ``text`` for every occurrence of every catalog keyword.

    Matching is case-insensitive substring search. Occurrences of one keyword
    never overlap each other; each one yields its own violation and its own
    matched-keyword entry.
    """

    lowered = text.lower()
    violations: list[Violation] = []
    matched: list[str] = []
    for violation_type, keywords in catalog.categories():
        for keyword in keywords:
            needle = keyword.lower()
            if not needle:
                continue
            start = lowered.find(needle)
            while start != -1:
                end = start + len(needle)
                matched.append(keyword)
                violations.append(
                    Violation(
                        type=violation_type,
                        severity=determine_severity(violation_type, lowered[start:end], catalog),
                        confidence=policy.KEYWORD_MATCH_CONFIDENCE,
                        description=f'Contains {violation_type.value} keyword: "{keyword}"',
                        suggested_action=suggested_action(violation_type),
                        start_index=start,
                        end_index=end,
                    )
                )
                start = lowered.find(needle, end)
    return violations, matched


def detect_personal_info(text: str, catalog: KeywordCatalog) -> bool:
    return any(pattern.search(text) for pattern in catalog.personal_info_patterns)


def calculate_toxicity_score(violations: Sequence[Violation], text_length: int) -> float:
    if not violations:
        return 0.0
    total = sum(policy.SEVERITY_WEIGHTS[violation.severity] * violation.confidence for violation in violations)
    normaliser = 1 + max(0, text_length) / policy.TOXICITY_LENGTH_UNIT
    return max(0.0, min(1.0, total / normaliser))


def calculate_spam_score(
    text: str,
    catalog: KeywordCatalog,
    spam_policy: policy.SpamPolicy | None = None,
) -> float:
    rules = spam_policy or policy.SpamPolicy()
    score = 0.0

    letters = [char for char in text if char.isalpha()]
    if len(letters) >= rules.upper_case_min_letters:
        upper = sum(1 for char in letters if char.isupper())
        if upper / len(letters) > rules.upper_case_ratio:
            score += rules.upper_case_weight

    if len(_PUNCTUATION_RUN.findall(text)) >= rules.punctuation_runs:
        score += rules.punctuation_weight

    if len(_REPEATED_CHARACTER.findall(text)) >= rules.repeated_char_runs:
        score += rules.repeated_char_weight

    lowered = text.lower()
    hits = {keyword for keyword in catalog.spam_keywords if keyword.lower() in lowered}
    score += min(rules.max_keyword_score, len(hits) * rules.keyword_weight)

    return min(1.0, score)


def create_local_moderation_result(
    violations: Sequence[Violation],
    matched_keywords: Sequence[str],
    text: str,
    catalog: KeywordCatalog,
    *,
    thresholds: policy.LocalThresholds | None = None,
    spam_policy: policy.SpamPolicy | None = None,
) -> LocalModerationResult:
    limits = thresholds or policy.LocalThresholds()
    collected = list(violations)
    personal_info = detect_personal_info(text, catalog)
    if personal_info and not any(v.type is ViolationType.PERSONAL_INFO for v in collected):
        collected.append(
            Violation(
                type=ViolationType.PERSONAL_INFO,
                severity=Severity.HIGH,
                confidence=policy.PERSONAL_INFO_CONFIDENCE,
                description="Contains personal information",
                suggested_action=SuggestedAction.REJECT,
            )
        )
    toxicity = calculate_toxicity_score(collected, len(text))
    spam = calculate_spam_score(text, catalog, spam_policy)
    flagged = bool(collected) or personal_info or toxicity > limits.toxicity or spam > limits.spam
    return LocalModerationResult(
        flagged=flagged,
        matched_keywords=tuple(matched_keywords),
        toxicity_score=toxicity,
        spam_score=spam,
        personal_info_detected=personal_info,
        violations=tuple(collected),
    )


def moderate_text(
    text: str,
    catalog: KeywordCatalog,
    *,
    thresholds: policy.LocalThresholds | None = None,
    spam_policy: policy.SpamPolicy | None = None,
) -> LocalModerationResult:
    """Keyword scan plus result assembly in one call."""

    violations, matched = check_keyword_violations(text, catalog)
    return create_local_moderation_result(
        violations,
        matched,
        text,
        catalog,
        thresholds=thresholds,
        spam_policy=spam_policy,
    )


def should_reject_immediately(
    result: LocalModerationResult,
    catalog: KeywordCatalog,
    thresholds: policy.LocalThresholds | None = None,
) -> bool:
    limits = thresholds or policy.LocalThresholds()
    critical_hit = any(
        critical in keyword.lower() for keyword in result.matched_keywords for critical in catalog.critical_keywords
    )
    return critical_hit or result.toxicity_score > limits.high_toxicity or result.personal_info_detected


def has_critical_violations(text: str, catalog: KeywordCatalog) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in catalog.critical_keywords)


def get_recommended_action(result: LocalModerationResult) -> RecommendedAction:
    """Collapse a result into a single score-driven action.

    This is independent of the per-violation ``suggested_action``; a SPAM
    keyword suggests ``warn`` while a high spam score recommends ``reject``.
    """

    if not result.flagged:
        return RecommendedAction(ModerationAction.APPROVE, "No violations detected", 0.9)
    if result.personal_info_detected:
        return RecommendedAction(ModerationAction.REJECT, "Personal information detected", 0.95)
    scores = {"toxicity": result.toxicity_score, "spam": result.spam_score}
    for signal, threshold, action, reason, confidence in policy.RECOMMENDATION_LADDER:
        if scores[signal] > threshold:
            return RecommendedAction(action, reason, confidence)
    return RecommendedAction(ModerationAction.WARN, "Minor violations detected", 0.6)


def _toxicity_level(score: float) -> str:
    if score < 0.3:
        return "low"
    if score < 0.6:
        return "medium"
    if score < 0.8:
        return "high"
    return "critical"


def _spam_level(score: float) -> str:
    if score < 0.3:
        return "low"
    if score < 0.6:
        return "medium"
    return "high"


def get_violation_stats(result: LocalModerationResult) -> ViolationStats:
    keyword_violations = len(result.matched_keywords)
    return ViolationStats(
        total_violations=keyword_violations + (1 if result.personal_info_detected else 0),
        keyword_violations=keyword_violations,
        toxicity_level=_toxicity_level(result.toxicity_score),
        spam_level=_spam_level(result.spam_score),
        has_personal_info=result.personal_info_detected,
    )


def get_moderation_summary(result: LocalModerationResult) -> str:
    if not result.flagged:
        return "Local moderation: No violations detected"
    parts: list[str] = []
    if result.matched_keywords:
        parts.append(f"{len(result.matched_keywords)} keyword violations")
    if result.toxicity_score > 0.5:
        parts.append(f"High toxicity ({result.toxicity_score * 100:.1f}%)")
    if result.spam_score > 0.5:
        parts.append(f"Spam detected ({result.spam_score * 100:.1f}%)")
    if result.personal_info_detected:
        parts.append("Personal information detected")
    return f"Local moderation: {', '.join(parts)}"
