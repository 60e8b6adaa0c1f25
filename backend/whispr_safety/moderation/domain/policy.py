"""Policy tables consulted by the scorer, reputation and reporting engines.

Values here are load-bearing: changing a weight changes enforcement outcomes,
so every table is covered by tests that pin the current numbers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from whispr_safety.moderation.domain.models import (
    ModerationAction,
    ReportCategory,
    ReportPriority,
    ReputationLevel,
    Severity,
    SuggestedAction,
    ViolationType,
)

# --- Local moderation ------------------------------------------------------

SEVERITY_WEIGHTS: Mapping[Severity, float] = {
    Severity.LOW: 0.2,
    Severity.MEDIUM: 0.5,
    Severity.HIGH: 0.8,
    Severity.CRITICAL: 1.0,
}

DEFAULT_SEVERITY_BY_TYPE: Mapping[ViolationType, Severity] = {
    ViolationType.HARASSMENT: Severity.MEDIUM,
    ViolationType.HATE_SPEECH: Severity.MEDIUM,
    ViolationType.VIOLENCE: Severity.MEDIUM,
    ViolationType.SEXUAL_CONTENT: Severity.LOW,
    ViolationType.DRUGS: Severity.LOW,
    ViolationType.SPAM: Severity.LOW,
}

SUGGESTED_ACTIONS: Mapping[ViolationType, SuggestedAction] = {
    ViolationType.HARASSMENT: SuggestedAction.REJECT,
    ViolationType.HATE_SPEECH: SuggestedAction.REJECT,
    ViolationType.VIOLENCE: SuggestedAction.REJECT,
    ViolationType.SEXUAL_CONTENT: SuggestedAction.FLAG,
    ViolationType.DRUGS: SuggestedAction.FLAG,
    ViolationType.SPAM: SuggestedAction.WARN,
    ViolationType.PERSONAL_INFO: SuggestedAction.REJECT,
}

KEYWORD_MATCH_CONFIDENCE = 0.8
PERSONAL_INFO_CONFIDENCE = 0.9
TOXICITY_LENGTH_UNIT = 100


@dataclass(frozen=True)
class SpamPolicy:
    upper_case_ratio: float = 0.7
    upper_case_min_letters: int = 5
    upper_case_weight: float = 0.3
    punctuation_runs: int = 2
    punctuation_weight: float = 0.2
    repeated_char_runs: int = 1
    repeated_char_weight: float = 0.2
    keyword_weight: float = 0.1
    max_keyword_score: float = 0.5


@dataclass(frozen=True)
class LocalThresholds:
    """Score cut-offs for flagging and immediate rejection."""

    toxicity: float = 0.5
    spam: float = 0.6
    high_toxicity: float = 0.8


# Ladder used to turn an aggregate result into one recommended action.
RECOMMENDATION_LADDER: tuple[tuple[str, float, ModerationAction, str, float], ...] = (
    ("toxicity", 0.8, ModerationAction.REJECT, "High toxicity content", 0.85),
    ("toxicity", 0.6, ModerationAction.FLAG, "Moderate toxicity content", 0.75),
    ("spam", 0.7, ModerationAction.REJECT, "Spam content detected", 0.8),
    ("spam", 0.5, ModerationAction.FLAG, "Potential spam content", 0.7),
)

# --- Reputation ------------------------------------------------------------

DEFAULT_REPUTATION_SCORE = 75
MAX_SCORE = 100
MIN_SCORE = 0

REPUTATION_THRESHOLDS: Mapping[ReputationLevel, int] = {
    ReputationLevel.TRUSTED: 90,
    ReputationLevel.VERIFIED: 75,
    ReputationLevel.STANDARD: 50,
    ReputationLevel.FLAGGED: 25,
    ReputationLevel.BANNED: 0,
}

VIOLATION_IMPACT_SCORES: Mapping[ViolationType, int] = {
    ViolationType.HARASSMENT: 15,
    ViolationType.HATE_SPEECH: 25,
    ViolationType.VIOLENCE: 30,
    ViolationType.SEXUAL_CONTENT: 20,
    ViolationType.DRUGS: 15,
    ViolationType.SPAM: 5,
    ViolationType.SCAM: 20,
    ViolationType.COPYRIGHT: 10,
    ViolationType.PERSONAL_INFO: 15,
    ViolationType.MINOR_SAFETY: 35,
}
DEFAULT_VIOLATION_IMPACT = 10

SEVERITY_MULTIPLIERS: Mapping[Severity, float] = {
    Severity.LOW: 0.5,
    Severity.MEDIUM: 1.0,
    Severity.HIGH: 1.5,
    Severity.CRITICAL: 2.0,
}

PENALTY_MULTIPLIERS: Mapping[ReputationLevel, float] = {
    ReputationLevel.TRUSTED: 0.5,
    ReputationLevel.VERIFIED: 0.75,
    ReputationLevel.STANDARD: 1.0,
    ReputationLevel.FLAGGED: 1.5,
    ReputationLevel.BANNED: 2.0,
}

RECOVERY_RATES: Mapping[ReputationLevel, float] = {
    ReputationLevel.TRUSTED: 2.0,
    ReputationLevel.VERIFIED: 1.5,
    ReputationLevel.STANDARD: 1.0,
    ReputationLevel.FLAGGED: 0.5,
    ReputationLevel.BANNED: 0.0,
}

RECOVERY_MIN_DAYS = 30
RECOVERY_MAX_DAYS = 365

APPEAL_TIME_LIMITS: Mapping[ReputationLevel, int] = {
    ReputationLevel.TRUSTED: 30,
    ReputationLevel.VERIFIED: 14,
    ReputationLevel.STANDARD: 7,
    ReputationLevel.FLAGGED: 3,
    ReputationLevel.BANNED: 0,
}

AUTO_APPEAL_THRESHOLDS: Mapping[ReputationLevel, float] = {
    ReputationLevel.TRUSTED: 0.3,
    ReputationLevel.VERIFIED: 0.5,
    ReputationLevel.STANDARD: 0.7,
    ReputationLevel.FLAGGED: 0.9,
    ReputationLevel.BANNED: 1.0,
}

LEVEL_DESCRIPTIONS: Mapping[ReputationLevel, str] = {
    ReputationLevel.TRUSTED: "Trusted user with fast appeals and reduced penalties",
    ReputationLevel.VERIFIED: "Verified user with standard appeals and normal penalties",
    ReputationLevel.STANDARD: "Standard user with slower appeals and increased penalties",
    ReputationLevel.FLAGGED: "Flagged user requiring manual review with heavy penalties",
    ReputationLevel.BANNED: "Banned user with no appeals and maximum penalties",
}

# --- Reporting -------------------------------------------------------------

REPORTER_WEIGHTS: Mapping[ReputationLevel, float] = {
    ReputationLevel.TRUSTED: 2.0,
    ReputationLevel.VERIFIED: 1.5,
    ReputationLevel.STANDARD: 1.0,
    ReputationLevel.FLAGGED: 0.5,
}

CATEGORY_BASE_PRIORITY: Mapping[ReportCategory, ReportPriority] = {
    ReportCategory.MINOR_SAFETY: ReportPriority.CRITICAL,
    ReportCategory.HATE_SPEECH: ReportPriority.HIGH,
    ReportCategory.VIOLENCE: ReportPriority.HIGH,
    ReportCategory.HARASSMENT: ReportPriority.MEDIUM,
    ReportCategory.SEXUAL_CONTENT: ReportPriority.MEDIUM,
    ReportCategory.SCAM: ReportPriority.MEDIUM,
    ReportCategory.PERSONAL_INFO: ReportPriority.MEDIUM,
    ReportCategory.DRUGS: ReportPriority.MEDIUM,
    ReportCategory.SPAM: ReportPriority.LOW,
    ReportCategory.COPYRIGHT: ReportPriority.LOW,
    ReportCategory.OTHER: ReportPriority.LOW,
}

# Reporter levels whose reports are raised one priority step.
PRIORITY_BOOST_LEVELS = frozenset({ReputationLevel.TRUSTED})

# Severity recorded against the author when a report is upheld, by report priority.
RESOLUTION_SEVERITY: Mapping[ReportPriority, Severity] = {
    ReportPriority.LOW: Severity.LOW,
    ReportPriority.MEDIUM: Severity.MEDIUM,
    ReportPriority.HIGH: Severity.HIGH,
    ReportPriority.CRITICAL: Severity.CRITICAL,
}

DISMISSED_REPORT_PENALTY = 10
ADDITIONAL_REPORT_SEPARATOR = "\n\n--- Additional Report ---\n"

# Authors at this level and below this score get a temporary suspension
# once one of their items has been actioned by aggregate escalation.
USER_ESCALATION_LEVEL = ReputationLevel.FLAGGED
USER_ESCALATION_MAX_SCORE = 30
TEMPORARY_SUSPENSION_HOURS = 24 * 7
