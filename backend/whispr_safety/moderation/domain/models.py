"""Records and enums shared by the moderation, reputation and reporting engines."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class ViolationType(str, Enum):
    HARASSMENT = "harassment"
    HATE_SPEECH = "hate_speech"
    VIOLENCE = "violence"
    SEXUAL_CONTENT = "sexual_content"
    DRUGS = "drugs"
    SPAM = "spam"
    SCAM = "scam"
    COPYRIGHT = "copyright"
    PERSONAL_INFO = "personal_info"
    MINOR_SAFETY = "minor_safety"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)


class SuggestedAction(str, Enum):
    """Per-violation action, fixed by violation type."""

    WARN = "warn"
    FLAG = "flag"
    REJECT = "reject"


class ModerationAction(str, Enum):
    """Per-result action derived from the aggregate scores."""

    APPROVE = "approve"
    WARN = "warn"
    FLAG = "flag"
    REJECT = "reject"


class ReputationLevel(str, Enum):
    TRUSTED = "trusted"
    VERIFIED = "verified"
    STANDARD = "standard"
    FLAGGED = "flagged"
    BANNED = "banned"


class ReportCategory(str, Enum):
    HARASSMENT = "harassment"
    HATE_SPEECH = "hate_speech"
    VIOLENCE = "violence"
    SEXUAL_CONTENT = "sexual_content"
    DRUGS = "drugs"
    SPAM = "spam"
    SCAM = "scam"
    COPYRIGHT = "copyright"
    PERSONAL_INFO = "personal_info"
    MINOR_SAFETY = "minor_safety"
    OTHER = "other"

    def violation_type(self) -> ViolationType | None:
        if self is ReportCategory.OTHER:
            return None
        return ViolationType(self.value)


class ReportPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    def escalated(self) -> "ReportPriority":
        """Return the next priority up; critical stays critical."""

        return _PRIORITY_ORDER[min(self.rank + 1, len(_PRIORITY_ORDER) - 1)]


_PRIORITY_ORDER = (ReportPriority.LOW, ReportPriority.MEDIUM, ReportPriority.HIGH, ReportPriority.CRITICAL)


class ReportStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (ReportStatus.RESOLVED, ReportStatus.DISMISSED)


class ResolutionAction(str, Enum):
    WARN = "warn"
    FLAG = "flag"
    REJECT = "reject"
    BAN = "ban"
    DISMISS = "dismiss"


class ContentType(str, Enum):
    WHISPER = "whisper"
    COMMENT = "comment"


# Synthetic history entries that document non-content events on a reputation.
ADMIN_ADJUSTMENT = "admin_adjustment"
REPORT_DISMISSED = "report_dismissed"
WHISPER_FLAGGED = "whisper_flagged"
WHISPER_DELETED = "whisper_deleted"


@dataclass(frozen=True, slots=True)
class Violation:
    """A single detected policy breach within a text."""

    type: ViolationType
    severity: Severity
    confidence: float
    description: str
    suggested_action: SuggestedAction
    start_index: int | None = None
    end_index: int | None = None


@dataclass(frozen=True, slots=True)
class LocalModerationResult:
    flagged: bool
    matched_keywords: tuple[str, ...]
    toxicity_score: float
    spam_score: float
    personal_info_detected: bool
    violations: tuple[Violation, ...] = ()


@dataclass(frozen=True, slots=True)
class RecommendedAction:
    action: ModerationAction
    reason: str
    confidence: float


@dataclass(frozen=True, slots=True)
class ViolationStats:
    total_violations: int
    keyword_violations: int
    toxicity_level: str
    spam_level: str
    has_personal_info: bool


@dataclass(frozen=True, slots=True)
class ViolationRecord:
    """Append-only history entry on a user's reputation."""

    id: str
    whisper_id: str
    violation_type: str
    severity: Severity
    timestamp: datetime
    resolved: bool = False
    notes: str = ""


@dataclass(frozen=True, slots=True)
class UserReputation:
    """Per-user trust record; build new versions through :meth:`with_score`."""

    user_id: str
    score: int
    level: ReputationLevel
    created_at: datetime
    updated_at: datetime
    total_whispers: int = 0
    approved_whispers: int = 0
    flagged_whispers: int = 0
    rejected_whispers: int = 0
    violation_history: tuple[ViolationRecord, ...] = ()
    last_violation: datetime | None = None
    recovery_baseline: int | None = None
    version: int = 0

    def with_score(self, score: int, *, updated_at: datetime, **changes: Any) -> "UserReputation":
        """Return a copy with ``score`` clamped to [0, 100] and ``level`` recomputed."""

        from whispr_safety.moderation.domain.reputation import clamp, level_for_score

        bounded = clamp(int(score))
        return replace(self, score=bounded, level=level_for_score(bounded), updated_at=updated_at, **changes)

    def with_record(self, record: ViolationRecord, *, updated_at: datetime) -> "UserReputation":
        return replace(self, violation_history=self.violation_history + (record,), updated_at=updated_at)


@dataclass(frozen=True, slots=True)
class ReportResolution:
    action: ResolutionAction
    reason: str
    moderator_id: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class Report:
    id: str
    whisper_id: str
    reporter_id: str
    reporter_display_name: str
    reporter_reputation: int
    category: ReportCategory
    priority: ReportPriority
    status: ReportStatus
    reason: str
    reputation_weight: float
    created_at: datetime
    updated_at: datetime
    comment_id: str | None = None
    evidence: str | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    resolution: ReportResolution | None = None
    version: int = 0

    @property
    def content_id(self) -> str:
        return self.comment_id or self.whisper_id

    @property
    def content_type(self) -> ContentType:
        return ContentType.COMMENT if self.comment_id else ContentType.WHISPER


@dataclass(frozen=True, slots=True)
class ReportStats:
    """Aggregate view over the reports filed against one content item."""

    total_reports: int = 0
    unique_reporters: int = 0
    weighted_total: float = 0.0
    categories: Mapping[ReportCategory, int] = field(default_factory=dict)
    priority_breakdown: Mapping[ReportPriority, int] = field(default_factory=dict)
    status_breakdown: Mapping[ReportStatus, int] = field(default_factory=dict)
