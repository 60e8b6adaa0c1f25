"""Report intake, prioritisation, duplicate merging and threshold escalation."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Protocol, Sequence
from uuid import uuid4

from whispr_safety.moderation.domain import policy
from whispr_safety.moderation.domain.aggregates import ReportAggregate, ReportAggregateStore
from whispr_safety.moderation.domain.enforcement import ContentOwnerResolver, EnforcementHooks
from whispr_safety.moderation.domain.errors import (
    ConcurrentUpdateError,
    DuplicateReportError,
    InvalidTransition,
    NotFoundError,
    Outcome,
    PermissionDenied,
    PersistenceError,
    ValidationError,
)
from whispr_safety.moderation.domain.models import (
    WHISPER_DELETED,
    WHISPER_FLAGGED,
    REPORT_DISMISSED,
    ContentType,
    Report,
    ReportCategory,
    ReportPriority,
    ReportResolution,
    ReportStats,
    ReportStatus,
    ReputationLevel,
    ResolutionAction,
    Severity,
)
from whispr_safety.moderation.domain.reputation import ReputationService
from whispr_safety.moderation.domain.thresholds import EscalationThresholds, EscalationTier, TierDecision
from whispr_safety.obs import metrics as obs_metrics
from whispr_safety.settings import settings

logger = logging.getLogger(__name__)

BANNED_REPORTER_MESSAGE = "Banned users cannot submit reports"

_ALLOWED_TRANSITIONS: Mapping[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset(
        {ReportStatus.UNDER_REVIEW, ReportStatus.ESCALATED, ReportStatus.RESOLVED, ReportStatus.DISMISSED}
    ),
    ReportStatus.UNDER_REVIEW: frozenset({ReportStatus.ESCALATED, ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.ESCALATED: frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.RESOLVED: frozenset(),
    ReportStatus.DISMISSED: frozenset(),
}

_UPDATABLE_FIELDS = frozenset(item.name for item in fields(Report)) - {"id", "version"}


def calculate_priority(category: ReportCategory, reporter_level: ReputationLevel) -> ReportPriority:
    """Base priority by category, raised one step for boosted reporter levels."""

    base = policy.CATEGORY_BASE_PRIORITY[category]
    if reporter_level in policy.PRIORITY_BOOST_LEVELS:
        return base.escalated()
    return base


def calculate_reputation_weight(reporter_level: ReputationLevel) -> float:
    return policy.REPORTER_WEIGHTS.get(reporter_level, 0.0)


def can_transition(current: ReportStatus, target: ReportStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def merge_reason(existing: str, addition: str) -> str:
    return f"{existing}{policy.ADDITIONAL_REPORT_SEPARATOR}{addition}"


def calculate_report_stats(reports: Sequence[Report]) -> ReportStats:
    if not reports:
        return ReportStats()
    return ReportStats(
        total_reports=len(reports),
        unique_reporters=len({report.reporter_id for report in reports}),
        weighted_total=sum(report.reputation_weight for report in reports),
        categories=dict(Counter(report.category for report in reports)),
        priority_breakdown=dict(Counter(report.priority for report in reports)),
        status_breakdown=dict(Counter(report.status for report in reports)),
    )


def is_open_duplicate(stored: Report, candidate: Report) -> bool:
    """Whether ``candidate`` repeats ``stored`` and should merge into it."""

    return (
        stored.reporter_id == candidate.reporter_id
        and stored.content_id == candidate.content_id
        and stored.content_type is candidate.content_type
        and stored.category is candidate.category
        and not stored.status.is_terminal
    )


class ReportRepository(Protocol):
    """Report persistence.

    ``save_report`` must refuse an open duplicate (same reporter, content and
    category) with :class:`DuplicateReportError` as one atomic check-and-insert,
    e.g. a partial unique index. ``update_report`` bumps ``version`` and, when
    ``expected_version`` is given, raises :class:`ConcurrentUpdateError` on a
    mismatch.
    """

    async def load_report(self, report_id: str) -> Report | None:
        ...

    async def load_reports_by_content(self, content_id: str) -> Sequence[Report]:
        ...

    async def load_reports_by_reporter(self, reporter_id: str) -> Sequence[Report]:
        ...

    async def save_report(self, report: Report) -> Report:
        ...

    async def update_report(
        self,
        report_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Report:
        ...


class InMemoryReportRepository(ReportRepository):
    """Reference repository used in tests and developer environments."""

    def __init__(self) -> None:
        self.reports: dict[str, Report] = {}
        self._lock = asyncio.Lock()

    async def load_report(self, report_id: str) -> Report | None:
        return self.reports.get(report_id)

    async def load_reports_by_content(self, content_id: str) -> Sequence[Report]:
        return sorted(
            (report for report in self.reports.values() if report.content_id == content_id),
            key=lambda report: report.created_at,
        )

    async def load_reports_by_reporter(self, reporter_id: str) -> Sequence[Report]:
        return sorted(
            (report for report in self.reports.values() if report.reporter_id == reporter_id),
            key=lambda report: report.created_at,
        )

    async def save_report(self, report: Report) -> Report:
        async with self._lock:
            for stored in self.reports.values():
                if is_open_duplicate(stored, report):
                    raise DuplicateReportError(stored.id)
            saved = replace(report, version=1)
            self.reports[saved.id] = saved
            return saved

    async def update_report(
        self,
        report_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Report:
        async with self._lock:
            current = self.reports.get(report_id)
            if current is None:
                raise PersistenceError("update_report", f"report {report_id} not found")
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentUpdateError("update_report", report_id)
            unknown = set(changes) - _UPDATABLE_FIELDS
            if unknown:
                raise PersistenceError("update_report", f"unknown fields {sorted(unknown)}")
            updated = replace(current, **changes, version=current.version + 1)
            self.reports[report_id] = updated
            return updated


@dataclass(frozen=True, slots=True)
class EscalationResult:
    decision: TierDecision
    content_id: str
    applied_tiers: tuple[EscalationTier, ...] = ()
    transitioned_reports: tuple[str, ...] = ()
    owner_id: str | None = None
    owner_suspended: bool = False


@dataclass(frozen=True, slots=True)
class ReportSubmission:
    report: Report
    merged: bool
    escalation: EscalationResult | None = None


@dataclass
class ReportService:
    repository: ReportRepository
    reputation: ReputationService
    aggregates: ReportAggregateStore
    owners: ContentOwnerResolver
    hooks: EnforcementHooks
    thresholds: EscalationThresholds = field(default_factory=EscalationThresholds.default)
    write_retries: int = field(default_factory=lambda: settings.report_write_retries)

    # --- Intake ------------------------------------------------------------

    async def submit_report(
        self,
        *,
        whisper_id: str,
        reporter_id: str,
        reporter_display_name: str,
        category: ReportCategory | str,
        reason: str,
        comment_id: str | None = None,
        evidence: str | None = None,
        now: datetime | None = None,
    ) -> Outcome[ReportSubmission]:
        """File a report, merging repeats from the same reporter.

        Banned reporters and malformed input come back as failed outcomes;
        persistence failures raise since an unsaved report is an unrecorded
        enforcement signal. Creation and merging are optimistic writes retried
        against the stored report, so concurrent repeats collapse into one row.
        """

        timestamp = now or datetime.now(timezone.utc)
        try:
            resolved_category = ReportCategory(category)
        except ValueError:
            obs_metrics.MOD_REPORTS_REJECTED_TOTAL.labels(reason="invalid_category").inc()
            return Outcome.failure(ValidationError(f"Invalid report category: {category}"))
        if not reason or not reason.strip():
            obs_metrics.MOD_REPORTS_REJECTED_TOTAL.labels(reason="empty_reason").inc()
            return Outcome.failure(ValidationError("Report reason is required"))

        reporter = await self.reputation.get_user_reputation(reporter_id, now=timestamp)
        if reporter.level is ReputationLevel.BANNED:
            obs_metrics.MOD_REPORTS_REJECTED_TOTAL.labels(reason="reporter_banned").inc()
            logger.info("report refused for banned reporter", extra={"user_id": reporter_id})
            return Outcome.failure(PermissionDenied(BANNED_REPORTER_MESSAGE))

        priority = calculate_priority(resolved_category, reporter.level)
        candidate = Report(
            id=uuid4().hex,
            whisper_id=whisper_id,
            comment_id=comment_id,
            reporter_id=reporter_id,
            reporter_display_name=reporter_display_name,
            reporter_reputation=reporter.score,
            category=resolved_category,
            priority=priority,
            status=ReportStatus.UNDER_REVIEW if priority is ReportPriority.CRITICAL else ReportStatus.PENDING,
            reason=reason.strip(),
            evidence=evidence,
            reputation_weight=calculate_reputation_weight(reporter.level),
            created_at=timestamp,
            updated_at=timestamp,
        )
        for attempt in range(1, self.write_retries + 1):
            existing = await self._find_open_duplicate(candidate)
            try:
                if existing is not None:
                    report = await self._merge(existing, candidate.reason, timestamp)
                else:
                    report = await self.repository.save_report(candidate)
            except ConcurrentUpdateError:
                obs_metrics.MOD_REPORT_WRITE_CONFLICTS_TOTAL.labels(operation="submit_report").inc()
                logger.info(
                    "report write conflict",
                    extra={"user_id": reporter_id, "content_id": candidate.content_id, "attempt": attempt},
                )
                continue
            # recording is keyed by report id, so a merge re-records harmlessly
            await self._record_aggregate(report)
            if existing is None:
                self._observe_created(report)
            escalation = await self.evaluate_escalation(report.content_type, report.content_id, now=timestamp)
            return Outcome.success(ReportSubmission(report=report, merged=existing is not None, escalation=escalation))
        raise ConcurrentUpdateError("submit_report", f"{reporter_id}:{candidate.content_id}")

    async def _find_open_duplicate(self, candidate: Report) -> Report | None:
        for report in await self.repository.load_reports_by_reporter(candidate.reporter_id):
            if is_open_duplicate(report, candidate):
                return report
        return None

    async def _merge(self, existing: Report, reason: str, now: datetime) -> Report:
        priority = existing.priority.escalated()
        status = existing.status
        if status is ReportStatus.UNDER_REVIEW:
            status = ReportStatus.ESCALATED
        elif status is ReportStatus.PENDING and priority is ReportPriority.CRITICAL:
            status = ReportStatus.UNDER_REVIEW
        changes: dict[str, Any] = {
            "reason": merge_reason(existing.reason, reason),
            "priority": priority,
            "updated_at": now,
        }
        if status is not existing.status:
            changes["status"] = status
        updated = await self.repository.update_report(existing.id, changes, expected_version=existing.version)
        if status is not existing.status:
            obs_metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(
                transition=f"{existing.status.value}_to_{status.value}"
            ).inc()
        obs_metrics.MOD_REPORT_MERGES_TOTAL.labels(category=existing.category.value).inc()
        logger.info(
            "report merged",
            extra={"report_id": existing.id, "priority": priority.value, "status": updated.status.value},
        )
        return updated

    async def _record_aggregate(self, report: Report) -> None:
        await self.aggregates.record(
            report.content_type,
            report.content_id,
            report_id=report.id,
            reporter_id=report.reporter_id,
            weight=report.reputation_weight,
            category=report.category,
        )

    @staticmethod
    def _observe_created(report: Report) -> None:
        obs_metrics.MOD_REPORTS_TOTAL.labels(category=report.category.value, priority=report.priority.value).inc()
        if report.status is ReportStatus.UNDER_REVIEW:
            obs_metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(transition="pending_to_under_review").inc()
        logger.info(
            "report created",
            extra={
                "report_id": report.id,
                "content_id": report.content_id,
                "category": report.category.value,
                "priority": report.priority.value,
                "weight": report.reputation_weight,
            },
        )

    # --- Escalation ----------------------------------------------------------

    async def evaluate_escalation(
        self,
        content_type: ContentType,
        content_id: str,
        *,
        now: datetime | None = None,
    ) -> EscalationResult:
        """Compare the content's aggregate against its tiers and act on new ones.

        Status moves run on every evaluation so late reports join the current
        tier; side effects run once per tier through ``claim_tier``.
        """

        timestamp = now or datetime.now(timezone.utc)
        aggregate = await self.aggregates.snapshot(content_type, content_id)
        decision = self.thresholds.evaluate(
            content_type,
            weighted_total=aggregate.weighted_total,
            unique_reporters=aggregate.unique_reporters,
        )
        if decision.tier is None:
            return EscalationResult(decision=decision, content_id=content_id)

        transitioned = await self._apply_status_moves(content_id, decision.tier, timestamp)

        owner_id = await self.owners.resolve_owner(content_type, content_id)
        applied: list[EscalationTier] = []
        for tier in decision.reached:
            if not await self.aggregates.claim_tier(content_type, content_id, tier.value):
                continue
            applied.append(tier)
            obs_metrics.MOD_ESCALATIONS_TOTAL.labels(tier=tier.value, content_type=content_type.value).inc()
            await self._apply_tier(tier, content_type, content_id, owner_id, aggregate, timestamp)

        suspended = EscalationTier.DELETE_AND_TEMP_BAN in applied and owner_id is not None
        content_actioned = any(tier.rank >= EscalationTier.AUTO_DELETE.rank for tier in applied)
        if content_actioned and owner_id is not None and not suspended:
            suspended = await self._escalate_owner(owner_id, timestamp)

        if applied:
            logger.warning(
                "content escalated",
                extra={
                    "content_id": content_id,
                    "content_type": content_type.value,
                    "tiers": [tier.value for tier in applied],
                    "weighted_total": aggregate.weighted_total,
                    "unique_reporters": aggregate.unique_reporters,
                },
            )
        return EscalationResult(
            decision=decision,
            content_id=content_id,
            applied_tiers=tuple(applied),
            transitioned_reports=transitioned,
            owner_id=owner_id,
            owner_suspended=suspended,
        )

    async def _apply_status_moves(self, content_id: str, tier: EscalationTier, now: datetime) -> tuple[str, ...]:
        if tier.rank >= EscalationTier.AUTO_DELETE.rank:
            sources = {ReportStatus.PENDING, ReportStatus.UNDER_REVIEW}
            target = ReportStatus.ESCALATED
        else:
            sources = {ReportStatus.PENDING}
            target = ReportStatus.UNDER_REVIEW
        moved: list[str] = []
        for report in await self.repository.load_reports_by_content(content_id):
            if report.status not in sources:
                continue
            try:
                await self.repository.update_report(
                    report.id, {"status": target, "updated_at": now}, expected_version=report.version
                )
            except ConcurrentUpdateError:
                # the concurrent writer runs its own evaluation afterwards
                obs_metrics.MOD_REPORT_WRITE_CONFLICTS_TOTAL.labels(operation="escalation_status").inc()
                continue
            obs_metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(
                transition=f"{report.status.value}_to_{target.value}"
            ).inc()
            moved.append(report.id)
        return tuple(moved)

    async def _apply_tier(
        self,
        tier: EscalationTier,
        content_type: ContentType,
        content_id: str,
        owner_id: str | None,
        aggregate: ReportAggregate,
        now: datetime,
    ) -> None:
        summary = f"{aggregate.total_reports} reports from {aggregate.unique_reporters} reporters"
        if tier is EscalationTier.FLAG_FOR_REVIEW:
            if owner_id is not None:
                await self.reputation.note_violation(
                    owner_id,
                    whisper_id=content_id,
                    kind=WHISPER_FLAGGED,
                    notes=f"Flagged for review after {summary}",
                    now=now,
                )
            return
        if tier is EscalationTier.AUTO_DELETE:
            await self.hooks.remove_content(content_type, content_id, reason=f"auto_delete: {summary}")
            if owner_id is None:
                return
            category = _dominant_category(aggregate)
            violation_type = category.violation_type() if category is not None else None
            if violation_type is None:
                await self.reputation.note_violation(
                    owner_id,
                    whisper_id=content_id,
                    kind=WHISPER_DELETED,
                    severity=Severity.MEDIUM,
                    notes=f"Removed after {summary}",
                    now=now,
                )
                return
            await self.reputation.record_violation(
                owner_id,
                whisper_id=content_id,
                violation_type=violation_type,
                severity=policy.RESOLUTION_SEVERITY[policy.CATEGORY_BASE_PRIORITY[category]],
                notes=f"Removed after {summary}",
                now=now,
            )
            return
        if owner_id is not None:
            await self.hooks.suspend_user(
                owner_id,
                reason=f"delete_and_temp_ban: {summary}",
                expires_at=now + timedelta(hours=policy.TEMPORARY_SUSPENSION_HOURS),
            )

    async def _escalate_owner(self, owner_id: str, now: datetime) -> bool:
        """Suspend repeat offenders whose standing is already low."""

        reputation = await self.reputation.get_user_reputation(owner_id, now=now)
        if reputation.level is not policy.USER_ESCALATION_LEVEL or reputation.score >= policy.USER_ESCALATION_MAX_SCORE:
            return False
        await self.hooks.suspend_user(
            owner_id,
            reason=f"user_escalation: score {reputation.score}",
            expires_at=now + timedelta(hours=policy.TEMPORARY_SUSPENSION_HOURS),
        )
        obs_metrics.MOD_ESCALATIONS_TOTAL.labels(tier="user_suspension", content_type="user").inc()
        logger.warning("user escalated", extra={"user_id": owner_id, "score": reputation.score})
        return True

    # --- Moderator workflow ------------------------------------------------

    async def update_status(
        self,
        report_id: str,
        status: ReportStatus,
        *,
        resolution: ReportResolution | None = None,
        now: datetime | None = None,
    ) -> Outcome[Report]:
        timestamp = now or datetime.now(timezone.utc)
        for attempt in range(1, self.write_retries + 1):
            report = await self.get_report(report_id)
            if not can_transition(report.status, status):
                return Outcome.failure(
                    InvalidTransition(f"Cannot move report from {report.status.value} to {status.value}")
                )
            changes: dict[str, Any] = {"status": status, "updated_at": timestamp}
            if status.is_terminal:
                if resolution is None:
                    return Outcome.failure(ValidationError("Resolution is required to close a report"))
                changes.update(resolution=resolution, reviewed_at=timestamp, reviewed_by=resolution.moderator_id)
            try:
                updated = await self.repository.update_report(report_id, changes, expected_version=report.version)
            except ConcurrentUpdateError:
                obs_metrics.MOD_REPORT_WRITE_CONFLICTS_TOTAL.labels(operation="update_status").inc()
                logger.info("report write conflict", extra={"report_id": report_id, "attempt": attempt})
                continue
            obs_metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(transition=f"{report.status.value}_to_{status.value}").inc()
            return Outcome.success(updated)
        raise ConcurrentUpdateError("update_status", report_id)

    async def resolve_report(
        self,
        report_id: str,
        *,
        action: ResolutionAction,
        reason: str,
        moderator_id: str,
        now: datetime | None = None,
    ) -> Outcome[Report]:
        """Close a report and apply the moderator's decision."""

        timestamp = now or datetime.now(timezone.utc)
        resolution = ReportResolution(action=action, reason=reason, moderator_id=moderator_id, timestamp=timestamp)
        target = ReportStatus.DISMISSED if action is ResolutionAction.DISMISS else ReportStatus.RESOLVED
        outcome = await self.update_status(report_id, target, resolution=resolution, now=timestamp)
        if not outcome.ok:
            return outcome
        report = outcome.unwrap()
        obs_metrics.MOD_RESOLUTIONS_TOTAL.labels(action=action.value).inc()

        if action is ResolutionAction.DISMISS:
            await self.reputation.adjust_score(
                report.reporter_id,
                -policy.DISMISSED_REPORT_PENALTY,
                kind=REPORT_DISMISSED,
                whisper_id=report.content_id,
                notes=f"Report {report.id} dismissed by {moderator_id}: {reason}",
                now=timestamp,
            )
        elif action in (ResolutionAction.REJECT, ResolutionAction.BAN):
            owner_id = await self.owners.resolve_owner(report.content_type, report.content_id)
            if action is ResolutionAction.REJECT:
                await self.hooks.remove_content(report.content_type, report.content_id, reason=f"report_upheld: {reason}")
                violation_type = report.category.violation_type()
                if owner_id is not None and violation_type is not None:
                    await self.reputation.record_violation(
                        owner_id,
                        whisper_id=report.content_id,
                        violation_type=violation_type,
                        severity=policy.RESOLUTION_SEVERITY[report.priority],
                        notes=f"Report {report.id} upheld by {moderator_id}: {reason}",
                        now=timestamp,
                    )
            elif owner_id is not None:
                await self.hooks.suspend_user(owner_id, reason=f"report_ban: {reason}", expires_at=None)
                await self.reputation.admin_set_score(
                    owner_id,
                    0,
                    admin_id=moderator_id,
                    reason=f"Banned via report {report.id}: {reason}",
                    now=timestamp,
                )
            if owner_id is None:
                logger.warning("content owner unresolved", extra={"report_id": report.id, "content_id": report.content_id})

        logger.info(
            "report resolved",
            extra={"report_id": report.id, "action": action.value, "moderator_id": moderator_id},
        )
        return Outcome.success(report)

    # --- Queries -------------------------------------------------------------

    async def get_report(self, report_id: str) -> Report:
        report = await self.repository.load_report(report_id)
        if report is None:
            raise NotFoundError(f"report {report_id} not found")
        return report

    async def get_reports_by_content(self, content_id: str) -> list[Report]:
        try:
            return list(await self.repository.load_reports_by_content(content_id))
        except PersistenceError:
            logger.warning("reports by content unavailable", extra={"content_id": content_id}, exc_info=True)
            return []

    async def get_reports_by_reporter(self, reporter_id: str) -> list[Report]:
        try:
            return list(await self.repository.load_reports_by_reporter(reporter_id))
        except PersistenceError:
            logger.warning("reports by reporter unavailable", extra={"user_id": reporter_id}, exc_info=True)
            return []

    async def has_user_reported_content(self, reporter_id: str, content_id: str) -> bool:
        reports = await self.get_reports_by_reporter(reporter_id)
        return any(report.content_id == content_id for report in reports)

    async def get_content_report_stats(self, content_id: str) -> ReportStats:
        try:
            reports = await self.repository.load_reports_by_content(content_id)
        except PersistenceError:
            logger.warning("report stats unavailable; returning zeroed stats", extra={"content_id": content_id}, exc_info=True)
            return ReportStats()
        return calculate_report_stats(reports)


def _dominant_category(aggregate: ReportAggregate) -> ReportCategory | None:
    if not aggregate.categories:
        return None
    return max(
        aggregate.categories,
        key=lambda category: (aggregate.categories[category], policy.CATEGORY_BASE_PRIORITY[category].rank),
    )
