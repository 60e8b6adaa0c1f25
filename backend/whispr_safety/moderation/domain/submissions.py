"""Local moderation service and the whisper submission gate."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from whispr_safety.moderation.domain import scorer
from whispr_safety.moderation.domain.errors import PermissionDenied, ValidationError
from whispr_safety.moderation.domain.keywords import KeywordCatalog
from whispr_safety.moderation.domain.models import (
    LocalModerationResult,
    ModerationAction,
    RecommendedAction,
    ReputationLevel,
    UserReputation,
    ViolationStats,
)
from whispr_safety.moderation.domain.policy import LocalThresholds, SpamPolicy
from whispr_safety.moderation.domain.reputation import ReputationAssessment, ReputationService
from whispr_safety.obs import logging as obs_logging
from whispr_safety.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class LocalModerationService:
    """Runs the local scorer against one catalog and threshold set."""

    def __init__(
        self,
        catalog: KeywordCatalog,
        *,
        thresholds: LocalThresholds | None = None,
        spam_policy: SpamPolicy | None = None,
        max_text_length: int = scorer.MAX_TEXT_LENGTH,
    ) -> None:
        self.catalog = catalog
        self.thresholds = thresholds or LocalThresholds()
        self.spam_policy = spam_policy or SpamPolicy()
        self.max_text_length = max_text_length

    def validate(self, text: Any) -> scorer.TextValidation:
        return scorer.validate_text_input(text, self.max_text_length)

    def moderate(self, text: Any) -> LocalModerationResult:
        validation = self.validate(text)
        if not validation.is_valid:
            obs_metrics.LOCAL_SCAN_REJECTIONS_TOTAL.labels(reason="invalid_text").inc()
            raise ValidationError(validation.error)
        start = time.perf_counter()
        result = scorer.moderate_text(
            text,
            self.catalog,
            thresholds=self.thresholds,
            spam_policy=self.spam_policy,
        )
        obs_metrics.SCAN_LATENCY_SECONDS.observe(time.perf_counter() - start)
        obs_metrics.LOCAL_SCANS_TOTAL.labels(action=scorer.get_recommended_action(result).action.value).inc()
        logger.debug(scorer.get_moderation_summary(result), extra={"catalog_version": self.catalog.version})
        return result

    def recommend(self, result: LocalModerationResult) -> RecommendedAction:
        return scorer.get_recommended_action(result)

    def should_reject_immediately(self, result: LocalModerationResult) -> bool:
        return scorer.should_reject_immediately(result, self.catalog, self.thresholds)

    def has_critical_violations(self, text: str) -> bool:
        return scorer.has_critical_violations(text, self.catalog)

    def stats(self, result: LocalModerationResult) -> ViolationStats:
        return scorer.get_violation_stats(result)

    def summary(self, result: LocalModerationResult) -> str:
        return scorer.get_moderation_summary(result)


@dataclass(frozen=True, slots=True)
class SubmissionReview:
    user_id: str
    whisper_id: str
    result: LocalModerationResult
    recommended: RecommendedAction
    reject_immediately: bool
    action: ModerationAction
    assessment: ReputationAssessment
    reputation: UserReputation

    @property
    def accepted(self) -> bool:
        return self.action in (ModerationAction.APPROVE, ModerationAction.WARN)


class SubmissionService:
    """Gate a whisper through local moderation and settle the author's reputation."""

    def __init__(self, moderation: LocalModerationService, reputation: ReputationService) -> None:
        self._moderation = moderation
        self._reputation = reputation

    async def review_submission(
        self,
        *,
        user_id: str,
        whisper_id: str,
        text: Any,
        now: datetime | None = None,
    ) -> SubmissionReview:
        tokens = obs_logging.bind_context(user_id=user_id, content_id=whisper_id)
        try:
            return await self._review(user_id, whisper_id, text, now or datetime.now(timezone.utc))
        finally:
            obs_logging.reset_context(tokens)

    async def _review(self, user_id: str, whisper_id: str, text: Any, timestamp: datetime) -> SubmissionReview:
        author = await self._reputation.get_user_reputation(user_id, now=timestamp)
        if author.level is ReputationLevel.BANNED:
            obs_metrics.LOCAL_SCAN_REJECTIONS_TOTAL.labels(reason="author_banned").inc()
            raise PermissionDenied("Banned users cannot post")

        result = self._moderation.moderate(text)
        recommended = self._moderation.recommend(result)
        immediate = self._moderation.should_reject_immediately(result)
        action = ModerationAction.REJECT if immediate else recommended.action
        assessment = await self._reputation.assess_moderation(user_id, result)

        if action is ModerationAction.APPROVE:
            reputation = await self._reputation.record_successful_content(user_id, now=timestamp)
        else:
            reputation = await self._reputation.record_moderation_outcome(
                user_id,
                whisper_id=whisper_id,
                result=result,
                action=action,
                now=timestamp,
            )
        logger.info(
            "submission reviewed",
            extra={
                "user_id": user_id,
                "whisper_id": whisper_id,
                "action": action.value,
                "reject_immediately": immediate,
                "score": reputation.score,
            },
        )
        return SubmissionReview(
            user_id=user_id,
            whisper_id=whisper_id,
            result=result,
            recommended=recommended,
            reject_immediately=immediate,
            action=action,
            assessment=assessment,
            reputation=reputation,
        )
