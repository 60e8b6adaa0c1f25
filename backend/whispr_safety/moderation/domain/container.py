"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

from whispr_safety.moderation.domain.aggregates import InMemoryReportAggregateStore, ReportAggregateStore
from whispr_safety.moderation.domain.enforcement import (
    ContentOwnerResolver,
    EnforcementHooks,
    InMemoryContentOwnerResolver,
    NoopHooks,
)
from whispr_safety.moderation.domain.keywords import KeywordCatalog, load_catalog
from whispr_safety.moderation.domain.policy import LocalThresholds
from whispr_safety.moderation.domain.policy_config import SafetyPolicyConfig, load_policy_config
from whispr_safety.moderation.domain.reports import InMemoryReportRepository, ReportRepository, ReportService
from whispr_safety.moderation.domain.reputation import (
    InMemoryReputationRepository,
    ReputationRepository,
    ReputationService,
)
from whispr_safety.moderation.domain.submissions import LocalModerationService, SubmissionService
from whispr_safety.moderation.infra.report_counters import RedisReportAggregateStore
from whispr_safety.settings import settings

logger = logging.getLogger(__name__)


def _settings_thresholds() -> LocalThresholds:
    return LocalThresholds(
        toxicity=settings.moderation_toxicity_flag_threshold,
        spam=settings.moderation_spam_flag_threshold,
        high_toxicity=settings.moderation_high_toxicity_threshold,
    )


def load_configured_catalog() -> KeywordCatalog:
    if settings.moderation_catalog_path:
        return load_catalog(settings.moderation_catalog_path)
    return KeywordCatalog.default()


def load_configured_policy() -> SafetyPolicyConfig:
    if settings.moderation_policy_path:
        return load_policy_config(settings.moderation_policy_path, local_defaults=_settings_thresholds())
    return SafetyPolicyConfig(local=_settings_thresholds())


_catalog: KeywordCatalog = load_configured_catalog()
_policy: SafetyPolicyConfig = load_configured_policy()
_reputation_repository: ReputationRepository = InMemoryReputationRepository()
_report_repository: ReportRepository = InMemoryReportRepository()
_aggregates: ReportAggregateStore = InMemoryReportAggregateStore()
_owners: ContentOwnerResolver = InMemoryContentOwnerResolver()
_hooks: EnforcementHooks = NoopHooks()
_reputation_service = ReputationService(repository=_reputation_repository)
_moderation_service = LocalModerationService(
    _catalog,
    thresholds=_policy.local,
    spam_policy=_policy.spam,
    max_text_length=settings.moderation_max_text_length,
)
_submission_service = SubmissionService(_moderation_service, _reputation_service)
_report_service = ReportService(
    repository=_report_repository,
    reputation=_reputation_service,
    aggregates=_aggregates,
    owners=_owners,
    hooks=_hooks,
    thresholds=_policy.escalation,
)


def configure(
    *,
    catalog: Optional[KeywordCatalog] = None,
    policy: Optional[SafetyPolicyConfig] = None,
    reputation_repository: Optional[ReputationRepository] = None,
    report_repository: Optional[ReportRepository] = None,
    aggregates: Optional[ReportAggregateStore] = None,
    owners: Optional[ContentOwnerResolver] = None,
    hooks: Optional[EnforcementHooks] = None,
    reputation_service: Optional[ReputationService] = None,
) -> None:
    """Swap collaborators and rebuild the services that depend on them."""

    global _catalog, _policy, _reputation_repository, _report_repository, _aggregates, _owners, _hooks
    global _reputation_service, _moderation_service, _submission_service, _report_service
    if catalog is not None:
        _catalog = catalog
    if policy is not None:
        _policy = policy
    if reputation_repository is not None:
        _reputation_repository = reputation_repository
    if report_repository is not None:
        _report_repository = report_repository
    if aggregates is not None:
        _aggregates = aggregates
    if owners is not None:
        _owners = owners
    if hooks is not None:
        _hooks = hooks
    _reputation_service = reputation_service or ReputationService(repository=_reputation_repository)
    _moderation_service = LocalModerationService(
        _catalog,
        thresholds=_policy.local,
        spam_policy=_policy.spam,
        max_text_length=settings.moderation_max_text_length,
    )
    _submission_service = SubmissionService(_moderation_service, _reputation_service)
    _report_service = ReportService(
        repository=_report_repository,
        reputation=_reputation_service,
        aggregates=_aggregates,
        owners=_owners,
        hooks=_hooks,
        thresholds=_policy.escalation,
    )


def configure_redis(client: Optional[redis.Redis] = None) -> RedisReportAggregateStore:
    """Move report aggregates onto Redis so every worker shares the counters."""

    redis_client = client or redis.from_url(settings.redis_url, decode_responses=True)
    store = RedisReportAggregateStore(client=redis_client, prefix=settings.report_aggregate_prefix)
    configure(aggregates=store)
    logger.info("report aggregates backed by redis", extra={"prefix": settings.report_aggregate_prefix})
    return store


if settings.report_aggregate_backend == "redis":
    configure_redis()


def get_catalog() -> KeywordCatalog:
    return _catalog


def get_policy() -> SafetyPolicyConfig:
    return _policy


def get_reputation_service() -> ReputationService:
    return _reputation_service


def get_moderation_service() -> LocalModerationService:
    return _moderation_service


def get_submission_service() -> SubmissionService:
    return _submission_service


def get_report_service() -> ReportService:
    return _report_service


def get_aggregate_store() -> ReportAggregateStore:
    return _aggregates
