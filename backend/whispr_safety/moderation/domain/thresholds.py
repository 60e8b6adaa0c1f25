"""Aggregate report thresholds that drive automatic escalation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from whispr_safety.moderation.domain.models import ContentType


class EscalationTier(str, Enum):
    FLAG_FOR_REVIEW = "flag_for_review"
    AUTO_DELETE = "auto_delete"
    DELETE_AND_TEMP_BAN = "delete_and_temp_ban"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = (EscalationTier.FLAG_FOR_REVIEW, EscalationTier.AUTO_DELETE, EscalationTier.DELETE_AND_TEMP_BAN)


@dataclass(frozen=True)
class TierThreshold:
    """Both minimums must be met; weight alone never escalates."""

    min_weighted_total: float
    min_unique_reporters: int

    def reached(self, weighted_total: float, unique_reporters: int) -> bool:
        return weighted_total >= self.min_weighted_total and unique_reporters >= self.min_unique_reporters


@dataclass(frozen=True)
class TierDecision:
    """Outcome of an aggregate evaluation for one content item."""

    content_type: ContentType
    tier: EscalationTier | None
    reached: tuple[EscalationTier, ...]
    weighted_total: float
    unique_reporters: int

    @property
    def escalated(self) -> bool:
        return self.tier is not None


@dataclass(frozen=True)
class EscalationThresholds:
    tiers: Mapping[ContentType, Mapping[EscalationTier, TierThreshold]]

    @staticmethod
    def default() -> "EscalationThresholds":
        return EscalationThresholds(
            tiers={
                ContentType.WHISPER: {
                    EscalationTier.FLAG_FOR_REVIEW: TierThreshold(5, 3),
                    EscalationTier.AUTO_DELETE: TierThreshold(15, 5),
                    EscalationTier.DELETE_AND_TEMP_BAN: TierThreshold(25, 8),
                },
                ContentType.COMMENT: {
                    EscalationTier.FLAG_FOR_REVIEW: TierThreshold(3, 3),
                    EscalationTier.AUTO_DELETE: TierThreshold(8, 5),
                    EscalationTier.DELETE_AND_TEMP_BAN: TierThreshold(15, 8),
                },
            }
        )

    def for_content(self, content_type: ContentType) -> Mapping[EscalationTier, TierThreshold]:
        return self.tiers.get(content_type, {})

    def evaluate(self, content_type: ContentType, *, weighted_total: float, unique_reporters: int) -> TierDecision:
        thresholds = self.for_content(content_type)
        reached = tuple(
            tier
            for tier in _TIER_ORDER
            if tier in thresholds and thresholds[tier].reached(weighted_total, unique_reporters)
        )
        return TierDecision(
            content_type=content_type,
            tier=reached[-1] if reached else None,
            reached=reached,
            weighted_total=weighted_total,
            unique_reporters=unique_reporters,
        )

    # --- Serialization ---------------------------------------------------

    @staticmethod
    def from_mapping(config: Mapping[str, Any]) -> "EscalationThresholds":
        """Overlay ``{content_type: {tier: {min_weighted_total, min_unique_reporters}}}`` on the defaults."""

        base = EscalationThresholds.default()
        tiers: dict[ContentType, dict[EscalationTier, TierThreshold]] = {
            content_type: dict(values) for content_type, values in base.tiers.items()
        }
        for content_name, tier_cfg in config.items():
            content_type = ContentType(str(content_name))
            if not isinstance(tier_cfg, Mapping):
                raise ValueError(f"escalation thresholds for {content_name} must be a mapping")
            target = tiers.setdefault(content_type, {})
            for tier_name, values in tier_cfg.items():
                tier = EscalationTier(str(tier_name))
                if not isinstance(values, Mapping):
                    raise ValueError(f"threshold {content_name}.{tier_name} must be a mapping")
                current = target.get(tier, TierThreshold(float("inf"), 0))
                target[tier] = TierThreshold(
                    min_weighted_total=float(values.get("min_weighted_total", current.min_weighted_total)),
                    min_unique_reporters=int(values.get("min_unique_reporters", current.min_unique_reporters)),
                )
        return EscalationThresholds(tiers=tiers)
