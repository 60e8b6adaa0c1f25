"""Utilities for loading the safety policy file."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from whispr_safety.moderation.domain.policy import LocalThresholds, SpamPolicy
from whispr_safety.moderation.domain.thresholds import EscalationThresholds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SafetyPolicyConfig:
    escalation: EscalationThresholds = field(default_factory=EscalationThresholds.default)
    local: LocalThresholds = field(default_factory=LocalThresholds)
    spam: SpamPolicy = field(default_factory=SpamPolicy)


def _overlay(defaults: Any, raw: object, section: str) -> Any:
    """Return ``defaults`` with any numeric fields present in ``raw`` replaced."""

    if raw is None:
        return defaults
    if not isinstance(raw, Mapping):
        raise ValueError(f"policy section '{section}' must be a mapping")
    changes: dict[str, Any] = {}
    for item in fields(defaults):
        if item.name not in raw:
            continue
        current = getattr(defaults, item.name)
        try:
            changes[item.name] = type(current)(raw[item.name])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid value for {section}.{item.name}") from exc
    return replace(defaults, **changes)


def policy_from_mapping(data: Mapping[str, Any], *, local_defaults: LocalThresholds | None = None) -> SafetyPolicyConfig:
    escalation_raw = data.get("escalation")
    if escalation_raw is None:
        escalation = EscalationThresholds.default()
    elif isinstance(escalation_raw, Mapping):
        escalation = EscalationThresholds.from_mapping(escalation_raw)
    else:
        raise ValueError("policy section 'escalation' must be a mapping")
    return SafetyPolicyConfig(
        escalation=escalation,
        local=_overlay(local_defaults or LocalThresholds(), data.get("local"), "local"),
        spam=_overlay(SpamPolicy(), data.get("spam"), "spam"),
    )


def load_policy_config(path: str | Path, *, local_defaults: LocalThresholds | None = None) -> SafetyPolicyConfig:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        logger.warning("safety policy file missing at %s; using defaults", path)
        return SafetyPolicyConfig(local=local_defaults or LocalThresholds())
    if not isinstance(loaded, dict):
        raise ValueError("safety policy must be a mapping")
    return policy_from_mapping(loaded, local_defaults=local_defaults)
