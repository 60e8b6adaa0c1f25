"""Versioned keyword and pattern tables consulted by the local scorer."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from whispr_safety.moderation.domain.models import ViolationType

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_VERSION = "2024.1"

# Category order is scan order, which fixes the order of violations and matched keywords.
DEFAULT_KEYWORDS: Mapping[ViolationType, tuple[str, ...]] = {
    ViolationType.HARASSMENT: ("stupid", "idiot", "ugly", "loser", "worthless"),
    ViolationType.HATE_SPEECH: ("hate", "racist", "nazi", "white power"),
    ViolationType.VIOLENCE: ("kill", "punch", "attack", "bomb", "murder"),
    ViolationType.SEXUAL_CONTENT: ("sex", "nude", "nudes"),
    ViolationType.DRUGS: ("drugs", "cocaine", "heroin", "meth"),
    ViolationType.SPAM: ("buy now", "click here", "free money", "limited offer"),
}

DEFAULT_CRITICAL_KEYWORDS = frozenset(
    {
        "kill yourself",
        "kys",
        "kill you",
        "bomb",
        "terrorist",
        "nazi",
        "hitler",
        "white power",
        "black power",
    }
)

DEFAULT_HIGH_SEVERITY_KEYWORDS = frozenset(
    {
        "hate you",
        "stupid",
        "idiot",
        "ugly",
        "fat",
        "worthless",
        "punch you",
        "stab you",
        "shoot you",
        "attack",
        "murder",
    }
)

DEFAULT_PERSONAL_INFO_PATTERNS: tuple[str, ...] = (
    r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b",
    r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    r"\b\d{3}-\d{2}-\d{4}\b",
    r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b",
    r"(?i)\b\d+\s+[a-z\s]+(?:street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln)\b",
    r"(?i)\bphone number\b",
)


@dataclass(frozen=True)
class KeywordCatalog:
    """Immutable keyword tables; scorer output is a pure function of (text, catalog)."""

    version: str
    keywords: Mapping[ViolationType, tuple[str, ...]]
    critical_keywords: frozenset[str]
    high_severity_keywords: frozenset[str]
    personal_info_patterns: tuple[re.Pattern[str], ...] = field(default=())

    @property
    def spam_keywords(self) -> tuple[str, ...]:
        return self.keywords.get(ViolationType.SPAM, ())

    def categories(self) -> Iterable[tuple[ViolationType, tuple[str, ...]]]:
        return self.keywords.items()

    @staticmethod
    def default() -> "KeywordCatalog":
        return KeywordCatalog(
            version=DEFAULT_CATALOG_VERSION,
            keywords=dict(DEFAULT_KEYWORDS),
            critical_keywords=DEFAULT_CRITICAL_KEYWORDS,
            high_severity_keywords=DEFAULT_HIGH_SEVERITY_KEYWORDS,
            personal_info_patterns=_compile(DEFAULT_PERSONAL_INFO_PATTERNS),
        )

    @staticmethod
    def from_mapping(config: Mapping[str, Any]) -> "KeywordCatalog":
        """Build a catalog, falling back to defaults for any section left out.

        Keyword categories may be keyed by either ``HARASSMENT`` or
        ``harassment``; unknown category names raise ``ValueError``.
        """

        base = KeywordCatalog.default()
        keywords: dict[ViolationType, tuple[str, ...]]
        raw_keywords = config.get("keywords")
        if raw_keywords is None:
            keywords = dict(base.keywords)
        else:
            if not isinstance(raw_keywords, Mapping):
                raise ValueError("catalog keywords must be a mapping")
            keywords = {}
            for name, values in raw_keywords.items():
                try:
                    violation_type = ViolationType(str(name).lower())
                except ValueError as exc:
                    raise ValueError(f"unknown keyword category: {name}") from exc
                keywords[violation_type] = _normalise_words(values)
        critical = config.get("critical_keywords")
        high = config.get("high_severity_keywords")
        patterns = config.get("personal_info_patterns")
        return KeywordCatalog(
            version=str(config.get("version", base.version)),
            keywords=keywords,
            critical_keywords=frozenset(_normalise_words(critical)) if critical is not None else base.critical_keywords,
            high_severity_keywords=frozenset(_normalise_words(high)) if high is not None else base.high_severity_keywords,
            personal_info_patterns=_compile(patterns) if patterns is not None else base.personal_info_patterns,
        )


def _normalise_words(values: Any) -> tuple[str, ...]:
    if isinstance(values, str) or not isinstance(values, Iterable):
        raise ValueError("keyword lists must be sequences of strings")
    return tuple(str(value).strip().lower() for value in values if str(value).strip())


def _compile(patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern) for pattern in patterns)


def default_catalog() -> KeywordCatalog:
    return KeywordCatalog.default()


def load_catalog(path: str | Path) -> KeywordCatalog:
    """Load a keyword catalog from YAML, using defaults when the file is absent."""

    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("keyword catalog missing at %s; using defaults", path)
        return KeywordCatalog.default()
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, Mapping):
        raise ValueError("keyword catalog must be a mapping")
    catalog = KeywordCatalog.from_mapping(data)
    logger.info("keyword catalog loaded", extra={"catalog_version": catalog.version, "path": str(path)})
    return catalog
