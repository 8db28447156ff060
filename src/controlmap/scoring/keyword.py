"""Keyword/text similarity scoring strategy."""

from __future__ import annotations

import re

from ..models.control import Control
from ..models.framework import ComplianceRequirement
from .base import ScoreResult
from .categories import category_compatibility

COMPLIANCE_KEYWORDS = (
    "access", "authentication", "authorization", "encryption", "audit",
    "logging", "monitoring", "incident", "backup", "recovery", "training",
    "policy", "procedure", "review", "approval", "testing", "vulnerability",
    "patch", "update", "security", "privacy", "data", "protection",
)


def tokenize(text: str) -> set[str]:
    return {w for w in re.split(r"[^a-z0-9-]+", (text or "").lower()) if w}


def text_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity of the word sets of two texts."""
    words1 = tokenize(text1)
    words2 = tokenize(text2)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def extract_keywords(text: str) -> list[str]:
    lowered = (text or "").lower()
    return [k for k in COMPLIANCE_KEYWORDS if k in lowered]


class KeywordScorer:
    """Scores by overlap of names, descriptions and compliance keywords.

    Weights: title 0.3, description 0.4, category 0.2, keywords 0.1.
    Does not award a cross-framework bonus.
    """

    name = "keyword"

    def __init__(self, scoring_config: dict | None = None):
        config = scoring_config or {}
        self.related_category_score = float(config.get("related_category_score", 0.8))

    def score(
        self,
        control: Control,
        requirement: ComplianceRequirement,
        mapped_elsewhere: frozenset[tuple[str, str]] = frozenset(),
    ) -> ScoreResult:
        if not control.text and not control.evidence_dimensions:
            return ScoreResult(needs_review=True)

        title = text_similarity(control.name, requirement.title or requirement.code)
        desc = text_similarity(control.description, requirement.description)
        category = category_compatibility(
            control.category, requirement.category, self.related_category_score
        )

        tags = requirement.tags | requirement.required_dimensions
        keywords = extract_keywords(control.text)
        keyword_hits = [k for k in keywords if any(k in tag for tag in tags)]
        keyword_ratio = len(keyword_hits) / max(len(tags), 1)

        matched = control.evidence_dimensions & requirement.required_dimensions
        text_part = title * 0.3 + desc * 0.4 + min(keyword_ratio, 1.0) * 0.1

        return ScoreResult(
            confidence=round(min(text_part + category * 0.2, 1.0), 4),
            matched_dimensions=frozenset(matched),
            category_score=round(category * 0.2, 4),
            dimension_score=round(text_part, 4),
        )
