"""Default scoring strategy: category + evidence-dimension overlap + equivalence."""

from __future__ import annotations

from ..models.control import Control
from ..models.framework import ComplianceRequirement
from .base import ScoreResult
from .categories import category_compatibility
from .keyword import text_similarity

DEFAULT_WEIGHTS = {"category": 0.2, "dimensions": 0.8, "equivalence": 0.45}


class EvidenceScorer:
    """Weighted combination of three signals.

    confidence = w_cat * category + w_dim * overlap + w_eq * equivalence,
    capped at 1.0. ``overlap`` is |control dims & required dims| / |required
    dims|; requirements without required dimensions fall back to text
    similarity. ``equivalence`` is 1 when a related requirement in another
    framework is already mapped to the same control.
    """

    name = "evidence"

    def __init__(self, scoring_config: dict | None = None):
        config = scoring_config or {}
        weights = {**DEFAULT_WEIGHTS, **(config.get("weights") or {})}
        self.category_weight = float(weights["category"])
        self.dimension_weight = float(weights["dimensions"])
        self.equivalence_weight = float(weights["equivalence"])
        self.related_category_score = float(config.get("related_category_score", 0.8))

    def score(
        self,
        control: Control,
        requirement: ComplianceRequirement,
        mapped_elsewhere: frozenset[tuple[str, str]] = frozenset(),
    ) -> ScoreResult:
        if not control.evidence_dimensions and not control.description.strip():
            return ScoreResult(needs_review=True)

        required = requirement.required_dimensions
        if required:
            matched = control.evidence_dimensions & required
            overlap = len(matched) / len(required)
        else:
            requirement_text = f"{requirement.title} {requirement.description}".strip()
            if not requirement_text:
                return ScoreResult(needs_review=True)
            matched = frozenset()
            overlap = text_similarity(control.text, requirement_text)

        category = category_compatibility(
            control.category, requirement.category, self.related_category_score
        )
        equivalent = any(
            (control.id, related) in mapped_elsewhere
            for related in requirement.related_requirements
        )

        category_part = round(self.category_weight * category, 4)
        dimension_part = round(self.dimension_weight * overlap, 4)
        equivalence_part = round(self.equivalence_weight, 4) if equivalent else 0.0

        return ScoreResult(
            confidence=round(min(category_part + dimension_part + equivalence_part, 1.0), 4),
            matched_dimensions=frozenset(matched),
            category_score=category_part,
            dimension_score=dimension_part,
            equivalence_score=equivalence_part,
        )
