"""Similarity scorer abstraction.

A scorer is any object with a ``score(control, requirement, mapped_elsewhere)``
method. The Mapping Engine only sees this protocol, so strategies can be
swapped through configuration without touching the engine.
"""

from __future__ import annotations

import math
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from ..models.control import Control
from ..models.framework import ComplianceRequirement
from ..utils.sanitize import sanitize_error


class ScoreResult(BaseModel):
    confidence: float = 0.0
    matched_dimensions: frozenset[str] = frozenset()
    category_score: float = 0.0
    dimension_score: float = 0.0
    equivalence_score: float = 0.0
    needs_review: bool = False

    @property
    def equivalence_dominant(self) -> bool:
        """The cross-framework bonus outweighs every other contribution."""
        return (
            self.equivalence_score > 0
            and self.equivalence_score > self.category_score
            and self.equivalence_score > self.dimension_score
        )


ZERO_SCORE = ScoreResult(needs_review=True)


@runtime_checkable
class SimilarityScorer(Protocol):
    """Protocol that all scoring strategies must implement.

    Implementations must be pure: the result depends only on the arguments.
    ``mapped_elsewhere`` holds (control_id, requirement_id) pairs that already
    have an active mapping in another framework for the same organization.
    """

    name: str

    def score(
        self,
        control: Control,
        requirement: ComplianceRequirement,
        mapped_elsewhere: frozenset[tuple[str, str]] = frozenset(),
    ) -> ScoreResult: ...


def score_safely(
    scorer: SimilarityScorer,
    control: Control,
    requirement: ComplianceRequirement,
    mapped_elsewhere: frozenset[tuple[str, str]] = frozenset(),
) -> tuple[ScoreResult, Optional[str]]:
    """Run a scorer, turning exceptions and invalid results into a zero score.

    Returns (result, error). ``error`` is None when the scorer behaved.
    """
    try:
        result = scorer.score(control, requirement, mapped_elsewhere)
    except Exception as e:
        return ZERO_SCORE, sanitize_error(f"{type(e).__name__}: {e}")

    if not isinstance(result, ScoreResult):
        return ZERO_SCORE, f"scorer returned {type(result).__name__}, expected ScoreResult"
    if not math.isfinite(result.confidence) or not 0.0 <= result.confidence <= 1.0:
        return ZERO_SCORE, f"confidence out of range: {result.confidence}"
    if not result.matched_dimensions <= requirement.required_dimensions:
        extra = sorted(result.matched_dimensions - requirement.required_dimensions)
        return ZERO_SCORE, f"matched dimensions not required by requirement: {extra}"

    return result, None


def get_scorer(config: dict, strategy_override: Optional[str] = None) -> SimilarityScorer:
    """Factory function to create the configured scoring strategy."""
    scoring_config = dict(config.get("scoring", {}))
    strategy = strategy_override or scoring_config.get("strategy", "evidence")

    if strategy == "evidence":
        from .evidence import EvidenceScorer
        return EvidenceScorer(scoring_config)
    elif strategy == "keyword":
        from .keyword import KeywordScorer
        return KeywordScorer(scoring_config)
    else:
        raise ValueError(f"Unknown scoring strategy: {strategy}")
