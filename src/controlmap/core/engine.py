"""Mapping engine: scores controls against requirements and classifies matches."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Optional

from rich.console import Console

from ..models.control import Control
from ..models.framework import AssessmentFrequency, ComplianceRequirement
from ..models.job import JobScope, PairError
from ..models.mapping import ControlMapping, MappingType, mapping_id
from ..scoring.base import ScoreResult, SimilarityScorer, score_safely
from ..scoring.categories import category_compatibility
from .config import DEFAULT_CONFIG

console = Console(stderr=True)


def classify(
    result: ScoreResult,
    requirement: ComplianceRequirement,
    thresholds: dict,
) -> Optional[MappingType]:
    """Classify a score into a mapping type, or None to discard it.

    Rules are applied in priority order: direct, inherited, partial,
    compensating. A requirement without required dimensions uses the
    confidence itself as its dimension ratio.
    """
    confidence = result.confidence
    required = requirement.required_dimensions
    ratio = len(result.matched_dimensions) / len(required) if required else confidence

    if confidence >= thresholds["direct_confidence"] and ratio >= thresholds["direct_dimension_ratio"]:
        return MappingType.DIRECT
    if result.equivalence_dominant and confidence >= thresholds["inherited_confidence"]:
        return MappingType.INHERITED
    if confidence >= thresholds["partial_confidence"]:
        return MappingType.PARTIAL
    if confidence >= thresholds["compensating_confidence"] and not requirement.mandatory:
        return MappingType.COMPENSATING
    return None


def mapping_coverage(result: ScoreResult, requirement: ComplianceRequirement) -> float:
    """Coverage of a single mapping, 0-100.

    Falls back to confidence x 100 when the requirement defines no
    evidence dimensions.
    """
    required = requirement.required_dimensions
    if not required:
        return round(min(max(result.confidence, 0.0), 1.0) * 100, 2)
    return round(100 * len(result.matched_dimensions & required) / len(required), 2)


def testing_requirements(requirement: ComplianceRequirement) -> tuple[str, ...]:
    if not requirement.testable:
        return ()
    tests = ["Design effectiveness testing", "Operating effectiveness testing"]
    if requirement.frequency in (AssessmentFrequency.CONTINUOUS, AssessmentFrequency.MONTHLY):
        tests.append("Continuous monitoring")
    return tuple(tests)


def next_assessment(
    assessed_at: datetime,
    frequency: AssessmentFrequency,
    interval_days: dict,
) -> datetime:
    return assessed_at + timedelta(days=int(interval_days.get(frequency.value, 365)))


def candidate_pairs(
    controls: Iterable[Control],
    requirements: Iterable[ComplianceRequirement],
    scope: Optional[JobScope] = None,
    related_category_score: float = 0.8,
) -> Iterator[tuple[Control, ComplianceRequirement]]:
    """Yield (control, requirement) pairs worth scoring, in a stable order.

    Pairs with no category overlap are never scored. With a partial scope,
    only pairs touching a changed control or requirement are produced.
    """
    ordered_controls = sorted(controls, key=lambda c: c.id)
    for requirement in sorted(requirements, key=lambda r: r.id):
        for control in ordered_controls:
            if scope is not None and not scope.covers(control.id, requirement.id):
                continue
            if category_compatibility(control.category, requirement.category, related_category_score) <= 0:
                continue
            yield control, requirement


def map_pair(
    organization_id: str,
    framework_id: str,
    control: Control,
    requirement: ComplianceRequirement,
    scorer: SimilarityScorer,
    config: Optional[dict] = None,
    mapped_elsewhere: frozenset[tuple[str, str]] = frozenset(),
    generation: int = 0,
) -> tuple[Optional[ControlMapping], Optional[PairError]]:
    """Score and classify one pair.

    Returns (mapping, error). Both are None when the pair scored below the
    discard threshold. Timestamps are not set here.
    """
    config = config or DEFAULT_CONFIG
    result, error = score_safely(scorer, control, requirement, mapped_elsewhere)
    if error:
        return None, PairError(
            stage="scoring",
            control_id=control.id,
            requirement_id=requirement.id,
            message=error,
        )
    if result.needs_review:
        return None, PairError(
            stage="review",
            control_id=control.id,
            requirement_id=requirement.id,
            message="insufficient control or requirement data; flagged for manual review",
        )

    mapping_type = classify(result, requirement, config["classification"])
    if mapping_type is None:
        return None, None

    matched = result.matched_dimensions & requirement.required_dimensions
    return ControlMapping(
        id=mapping_id(organization_id, framework_id, control.id, requirement.id),
        control_id=control.id,
        requirement_id=requirement.id,
        framework_id=framework_id,
        organization_id=organization_id,
        mapping_type=mapping_type,
        coverage=mapping_coverage(result, requirement),
        confidence=result.confidence,
        automated=True,
        evidence_dimensions_covered=matched,
        evidence_required=requirement.required_dimensions - matched,
        testing_required=testing_requirements(requirement),
        needs_review=mapping_type == MappingType.COMPENSATING,
        generation=generation,
    ), None


def stamp_assessment(
    mappings: list[ControlMapping],
    requirements: dict[str, ComplianceRequirement],
    assessed_at: datetime,
    config: Optional[dict] = None,
) -> list[ControlMapping]:
    """Apply lastAssessed/nextAssessment after classification."""
    interval_days = (config or DEFAULT_CONFIG)["assessment"]["interval_days"]
    stamped = []
    for mapping in mappings:
        requirement = requirements[mapping.requirement_id]
        stamped.append(mapping.model_copy(update={
            "last_assessed": assessed_at,
            "next_assessment": next_assessment(assessed_at, requirement.frequency, interval_days),
        }))
    return stamped


def validate_inputs(
    organization_id: str,
    framework_id: str,
    controls: Iterable[Control],
    requirements: Iterable[ComplianceRequirement],
    errors: list[PairError],
) -> tuple[list[Control], list[ComplianceRequirement]]:
    """Drop controls of another organization and requirements of another framework.

    Each dropped record is reported as a validation error.
    """
    valid_controls = []
    for control in controls:
        if control.organization_id != organization_id:
            errors.append(PairError(
                stage="validation",
                control_id=control.id,
                message=f"control belongs to organization {control.organization_id}",
            ))
            continue
        valid_controls.append(control)

    valid_requirements = []
    for requirement in requirements:
        if requirement.framework_id != framework_id:
            errors.append(PairError(
                stage="validation",
                requirement_id=requirement.id,
                message=f"requirement belongs to framework {requirement.framework_id}",
            ))
            continue
        valid_requirements.append(requirement)

    return valid_controls, valid_requirements


def compute_mappings(
    organization_id: str,
    framework_id: str,
    controls: list[Control],
    requirements: list[ComplianceRequirement],
    scorer: SimilarityScorer,
    config: Optional[dict] = None,
    mapped_elsewhere: frozenset[tuple[str, str]] = frozenset(),
    scope: Optional[JobScope] = None,
    assessed_at: Optional[datetime] = None,
    errors: Optional[list[PairError]] = None,
) -> list[ControlMapping]:
    """Compute mappings for an organization against one framework.

    Output is sorted by (requirement_id, control_id) and does not depend on
    input order. Per-pair failures are appended to ``errors`` and never
    abort the run.
    """
    config = config or DEFAULT_CONFIG
    errors = errors if errors is not None else []

    valid_controls, valid_requirements = validate_inputs(
        organization_id, framework_id, controls, requirements, errors
    )

    related_score = float(config["scoring"].get("related_category_score", 0.8))
    mappings: list[ControlMapping] = []
    for control, requirement in candidate_pairs(valid_controls, valid_requirements, scope, related_score):
        mapping, error = map_pair(
            organization_id, framework_id, control, requirement, scorer, config, mapped_elsewhere
        )
        if error:
            errors.append(error)
        if mapping:
            mappings.append(mapping)

    if errors:
        console.print(f"  [yellow]WARN[/yellow] {len(errors)} pair(s) skipped or flagged for review")

    assessed_at = assessed_at or datetime.now(timezone.utc)
    by_id = {r.id: r for r in valid_requirements}
    return stamp_assessment(mappings, by_id, assessed_at, config)
