"""Coverage aggregation across active mappings."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from pydantic import BaseModel

from ..models.framework import ComplianceRequirement
from ..models.mapping import ControlMapping


class RequirementCoverage(BaseModel):
    requirement_id: str
    aggregate_coverage: float = 0.0
    covered_dimensions: tuple[str, ...] = ()
    control_ids: tuple[str, ...] = ()


def aggregate_coverage(
    requirement: ComplianceRequirement,
    mappings: Iterable[ControlMapping],
) -> RequirementCoverage:
    """Aggregate coverage for one requirement over its active mappings.

    Coverage is the union of covered evidence dimensions over the required
    set, never a sum, so overlapping controls are not double counted and
    the result cannot exceed 100. A requirement without required
    dimensions takes the best single-mapping coverage.
    """
    active = [
        m for m in mappings
        if m.is_active and m.requirement_id == requirement.id
    ]
    control_ids = tuple(sorted({m.control_id for m in active}))
    required = requirement.required_dimensions

    if not required:
        best = max((m.coverage for m in active), default=0.0)
        return RequirementCoverage(
            requirement_id=requirement.id,
            aggregate_coverage=round(min(best, 100.0), 2),
            control_ids=control_ids,
        )

    covered: set[str] = set()
    for m in active:
        covered.update(m.evidence_dimensions_covered)
    covered &= required

    return RequirementCoverage(
        requirement_id=requirement.id,
        aggregate_coverage=round(100 * len(covered) / len(required), 2),
        covered_dimensions=tuple(sorted(covered)),
        control_ids=control_ids,
    )


def aggregate_framework(
    requirements: Iterable[ComplianceRequirement],
    mappings: Iterable[ControlMapping],
) -> dict[str, RequirementCoverage]:
    """Aggregate every requirement in one pass over the mapping set."""
    by_requirement: dict[str, list[ControlMapping]] = defaultdict(list)
    for m in mappings:
        if m.is_active:
            by_requirement[m.requirement_id].append(m)

    return {
        r.id: aggregate_coverage(r, by_requirement.get(r.id, []))
        for r in sorted(requirements, key=lambda r: r.id)
    }
