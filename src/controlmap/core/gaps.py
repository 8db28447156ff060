"""Gap analysis: severity, maturity and the remediation plan."""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from ..models.control import Control
from ..models.framework import ComplianceFramework, ComplianceRequirement, Priority
from ..models.gap import (
    CLOSED_GAP_STATUSES,
    DomainMaturity,
    EffortLevel,
    Gap,
    GapAnalysisResult,
    GapSeverity,
    GapStatus,
    GapType,
    ReadinessLevel,
    StatusChange,
)
from ..models.mapping import ControlMapping, MappingStatus, MappingType
from ..scoring.categories import category_compatibility
from .aggregator import RequirementCoverage, aggregate_framework
from .config import DEFAULT_CONFIG

PRIORITY_SEVERITY = {
    Priority.LOW: GapSeverity.LOW,
    Priority.MEDIUM: GapSeverity.MEDIUM,
    Priority.HIGH: GapSeverity.HIGH,
    Priority.CRITICAL: GapSeverity.CRITICAL,
}

PRIORITY_RISK = {Priority.CRITICAL: 10, Priority.HIGH: 8, Priority.MEDIUM: 5, Priority.LOW: 3}


def gap_severity(requirement: ComplianceRequirement, missing_coverage: float) -> GapSeverity:
    """Severity of a requirement's gap.

    - no missing coverage: none
    - mandatory + critical priority + more than half missing: critical
    - mandatory with anything missing: at least high
    - non-mandatory: follows priority, capped at medium unless fully missing
    - non-testable with partial coverage: one step lower
    """
    if missing_coverage <= 0:
        return GapSeverity.NONE

    if requirement.mandatory:
        if requirement.priority == Priority.CRITICAL and missing_coverage > 50:
            severity = GapSeverity.CRITICAL
        else:
            severity = GapSeverity.HIGH
    else:
        severity = PRIORITY_SEVERITY[requirement.priority]
        if missing_coverage < 100 and severity.rank > GapSeverity.MEDIUM.rank:
            severity = GapSeverity.MEDIUM

    if not requirement.testable and missing_coverage < 100:
        severity = severity.step_down()
    return severity


def next_gap_status(previous: Optional[Gap], missing_coverage: float) -> GapStatus:
    """Status transition driven by a new aggregation.

    A Resolved/Verified gap whose coverage drops again becomes Reopened,
    never Open, so remediation history is kept.
    """
    if previous is None:
        return GapStatus.OPEN if missing_coverage > 0 else GapStatus.RESOLVED

    if previous.status in CLOSED_GAP_STATUSES:
        return GapStatus.REOPENED if missing_coverage > 0 else previous.status
    if missing_coverage <= 0:
        return GapStatus.RESOLVED
    return previous.status


def risk_level(requirement: ComplianceRequirement) -> int:
    risk = PRIORITY_RISK[requirement.priority]
    if requirement.mandatory:
        risk += 2
    return min(risk, 10)


def effort_level(requirement: ComplianceRequirement) -> EffortLevel:
    if requirement.priority == Priority.CRITICAL:
        return EffortLevel.HIGH
    if requirement.priority == Priority.HIGH:
        return EffortLevel.MEDIUM
    return EffortLevel.LOW


def estimate_effort(requirement: ComplianceRequirement, missing_coverage: float, timeline_days: dict) -> int:
    """Remediation effort in days, proportional to what is missing."""
    if missing_coverage <= 0:
        return 0
    base = int(timeline_days.get(requirement.priority.value, 90))
    return math.ceil(base * missing_coverage / 100)


def recommend_actions(
    requirement: ComplianceRequirement,
    coverage: RequirementCoverage,
    active: list[ControlMapping],
    controls: list[Control],
    max_recommendations: int = 3,
) -> list[str]:
    actions: list[str] = []
    missing = sorted(requirement.required_dimensions - set(coverage.covered_dimensions))

    if not active:
        label = requirement.category or "this requirement"
        actions.append(f"Implement a control for {label}")
    if missing:
        actions.append(f"Provide evidence for: {', '.join(missing)}")

    for m in active:
        if m.mapping_type == MappingType.COMPENSATING and m.status != MappingStatus.VERIFIED:
            actions.append(f"Verify compensating control {m.control_id}")

    mapped = {m.control_id for m in active}
    candidates: list[str] = []
    for control in sorted(controls, key=lambda c: c.id):
        if control.id in mapped:
            continue
        text = control.text.lower()
        offers_missing = bool(control.evidence_dimensions & set(missing)) or any(
            d in text for d in missing
        )
        if offers_missing or (not active and category_compatibility(control.category, requirement.category) > 0):
            candidates.append(control.name or control.id)
        if len(candidates) >= max_recommendations:
            break
    for name in candidates:
        actions.append(f"Consider extending control: {name}")

    return actions


def _build_gap(
    requirement: ComplianceRequirement,
    coverage: RequirementCoverage,
    active: list[ControlMapping],
    controls: list[Control],
    previous: Optional[Gap],
    config: dict,
    generation: int,
    analyzed_at: datetime,
) -> Gap:
    gap_config = config["gaps"]
    missing_coverage = round(100 - coverage.aggregate_coverage, 2)
    status = next_gap_status(previous, missing_coverage)

    history = list(previous.status_history) if previous else []
    if previous is None or previous.status != status:
        history.append(StatusChange(status=status, at=analyzed_at, generation=generation))

    severity = gap_severity(requirement, missing_coverage)
    gap_type = None
    if missing_coverage > 0:
        gap_type = GapType.MISSING if not active else GapType.PARTIAL

    return Gap(
        requirement_id=requirement.id,
        requirement_code=requirement.code,
        requirement_title=requirement.title,
        domain_id=requirement.domain_id,
        category=requirement.category,
        mandatory=requirement.mandatory,
        priority=requirement.priority.value,
        severity=severity,
        gap_type=gap_type,
        aggregate_coverage=coverage.aggregate_coverage,
        missing_coverage=missing_coverage,
        status=status,
        risk_level=risk_level(requirement),
        effort_level=effort_level(requirement),
        estimated_effort=estimate_effort(requirement, missing_coverage, gap_config["timeline_days"]),
        existing_controls=list(coverage.control_ids),
        missing_dimensions=sorted(requirement.required_dimensions - set(coverage.covered_dimensions)),
        recommended_actions=(
            recommend_actions(
                requirement, coverage, active, controls, int(gap_config["max_recommendations"])
            )
            if missing_coverage > 0 else []
        ),
        status_history=history,
    )


def remediation_order(gaps: list[Gap]) -> list[Gap]:
    """Order open gaps by severity desc, mandatory desc, effort asc, code."""
    open_gaps = [g for g in gaps if g.severity != GapSeverity.NONE]
    return sorted(
        open_gaps,
        key=lambda g: (
            -g.severity.rank,
            not g.mandatory,
            g.estimated_effort,
            g.requirement_code or g.requirement_id,
            g.requirement_id,
        ),
    )


def maturity_by_domain(framework: ComplianceFramework, gaps: list[Gap]) -> tuple[list[DomainMaturity], float]:
    """Per-domain average coverage and the weighted framework maturity (0-100)."""
    by_domain: dict[str, list[float]] = defaultdict(list)
    for g in gaps:
        by_domain[g.domain_id].append(g.aggregate_coverage)

    domains: list[DomainMaturity] = []
    known = {d.id for d in framework.domains}
    for domain in framework.domains:
        values = by_domain.get(domain.id, [])
        domains.append(DomainMaturity(
            domain_id=domain.id,
            name=domain.name,
            weight=domain.weight,
            requirements=len(values),
            average_coverage=round(sum(values) / len(values), 2) if values else 0.0,
        ))
    for domain_id in sorted(set(by_domain) - known):
        values = by_domain[domain_id]
        domains.append(DomainMaturity(
            domain_id=domain_id,
            requirements=len(values),
            average_coverage=round(sum(values) / len(values), 2),
        ))

    scored = [d for d in domains if d.requirements > 0]
    total_weight = sum(d.weight for d in scored)
    if total_weight > 0:
        maturity = sum(d.weight * d.average_coverage for d in scored) / total_weight
    elif scored:
        maturity = sum(d.average_coverage for d in scored) / len(scored)
    else:
        maturity = 0.0
    return domains, round(min(max(maturity, 0.0), 100.0), 2)


def readiness_level(overall: float, maturity: float, risk: float) -> ReadinessLevel:
    score = (overall + maturity) / 2 - risk * 5
    if score >= 70:
        return ReadinessLevel.HIGH
    if score >= 40:
        return ReadinessLevel.MEDIUM
    return ReadinessLevel.LOW


def analyze_gaps(
    organization_id: str,
    framework: ComplianceFramework,
    mappings: list[ControlMapping],
    controls: Optional[list[Control]] = None,
    previous: Optional[GapAnalysisResult] = None,
    requirement_ids: Optional[set[str]] = None,
    config: Optional[dict] = None,
    generation: int = 0,
    analyzed_at: Optional[datetime] = None,
) -> GapAnalysisResult:
    """Compute the gap analysis for one organization x framework.

    With ``requirement_ids`` only those requirements are re-evaluated and
    the other gaps are carried over from ``previous`` unchanged.
    """
    config = config or DEFAULT_CONFIG
    controls = controls or []
    analyzed_at = analyzed_at or datetime.now(timezone.utc)
    previous_gaps = {g.requirement_id: g for g in previous.gaps} if previous else {}

    active_by_requirement: dict[str, list[ControlMapping]] = defaultdict(list)
    for m in mappings:
        if m.is_active and m.framework_id == framework.id:
            active_by_requirement[m.requirement_id].append(m)

    requirements = sorted(framework.requirements, key=lambda r: r.id)
    to_evaluate = [
        r for r in requirements
        if requirement_ids is None or r.id in requirement_ids or r.id not in previous_gaps
    ]
    coverage = aggregate_framework(to_evaluate, mappings)

    gaps: list[Gap] = []
    for requirement in requirements:
        if requirement.id in coverage:
            gaps.append(_build_gap(
                requirement,
                coverage[requirement.id],
                active_by_requirement.get(requirement.id, []),
                controls,
                previous_gaps.get(requirement.id),
                config,
                generation,
                analyzed_at,
            ))
        else:
            gaps.append(previous_gaps[requirement.id])

    total = len(gaps)
    overall = round(sum(g.aggregate_coverage for g in gaps) / total, 2) if total else 0.0
    domains, maturity = maturity_by_domain(framework, gaps)
    risk = round(sum(g.risk_level * g.missing_coverage / 100 for g in gaps) / total, 2) if total else 0.0
    plan = remediation_order(gaps)
    total_effort = sum(g.estimated_effort for g in plan)

    return GapAnalysisResult(
        organization_id=organization_id,
        framework_id=framework.id,
        generation=generation,
        total_requirements=total,
        mapped_requirements=sum(1 for g in gaps if g.existing_controls),
        overall_coverage=overall,
        maturity_score=maturity,
        risk_score=risk,
        readiness_level=readiness_level(overall, maturity, risk),
        time_to_compliance_days=max(math.ceil(total_effort / 4), 30) if plan else 0,
        domains=domains,
        gaps=gaps,
        remediation_plan=plan,
        analyzed_at=analyzed_at,
    )
