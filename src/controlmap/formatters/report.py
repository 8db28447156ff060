"""Markdown gap analysis report and CI exit codes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .. import __version__
from ..models.gap import GapAnalysisResult, GapSeverity
from ..models.mapping import ControlMapping

SEVERITY_LABEL = {
    GapSeverity.CRITICAL: "CRITICAL",
    GapSeverity.HIGH: "HIGH",
    GapSeverity.MEDIUM: "MEDIUM",
    GapSeverity.LOW: "LOW",
}


def severity_counts(result: GapAnalysisResult) -> dict[str, int]:
    counts = {s.value: 0 for s in SEVERITY_LABEL}
    for gap in result.open_gaps:
        counts[gap.severity.value] += 1
    return counts


def get_exit_code(result: GapAnalysisResult) -> int:
    """2 when any critical gap remains, else 0."""
    if any(g.severity == GapSeverity.CRITICAL for g in result.open_gaps):
        return 2
    return 0


def generate_gap_report(
    result: GapAnalysisResult,
    mappings: Optional[list[ControlMapping]] = None,
    framework_name: str = "",
) -> str:
    """Generate the GAP-ANALYSIS-REPORT.md for one organization x framework."""
    counts = severity_counts(result)
    timestamp = (result.analyzed_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")

    lines: list[str] = []
    lines.append("# Gap Analysis Report")
    lines.append("")
    lines.append(f"**Organization:** {result.organization_id}")
    lines.append(f"**Framework:** {framework_name or result.framework_id}")
    lines.append(f"**Date:** {timestamp}")
    lines.append(f"**Readiness:** {result.readiness_level.value.upper()}")
    lines.append(f"**Generation:** {result.generation}")
    lines.append("")

    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Overall coverage | {result.overall_coverage:g}% |")
    lines.append(f"| Maturity score | {result.maturity_score:g} |")
    lines.append(f"| Risk score | {result.risk_score:g} / 10 |")
    lines.append(f"| Requirements mapped | {result.mapped_requirements} / {result.total_requirements} |")
    lines.append(f"| Estimated time to compliance | {result.time_to_compliance_days} days |")
    lines.append("")

    lines.append("| Severity | Gaps |")
    lines.append("|----------|------|")
    for severity, label in SEVERITY_LABEL.items():
        lines.append(f"| {label} | {counts[severity.value]} |")
    lines.append(f"| **Total** | **{len(result.open_gaps)}** |")
    lines.append("")

    if result.domains:
        lines.append("## Domain Maturity")
        lines.append("")
        lines.append("| Domain | Weight | Requirements | Coverage |")
        lines.append("|--------|--------|--------------|----------|")
        for d in result.domains:
            lines.append(f"| {d.name or d.domain_id} | {d.weight:g} | {d.requirements} | {d.average_coverage:g}% |")
        lines.append("")

    if result.remediation_plan:
        lines.append("## Remediation Plan")
        lines.append("")
        for i, gap in enumerate(result.remediation_plan, start=1):
            label = SEVERITY_LABEL.get(gap.severity, gap.severity.value)
            lines.append(f"### {i}. {gap.requirement_code or gap.requirement_id}: {gap.requirement_title} [{label}]")
            lines.append(
                f"**Coverage:** {gap.aggregate_coverage:g}% | **Status:** {gap.status.value} | "
                f"**Effort:** {gap.estimated_effort} days"
            )
            if gap.existing_controls:
                lines.append(f"**Controls:** {', '.join(gap.existing_controls)}")
            if gap.missing_dimensions:
                lines.append(f"**Missing evidence:** {', '.join(gap.missing_dimensions)}")
            for action in gap.recommended_actions:
                lines.append(f"- {action}")
            lines.append("")

    if mappings:
        lines.append("## Mappings")
        lines.append("")
        lines.append("| Requirement | Control | Type | Coverage | Confidence | Status |")
        lines.append("|-------------|---------|------|----------|------------|--------|")
        for m in mappings:
            lines.append(
                f"| {m.requirement_id} | {m.control_id} | {m.mapping_type.value} | "
                f"{m.coverage:g}% | {m.confidence:.2f} | {m.status.value} |"
            )
        lines.append("")

    lines.append("---")
    lines.append(f"*Generated by controlmap v{__version__} at {timestamp}*")

    return "\n".join(lines)
