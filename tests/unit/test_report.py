"""Tests for formatters/report.py."""

from __future__ import annotations

import pytest

from controlmap.core.engine import compute_mappings
from controlmap.core.gaps import analyze_gaps
from controlmap.formatters.report import generate_gap_report, get_exit_code, severity_counts
from controlmap.models.framework import ComplianceFramework
from controlmap.scoring.evidence import EvidenceScorer


@pytest.fixture
def mappings(soc2, controls):
    return compute_mappings("acme", soc2.id, controls, list(soc2.requirements), EvidenceScorer())


class TestSeverityCounts:
    def test_counts(self, soc2, mappings):
        counts = severity_counts(analyze_gaps("acme", soc2, mappings))
        assert counts == {"critical": 0, "high": 1, "medium": 0, "low": 0}


class TestExitCode:
    def test_no_critical(self, soc2, mappings):
        assert get_exit_code(analyze_gaps("acme", soc2, mappings)) == 0

    def test_critical_gap(self, soc2):
        assert get_exit_code(analyze_gaps("acme", soc2, [])) == 2

    def test_nothing_to_do(self, cc61, sso_control):
        framework = ComplianceFramework(id="SOC2-2017", requirements=(cc61,))
        mappings = compute_mappings("acme", framework.id, [sso_control], [cc61], EvidenceScorer())
        assert get_exit_code(analyze_gaps("acme", framework, mappings)) == 0


class TestGenerateGapReport:
    def test_sections(self, soc2, mappings, controls):
        result = analyze_gaps("acme", soc2, mappings, controls=controls)
        report = generate_gap_report(result, mappings, framework_name="SOC 2 2017")

        assert report.startswith("# Gap Analysis Report")
        assert "**Framework:** SOC 2 2017" in report
        assert "**Readiness:** MEDIUM" in report
        assert "| Overall coverage | 66.67% |" in report
        assert "## Domain Maturity" in report
        assert "### 1. CC6.2: User registration and authorization [HIGH]" in report
        assert "- Provide evidence for: access-review, provisioning-log" in report
        assert "| SOC2-CC6.1 | CTRL-SSO | direct | 100% | 1.00 | Proposed |" in report

    def test_without_mappings_table(self, soc2, mappings):
        report = generate_gap_report(analyze_gaps("acme", soc2, mappings))
        assert "## Mappings" not in report
        assert "**Framework:** SOC2-2017" in report
