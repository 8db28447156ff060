"""JUnit XML formatter for CI/CD integration.

Each requirement becomes a testcase, grouped into one testsuite per domain.
A gap whose severity is in ``fail_on`` is reported as a failure.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from xml.dom import minidom
from xml.etree import ElementTree as ET

from ..models.gap import GapAnalysisResult


def export_junit_results(
    result: GapAnalysisResult,
    output_path: Path,
    fail_on: list[str] | None = None,
    duration: float = 0,
) -> dict:
    """Export a gap analysis as JUnit XML.

    Args:
        result: Gap analysis for one organization x framework.
        output_path: Path to write the XML file.
        fail_on: Gap severities to mark as failures. Default: critical, high.
        duration: Total duration in seconds.

    Returns:
        Dict with: path, total_tests, failures, passed.
    """
    if fail_on is None:
        fail_on = ["critical", "high"]
    fail_set = {s.lower() for s in fail_on}

    testsuites = ET.Element("testsuites")
    testsuites.set("name", f"{result.organization_id} / {result.framework_id}")
    analyzed_at = result.analyzed_at or datetime.now(timezone.utc)
    testsuites.set("timestamp", analyzed_at.strftime("%Y-%m-%dT%H:%M:%S"))

    by_domain: dict[str, list] = {}
    for gap in result.gaps:
        by_domain.setdefault(gap.domain_id or "general", []).append(gap)

    total_tests = 0
    total_failures = 0

    for domain_id, gaps in sorted(by_domain.items()):
        testsuite = ET.SubElement(testsuites, "testsuite")
        testsuite.set("name", domain_id)
        testsuite.set("tests", str(len(gaps)))

        suite_failures = 0

        for gap in gaps:
            total_tests += 1

            testcase = ET.SubElement(testsuite, "testcase")
            testcase.set("name", f"{gap.requirement_code or gap.requirement_id}: {gap.requirement_title}")
            testcase.set("classname", f"{result.framework_id}.{domain_id}")

            severity = gap.severity.value
            if severity in fail_set:
                total_failures += 1
                suite_failures += 1

                failure = ET.SubElement(testcase, "failure")
                failure.set("message", f"[{severity.upper()}] {gap.missing_coverage:g}% missing")
                failure.set("type", severity)

                text_parts = [
                    f"Severity: {severity}",
                    f"Coverage: {gap.aggregate_coverage:g}%",
                    f"Status: {gap.status.value}",
                ]
                if gap.missing_dimensions:
                    text_parts.append(f"Missing evidence: {', '.join(gap.missing_dimensions)}")
                if gap.recommended_actions:
                    text_parts.append("\nRemediation:\n" + "\n".join(f"- {a}" for a in gap.recommended_actions))

                failure.text = "\n".join(text_parts)

        testsuite.set("failures", str(suite_failures))
        testsuite.set("errors", "0")
        testsuite.set("skipped", "0")

    testsuites.set("tests", str(total_tests))
    testsuites.set("failures", str(total_failures))
    testsuites.set("errors", "0")
    if duration > 0:
        testsuites.set("time", str(round(duration, 2)))

    output_path.parent.mkdir(parents=True, exist_ok=True)

    # Pretty-print XML
    rough = ET.tostring(testsuites, encoding="unicode")
    dom = minidom.parseString(rough)
    xml_str = dom.toprettyxml(indent="  ", encoding="UTF-8")
    output_path.write_bytes(xml_str)

    return {
        "path": str(output_path),
        "total_tests": total_tests,
        "failures": total_failures,
        "passed": total_tests - total_failures,
    }
