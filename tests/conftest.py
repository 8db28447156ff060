"""Shared fixtures for controlmap tests."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from controlmap.catalog.loader import FrameworkCatalog
from controlmap.catalog.registry import InMemoryControlRegistry
from controlmap.core.config import DEFAULT_CONFIG
from controlmap.models.control import Control
from controlmap.models.framework import (
    AssessmentFrequency,
    ComplianceFramework,
    ComplianceRequirement,
    FrameworkDomain,
    Priority,
)

FRAMEWORK_YAML = """\
id: SOC2-2017
name: SOC 2
version: "2017"
domains:
  - id: CC6
    name: Logical and Physical Access
    weight: 2
    requirements:
      - id: SOC2-CC6.1
        code: CC6.1
        title: Logical access security
        category: IAM
        priority: critical
        mandatory: true
        frequency: quarterly
        required_dimensions: [sso-config, mfa-policy]
      - id: SOC2-CC6.2
        code: CC6.2
        title: User registration and authorization
        category: access-control
        priority: high
        mandatory: true
        required_dimensions: [access-review, provisioning-log]
  - id: CC7
    name: System Operations
    weight: 1
    requirements:
      - id: SOC2-CC7.2
        code: CC7.2
        title: Security event monitoring
        category: monitoring
        priority: medium
        mandatory: false
        frequency: continuous
        required_dimensions: [log-retention, alerting, siem-config, anomaly-detection]
"""

CONTROLS_YAML = """\
organizations:
  acme:
    - id: CTRL-SSO
      name: Enforce SSO
      category: IAM
      type: preventive
      description: All workforce logins go through the identity provider with MFA.
      evidence_dimensions: [sso-config, mfa-policy]
    - id: CTRL-SIEM
      name: SIEM alerting
      category: monitoring
      type: detective
      description: Security alerts are raised from the SIEM.
      evidence_dimensions: [siem-config, alerting]
    - id: CTRL-LOG
      name: Log retention
      category: logging
      type: detective
      description: Logs are retained for one year and scanned for anomalies.
      evidence_dimensions: [log-retention, anomaly-detection]
"""


@pytest.fixture
def config() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def sso_control() -> Control:
    return Control(
        id="CTRL-SSO",
        organization_id="acme",
        name="Enforce SSO",
        category="IAM",
        type="preventive",
        description="All workforce logins go through the identity provider with MFA.",
        evidence_dimensions=["sso-config", "mfa-policy"],
    )


@pytest.fixture
def siem_control() -> Control:
    return Control(
        id="CTRL-SIEM",
        organization_id="acme",
        name="SIEM alerting",
        category="monitoring",
        type="detective",
        description="Security alerts are raised from the SIEM.",
        evidence_dimensions=["siem-config", "alerting"],
    )


@pytest.fixture
def log_control() -> Control:
    return Control(
        id="CTRL-LOG",
        organization_id="acme",
        name="Log retention",
        category="logging",
        type="detective",
        description="Logs are retained for one year and scanned for anomalies.",
        evidence_dimensions=["log-retention", "anomaly-detection"],
    )


@pytest.fixture
def controls(sso_control, siem_control, log_control) -> list[Control]:
    return [sso_control, siem_control, log_control]


@pytest.fixture
def cc61() -> ComplianceRequirement:
    return ComplianceRequirement(
        id="SOC2-CC6.1",
        framework_id="SOC2-2017",
        domain_id="CC6",
        code="CC6.1",
        title="Logical access security",
        category="IAM",
        priority=Priority.CRITICAL,
        mandatory=True,
        frequency=AssessmentFrequency.QUARTERLY,
        required_dimensions=["sso-config", "mfa-policy"],
    )


@pytest.fixture
def cc62() -> ComplianceRequirement:
    return ComplianceRequirement(
        id="SOC2-CC6.2",
        framework_id="SOC2-2017",
        domain_id="CC6",
        code="CC6.2",
        title="User registration and authorization",
        category="access-control",
        priority=Priority.HIGH,
        mandatory=True,
        required_dimensions=["access-review", "provisioning-log"],
    )


@pytest.fixture
def cc72() -> ComplianceRequirement:
    return ComplianceRequirement(
        id="SOC2-CC7.2",
        framework_id="SOC2-2017",
        domain_id="CC7",
        code="CC7.2",
        title="Security event monitoring",
        category="monitoring",
        priority=Priority.MEDIUM,
        mandatory=False,
        frequency=AssessmentFrequency.CONTINUOUS,
        required_dimensions=["log-retention", "alerting", "siem-config", "anomaly-detection"],
    )


@pytest.fixture
def soc2(cc61, cc62, cc72) -> ComplianceFramework:
    return ComplianceFramework(
        id="SOC2-2017",
        name="SOC 2",
        version="2017",
        domains=(
            FrameworkDomain(id="CC6", name="Logical and Physical Access", weight=2),
            FrameworkDomain(id="CC7", name="System Operations", weight=1),
        ),
        requirements=(cc61, cc62, cc72),
    )


@pytest.fixture
def catalog(soc2) -> FrameworkCatalog:
    catalog = FrameworkCatalog()
    catalog.add(soc2)
    return catalog


@pytest.fixture
def registry(controls) -> InMemoryControlRegistry:
    return InMemoryControlRegistry(controls)


@pytest.fixture
def cmap_project(tmp_path: Path) -> Path:
    """Create a project with .controlmap/ holding one framework and the controls."""
    project = tmp_path / "test-project"
    frameworks = project / ".controlmap" / "frameworks"
    frameworks.mkdir(parents=True)
    (frameworks / "soc2.yaml").write_text(FRAMEWORK_YAML, encoding="utf-8")
    (project / ".controlmap" / "controls.yaml").write_text(CONTROLS_YAML, encoding="utf-8")
    return project
