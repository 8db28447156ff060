"""Tests for catalog/."""

from __future__ import annotations

from pathlib import Path

import pytest

from controlmap.catalog.loader import FrameworkCatalog, get_available_frameworks, parse_framework
from controlmap.catalog.registry import InMemoryControlRegistry, YamlControlRegistry, validate_controls
from controlmap.errors import CatalogUnavailableError, RegistryUnavailableError
from controlmap.models.framework import AssessmentFrequency, Priority


class TestFrameworkCatalog:
    def test_lists_framework_files(self, cmap_project: Path):
        frameworks = get_available_frameworks(cmap_project / ".controlmap" / "frameworks")
        assert [f["id"] for f in frameworks] == ["SOC2-2017"]
        assert frameworks[0]["version"] == "2017"

    def test_loads_framework(self, cmap_project: Path):
        catalog = FrameworkCatalog(cmap_project / ".controlmap" / "frameworks")
        framework = catalog.get_framework("SOC2-2017")

        assert framework.requirement_ids == ["SOC2-CC6.1", "SOC2-CC6.2", "SOC2-CC7.2"]
        assert framework.get_domain("CC6").weight == 2
        cc61 = framework.get_requirement("SOC2-CC6.1")
        assert cc61.priority == Priority.CRITICAL
        assert cc61.frequency == AssessmentFrequency.QUARTERLY
        assert cc61.domain_id == "CC6"
        assert cc61.required_dimensions == frozenset({"sso-config", "mfa-policy"})

    def test_missing_framework(self, cmap_project: Path):
        catalog = FrameworkCatalog(cmap_project / ".controlmap" / "frameworks")
        with pytest.raises(CatalogUnavailableError):
            catalog.get_framework("PCI-DSS-4")

    def test_missing_directory(self, tmp_path: Path):
        assert FrameworkCatalog(tmp_path / "nope").list_frameworks() == []

    def test_published_definition_is_immutable(self, catalog, soc2):
        catalog.add(soc2)
        with pytest.raises(ValueError, match="new version"):
            catalog.add(soc2.model_copy(update={"name": "SOC 2 (edited)"}))

    def test_malformed_requirement_skipped(self):
        errors = []
        framework = parse_framework({
            "id": "F",
            "domains": [{
                "id": "D",
                "requirements": [
                    {"id": "R1", "priority": "high"},
                    {"id": "R2", "priority": "urgent"},
                    "not-a-mapping",
                ],
            }],
        }, errors)

        assert framework.requirement_ids == ["R1"]
        assert len(errors) == 2
        assert all(e.stage == "validation" for e in errors)


    def test_requirement_framework_id_follows_file(self):
        framework = parse_framework({
            "id": "F",
            "domains": [{"id": "D", "requirements": [{"id": "R1", "framework_id": "OTHER"}]}],
        })
        assert framework.get_requirement("R1").framework_id == "F"


class TestControlRegistry:
    def test_yaml_registry(self, cmap_project: Path):
        registry = YamlControlRegistry(cmap_project / ".controlmap" / "controls.yaml")
        controls = registry.list_controls("acme")
        assert [c.id for c in controls] == ["CTRL-LOG", "CTRL-SIEM", "CTRL-SSO"]
        assert registry.list_controls("globex") == []

    def test_unreadable_registry(self, tmp_path: Path):
        with pytest.raises(RegistryUnavailableError):
            YamlControlRegistry(tmp_path / "missing.yaml").list_controls("acme")

    def test_validate_skips_bad_records(self):
        errors = []
        controls = validate_controls(
            [
                {"id": "C1", "category": "IAM", "evidence_dimensions": ["SSO-Config"]},
                {"id": "", "category": "IAM"},
                {"id": "C1", "category": "duplicate"},
            ],
            "acme",
            errors,
        )
        assert [c.id for c in controls] == ["C1"]
        assert controls[0].evidence_dimensions == frozenset({"sso-config"})
        assert errors[0].stage == "validation"

    def test_in_memory_registry(self, sso_control):
        registry = InMemoryControlRegistry([sso_control])
        assert registry.list_controls("acme") == [sso_control]
        registry.remove("acme", "CTRL-SSO")
        assert registry.list_controls("acme") == []
