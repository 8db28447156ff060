"""Tests for CLI entry points."""

from __future__ import annotations

import json
from pathlib import Path
from xml.etree import ElementTree as ET

from click.testing import CliRunner

from controlmap.cli.cmap import cmap_cli
from controlmap.core.store import MappingStore
from controlmap.models.mapping import MappingStatus

SSO_MAPPING = "map:acme:SOC2-2017:CTRL-SSO:SOC2-CC6.1:r1"


def _map(project: Path, *extra: str):
    runner = CliRunner()
    return runner.invoke(cmap_cli, ["map", "-p", str(project), "-o", "acme", "-f", "SOC2-2017", *extra])


class TestMapCommand:
    def test_requires_project(self):
        runner = CliRunner()
        result = runner.invoke(cmap_cli, ["map", "-o", "acme", "-f", "SOC2-2017"])
        assert result.exit_code == 2
        assert "Missing" in result.output

    def test_map_persists_state(self, cmap_project: Path):
        result = _map(cmap_project)
        assert result.exit_code == 0, result.output

        store = MappingStore.load(cmap_project / ".controlmap" / "state.json")
        assert len(store.list_mappings("acme", "SOC2-2017")) == 3
        assert store.get_gap_analysis("acme", "SOC2-2017") is not None

    def test_unknown_framework_exits_1(self, cmap_project: Path):
        runner = CliRunner()
        result = runner.invoke(cmap_cli, ["map", "-p", str(cmap_project), "-o", "acme", "-f", "PCI-DSS-4"])
        assert result.exit_code == 1
        assert not (cmap_project / ".controlmap" / "state.json").exists()

    def test_keyword_strategy(self, cmap_project: Path):
        assert _map(cmap_project, "--strategy", "keyword").exit_code == 0


class TestGapsCommand:
    def test_json_output(self, cmap_project: Path):
        _map(cmap_project)
        runner = CliRunner()
        result = runner.invoke(
            cmap_cli,
            ["gaps", "-p", str(cmap_project), "-o", "acme", "-f", "SOC2-2017", "--format", "json"],
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["overall_coverage"] == 66.67

    def test_markdown_to_file(self, cmap_project: Path, tmp_path: Path):
        _map(cmap_project)
        out = tmp_path / "report.md"
        runner = CliRunner()
        result = runner.invoke(
            cmap_cli,
            ["gaps", "-p", str(cmap_project), "-o", "acme", "-f", "SOC2-2017", "--output", str(out)],
        )
        assert result.exit_code == 0
        assert out.read_text(encoding="utf-8").startswith("# Gap Analysis Report")

    def test_junit_export(self, cmap_project: Path):
        _map(cmap_project)
        runner = CliRunner()
        result = runner.invoke(
            cmap_cli,
            ["gaps", "-p", str(cmap_project), "-o", "acme", "-f", "SOC2-2017", "--format", "junit"],
        )
        assert result.exit_code == 0
        out = cmap_project / ".controlmap" / "reports" / "gaps-SOC2-2017.xml"
        assert ET.parse(out).getroot().get("failures") == "1"

    def test_ci_exit_code_on_critical(self, cmap_project: Path):
        # No mapping job yet: the critical CC6.1 requirement is fully missing.
        runner = CliRunner()
        result = runner.invoke(
            cmap_cli,
            ["gaps", "-p", str(cmap_project), "-o", "acme", "-f", "SOC2-2017", "--format", "json", "--ci"],
        )
        assert result.exit_code == 2

    def test_ci_passes_without_critical(self, cmap_project: Path):
        _map(cmap_project)
        runner = CliRunner()
        result = runner.invoke(
            cmap_cli,
            ["gaps", "-p", str(cmap_project), "-o", "acme", "-f", "SOC2-2017", "--format", "json", "--ci"],
        )
        assert result.exit_code == 0


class TestVerifyCommand:
    def test_verify(self, cmap_project: Path):
        _map(cmap_project)
        runner = CliRunner()
        result = runner.invoke(cmap_cli, ["verify", SSO_MAPPING, "-p", str(cmap_project), "--by", "alice"])
        assert result.exit_code == 0
        assert "Verified" in result.output

        store = MappingStore.load(cmap_project / ".controlmap" / "state.json")
        assert store.get_mapping(SSO_MAPPING).status == MappingStatus.VERIFIED

    def test_verify_unknown(self, cmap_project: Path):
        runner = CliRunner()
        result = runner.invoke(cmap_cli, ["verify", "map:nope", "-p", str(cmap_project), "--by", "alice"])
        assert result.exit_code == 1


class TestMappingsCommand:
    def test_lists_mappings(self, cmap_project: Path):
        _map(cmap_project)
        runner = CliRunner()
        result = runner.invoke(cmap_cli, ["mappings", "-p", str(cmap_project), "-o", "acme"])
        assert result.exit_code == 0
        assert SSO_MAPPING in result.output
        assert "direct" in result.output

    def test_empty(self, cmap_project: Path):
        runner = CliRunner()
        result = runner.invoke(cmap_cli, ["mappings", "-p", str(cmap_project), "-o", "acme"])
        assert "No mappings." in result.output
