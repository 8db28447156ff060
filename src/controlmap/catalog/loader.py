"""Framework catalog backed by YAML definitions.

Each file under the frameworks directory describes one framework version:
domains with weights, and the requirements nested under each domain.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError
from rich.console import Console

from ..errors import CatalogUnavailableError
from ..models.framework import ComplianceFramework, ComplianceRequirement, FrameworkDomain
from ..models.job import PairError

console = Console(stderr=True)


def get_available_frameworks(frameworks_dir: Path) -> list[dict]:
    """Get summaries of all framework files in a directory."""
    frameworks: list[dict] = []

    if not frameworks_dir.exists():
        return frameworks

    for yaml_file in sorted(frameworks_dir.rglob("*.yaml")):
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            console.print(f"  [yellow]WARN[/yellow] Unreadable framework file {yaml_file.name}: {e}")
            continue
        if content and content.get("id"):
            frameworks.append({
                "id": content["id"],
                "name": content.get("name", ""),
                "version": str(content.get("version", "")),
                "supersedes": content.get("supersedes"),
                "path": str(yaml_file),
            })

    return frameworks


def parse_framework(data: dict, errors: Optional[list[PairError]] = None) -> ComplianceFramework:
    """Build a framework from its YAML structure.

    Malformed requirements are skipped and reported; the rest of the
    framework still loads.
    """
    framework_id = data.get("id", "")
    domains: list[FrameworkDomain] = []
    requirements: list[ComplianceRequirement] = []

    for domain in data.get("domains", []) or []:
        domain_id = domain.get("id", "")
        domains.append(FrameworkDomain(
            id=domain_id,
            name=domain.get("name", ""),
            weight=domain.get("weight", 1.0),
        ))
        for raw in domain.get("requirements", []) or []:
            fields = raw if isinstance(raw, dict) else {}
            record = {"domain_id": domain_id, **fields, "framework_id": framework_id}
            try:
                requirements.append(ComplianceRequirement(**record))
            except ValidationError as e:
                req_id = fields.get("id")
                console.print(
                    f"  [yellow]WARN[/yellow] Skipping malformed requirement "
                    f"{req_id or '?'} in {framework_id}: {e.error_count()} error(s)"
                )
                if errors is not None:
                    errors.append(PairError(
                        stage="validation",
                        requirement_id=req_id,
                        message=f"invalid requirement record: {e.errors()[0]['msg']}",
                    ))

    return ComplianceFramework(
        id=framework_id,
        name=data.get("name", ""),
        version=str(data.get("version", "")),
        description=data.get("description", ""),
        domains=tuple(domains),
        requirements=tuple(requirements),
        supersedes=data.get("supersedes"),
    )


class FrameworkCatalog:
    """Read-only, versioned framework definitions.

    Frameworks can come from a directory of YAML files, be registered in
    memory, or both.
    """

    def __init__(self, frameworks_dir: Optional[Path] = None):
        self.frameworks_dir = frameworks_dir
        self._frameworks: dict[str, ComplianceFramework] = {}
        self._paths: dict[str, str] = {}
        if frameworks_dir is not None:
            for summary in get_available_frameworks(frameworks_dir):
                self._paths[summary["id"]] = summary["path"]

    def add(self, framework: ComplianceFramework) -> None:
        existing = self._frameworks.get(framework.id)
        if existing is not None and existing != framework:
            raise ValueError(
                f"Framework {framework.id} is already defined; publish a new version id instead"
            )
        self._frameworks[framework.id] = framework

    def list_frameworks(self) -> list[str]:
        return sorted(set(self._frameworks) | set(self._paths))

    def get_framework(self, framework_id: str) -> ComplianceFramework:
        framework = self._frameworks.get(framework_id)
        if framework is not None:
            return framework

        path = self._paths.get(framework_id)
        if path is None:
            raise CatalogUnavailableError(f"Framework not found: {framework_id}")
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise CatalogUnavailableError(f"Cannot read framework {framework_id}: {e}") from e

        framework = parse_framework(data or {})
        self._frameworks[framework_id] = framework
        return framework
