"""controlmap (cmap) - map controls to compliance frameworks and report gaps.

State lives in <project>/.controlmap/: frameworks/ (YAML definitions),
controls.yaml (the control registry export), state.json (mappings and gaps).
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
from rich.console import Console

from ..core.config import CONFIG_DIR

console = Console()

STATE_FILE = "state.json"


def _state_path(project_path: Path) -> Path:
    return project_path / CONFIG_DIR / STATE_FILE


def _build_service(
    project_path: Path,
    frameworks_dir: str | None = None,
    controls: str | None = None,
    overrides: dict | None = None,
):
    from ..catalog.loader import FrameworkCatalog
    from ..catalog.registry import YamlControlRegistry
    from ..core.config import get_effective_config
    from ..core.service import ComplianceService
    from ..core.store import MappingStore

    config = get_effective_config(project_path, overrides)
    catalog = FrameworkCatalog(Path(frameworks_dir) if frameworks_dir else project_path / CONFIG_DIR / "frameworks")
    registry = YamlControlRegistry(Path(controls) if controls else project_path / CONFIG_DIR / "controls.yaml")
    store = MappingStore.load(_state_path(project_path))
    return ComplianceService(catalog, registry, store=store, config=config)


@click.group()
def cmap_cli() -> None:
    """controlmap - compliance control mapping and gap analysis."""


@cmap_cli.command("map")
@click.option("--project", "-p", type=click.Path(exists=True), required=True, help="Project path")
@click.option("--org", "-o", "organization", required=True, help="Organization id")
@click.option("--framework", "-f", "framework_id", required=True, help="Framework id")
@click.option("--frameworks-dir", type=click.Path(exists=True, file_okay=False), help="Framework YAML directory")
@click.option("--controls", "-c", type=click.Path(exists=True, dir_okay=False), help="Controls YAML file")
@click.option("--strategy", type=click.Choice(["evidence", "keyword"]), help="Scoring strategy")
@click.option("--timeout", type=int, help="Job timeout in seconds")
def map_command(
    project: str,
    organization: str,
    framework_id: str,
    frameworks_dir: str | None,
    controls: str | None,
    strategy: str | None,
    timeout: int | None,
) -> None:
    """Run a mapping job and re-analyze gaps.

    Example: cmap map -p ./repo -o acme -f SOC2-2017
    """
    from ..models.job import JobState

    overrides: dict = {}
    if strategy:
        overrides["scoring"] = {"strategy": strategy}
    if timeout:
        overrides["coordinator"] = {"timeout_seconds": timeout}

    project_path = Path(project)
    try:
        service = _build_service(project_path, frameworks_dir, controls, overrides)
    except ValueError as e:
        console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(1)

    async def _run():
        handle = await service.trigger_mapping(organization, framework_id)
        return await service.wait_for_job(handle.job_id)

    try:
        status = asyncio.run(_run())
    finally:
        service.coordinator.shutdown()

    if status.state != JobState.COMPLETED:
        console.print(f"  [red]ERROR[/red] Job {status.job_id} {status.state.value}: {status.failure_reason}")
        sys.exit(1)

    service.store.save(_state_path(project_path))
    result = service.get_gap_analysis(organization, framework_id)
    for error in status.errors:
        target = error.control_id or ""
        if error.requirement_id:
            target = f"{target} -> {error.requirement_id}" if target else error.requirement_id
        console.print(f"  [yellow]WARN[/yellow] [{error.stage}] {target}: {error.message}")

    console.print(
        f"  [green]OK[/green] {status.mappings_committed} mapping(s), "
        f"coverage {result.overall_coverage:g}%, {len(result.open_gaps)} open gap(s)"
    )


@cmap_cli.command()
@click.option("--project", "-p", type=click.Path(exists=True), required=True, help="Project path")
@click.option("--org", "-o", "organization", required=True, help="Organization id")
@click.option("--framework", "-f", "framework_id", required=True, help="Framework id")
@click.option("--frameworks-dir", type=click.Path(exists=True, file_okay=False))
@click.option("--controls", "-c", type=click.Path(exists=True, dir_okay=False))
@click.option("--output-format", "--format", "output_format", type=click.Choice(["markdown", "json", "junit"]), default="markdown")
@click.option("--output", type=click.Path(dir_okay=False), help="Write the report to a file")
@click.option("--ci", is_flag=True, help="CI mode: exit 2 on critical gaps")
def gaps(
    project: str,
    organization: str,
    framework_id: str,
    frameworks_dir: str | None,
    controls: str | None,
    output_format: str,
    output: str | None,
    ci: bool,
) -> None:
    """Print or export the gap analysis.

    Example: cmap gaps -p ./repo -o acme -f SOC2-2017 --format junit --ci
    """
    from ..errors import ControlMapError
    from ..formatters.junit import export_junit_results
    from ..formatters.report import generate_gap_report, get_exit_code

    project_path = Path(project)
    service = _build_service(project_path, frameworks_dir, controls)
    try:
        result = service.get_gap_analysis(organization, framework_id)
        framework = service.catalog.get_framework(framework_id)
    except ControlMapError as e:
        console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(1)

    if output_format == "junit":
        out = Path(output) if output else project_path / CONFIG_DIR / "reports" / f"gaps-{framework_id}.xml"
        summary = export_junit_results(result, out)
        console.print(
            f"  [green]OK[/green] JUnit: {summary['path']} "
            f"({summary['failures']} failing of {summary['total_tests']})"
        )
    else:
        if output_format == "json":
            text = result.model_dump_json(indent=2)
        else:
            text = generate_gap_report(
                result,
                service.get_mappings(organization, framework_id),
                framework_name=f"{framework.name} {framework.version}".strip(),
            )
        if output:
            Path(output).write_text(text, encoding="utf-8")
            console.print(f"  [green]OK[/green] Report: {output}")
        else:
            click.echo(text)

    if ci:
        sys.exit(get_exit_code(result))


@cmap_cli.command()
@click.option("--project", "-p", type=click.Path(exists=True), required=True, help="Project path")
@click.argument("mapping_id")
@click.option("--by", "verified_by", required=True, help="Reviewer name")
def verify(project: str, mapping_id: str, verified_by: str) -> None:
    """Confirm a proposed mapping.

    Example: cmap verify map:acme:SOC2-2017:CTRL-1:SOC2-CC6.1:r1 -p ./repo --by alice
    """
    from ..core.store import MappingStore
    from ..errors import MappingNotFoundError

    state_path = _state_path(Path(project))
    store = MappingStore.load(state_path)
    try:
        mapping = store.verify(mapping_id, verified_by)
    except MappingNotFoundError:
        console.print(f"  [red]ERROR[/red] Mapping not found: {mapping_id}")
        sys.exit(1)
    except ValueError as e:
        console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(1)

    store.save(state_path)
    click.echo(f"Verified {mapping.id} by {verified_by}")


@cmap_cli.command()
@click.option("--project", "-p", type=click.Path(exists=True), required=True, help="Project path")
@click.option("--org", "-o", "organization", required=True, help="Organization id")
@click.option("--framework", "-f", "framework_id", help="Framework id (default: all)")
@click.option("--history", is_flag=True, help="Include superseded and retired rows")
def mappings(project: str, organization: str, framework_id: str | None, history: bool) -> None:
    """List committed mappings."""
    from ..core.store import MappingStore

    store = MappingStore.load(_state_path(Path(project)))
    rows = store.list_mappings(organization, framework_id, include_history=history)
    if not rows:
        click.echo("No mappings.")
        return
    for m in rows:
        review = " (review)" if m.needs_review else ""
        click.echo(
            f"{m.id}  {m.mapping_type.value:<12} {m.coverage:>6g}%  "
            f"{m.confidence:.2f}  {m.status.value}{review}"
        )


def main() -> None:
    cmap_cli()


if __name__ == "__main__":
    main()
