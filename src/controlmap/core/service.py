"""Compliance mapping service.

The surface other systems talk to: trigger mapping jobs, read committed
mappings and gap analyses, record human verification, and feed change
events from the control registry and the regulatory update feed.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console

from ..catalog.loader import FrameworkCatalog
from ..catalog.registry import ControlRegistry
from ..errors import CatalogUnavailableError
from ..models.control import ControlChanged, FrameworkVersionPublished, RequirementChanged
from ..models.gap import GapAnalysisResult, GapStatus
from ..models.job import JobScope, JobStatus
from ..models.mapping import ControlMapping
from ..scoring.base import SimilarityScorer
from .aggregator import RequirementCoverage, aggregate_coverage
from .config import DEFAULT_CONFIG
from .coordinator import RecomputationCoordinator
from .gaps import analyze_gaps
from .store import MappingStore

console = Console(stderr=True)


class ComplianceService:
    def __init__(
        self,
        catalog: FrameworkCatalog,
        registry: ControlRegistry,
        store: Optional[MappingStore] = None,
        scorer: Optional[SimilarityScorer] = None,
        config: Optional[dict] = None,
    ):
        self.catalog = catalog
        self.registry = registry
        self.store = store or MappingStore()
        self.config = config or DEFAULT_CONFIG
        self.coordinator = RecomputationCoordinator(
            catalog, registry, self.store, scorer=scorer, config=self.config
        )

    # -- jobs ------------------------------------------------------------------

    async def trigger_mapping(
        self,
        organization_id: str,
        framework_id: str,
        scope: Optional[JobScope] = None,
    ) -> JobStatus:
        return await self.coordinator.trigger(organization_id, framework_id, scope)

    def job_status(self, job_id: str) -> JobStatus:
        return self.coordinator.status(job_id)

    def cancel_job(self, job_id: str) -> bool:
        return self.coordinator.cancel(job_id)

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        return await self.coordinator.wait(job_id, timeout)

    def subscribe(self) -> asyncio.Queue:
        return self.coordinator.subscribe()

    # -- reads -----------------------------------------------------------------

    def get_mappings(
        self,
        organization_id: str,
        framework_id: str,
        include_history: bool = False,
    ) -> list[ControlMapping]:
        return self.store.list_mappings(organization_id, framework_id, include_history)

    def get_gap_analysis(self, organization_id: str, framework_id: str) -> GapAnalysisResult:
        """Latest analysis for the key; computed from committed mappings if none exists."""
        result = self.store.get_gap_analysis(organization_id, framework_id)
        if result is not None:
            return result
        return self._reanalyze(organization_id, framework_id)

    def aggregate_coverage(
        self,
        organization_id: str,
        framework_id: str,
        requirement_id: str,
    ) -> RequirementCoverage:
        framework = self.catalog.get_framework(framework_id)
        requirement = framework.get_requirement(requirement_id)
        if requirement is None:
            raise KeyError(f"Unknown requirement {requirement_id} in {framework_id}")
        return aggregate_coverage(requirement, self.store.list_mappings(organization_id, framework_id))

    # -- human workflow --------------------------------------------------------

    def verify_mapping(self, mapping_id: str, verified_by: str) -> ControlMapping:
        mapping = self.store.verify(mapping_id, verified_by)
        console.print(f"  [green]OK[/green] {mapping_id} verified by {verified_by}")
        return mapping

    def update_gap_status(
        self,
        organization_id: str,
        framework_id: str,
        requirement_id: str,
        status: GapStatus,
    ) -> GapAnalysisResult:
        if self.store.get_gap_analysis(organization_id, framework_id) is None:
            self._reanalyze(organization_id, framework_id)
        return self.store.update_gap_status(organization_id, framework_id, requirement_id, status)

    # -- change events ---------------------------------------------------------

    def _frameworks_for(self, organization_id: str) -> list[str]:
        return [fw for org, fw in self.store.tracked_keys() if org == organization_id]

    def _organizations_on(self, framework_id: str) -> list[str]:
        return [org for org, fw in self.store.tracked_keys() if fw == framework_id]

    def _reanalyze(
        self,
        organization_id: str,
        framework_id: str,
        requirement_ids: Optional[set[str]] = None,
    ) -> GapAnalysisResult:
        framework = self.catalog.get_framework(framework_id)
        result = analyze_gaps(
            organization_id,
            framework,
            self.store.list_mappings(organization_id, framework_id),
            controls=self.registry.list_controls(organization_id),
            previous=self.store.get_gap_analysis(organization_id, framework_id),
            requirement_ids=requirement_ids,
            config=self.config,
            generation=self.store.committed_generation(organization_id, framework_id),
            analyzed_at=datetime.now(timezone.utc),
        )
        self.store.put_gap_analysis(result)
        return result

    async def handle_control_changed(self, event: ControlChanged) -> list[JobStatus]:
        """React to a control edit or removal in the registry.

        A removed control has its mappings retired right away and the gaps it
        fed are re-analyzed. An edited control has its mappings marked Stale
        and is rescored against every requirement of each tracked framework.
        """
        org = event.organization_id
        present = any(c.id == event.control_id for c in self.registry.list_controls(org))

        if not present:
            retired = self.store.retire_control(org, event.control_id)
            by_framework: dict[str, set[str]] = {}
            for m in retired:
                by_framework.setdefault(m.framework_id, set()).add(m.requirement_id)
            for framework_id, requirement_ids in sorted(by_framework.items()):
                self._reanalyze(org, framework_id, requirement_ids)
            console.print(
                f"  [dim]{event.control_id} removed; retired {len(retired)} mapping(s)[/dim]"
            )
            return []

        self.store.mark_stale(org, control_id=event.control_id)
        scope = JobScope(control_ids=frozenset({event.control_id}))
        return [
            await self.trigger_mapping(org, framework_id, scope)
            for framework_id in self._frameworks_for(org)
        ]

    async def handle_requirement_changed(self, event: RequirementChanged) -> list[JobStatus]:
        scope = JobScope(requirement_ids=frozenset({event.requirement_id}))
        statuses = []
        for org in self._organizations_on(event.framework_id):
            self.store.mark_stale(org, requirement_id=event.requirement_id, framework_id=event.framework_id)
            statuses.append(await self.trigger_mapping(org, event.framework_id, scope))
        return statuses

    async def handle_framework_version_published(self, event: FrameworkVersionPublished) -> list[JobStatus]:
        """Map every organization on the previous version against the new one."""
        try:
            self.catalog.get_framework(event.framework_id)
        except CatalogUnavailableError:
            console.print(
                f"  [yellow]WARN[/yellow] {event.framework_id} published but not in the catalog yet"
            )
            raise
        return [
            await self.trigger_mapping(org, event.framework_id)
            for org in self._organizations_on(event.previous_framework_id)
        ]
