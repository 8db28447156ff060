"""Tests for core/service.py."""

from __future__ import annotations

import pytest

from controlmap.core.service import ComplianceService
from controlmap.errors import CatalogUnavailableError, MappingNotFoundError
from controlmap.models.control import ControlChanged, FrameworkVersionPublished, RequirementChanged
from controlmap.models.framework import ComplianceFramework
from controlmap.models.gap import GapStatus
from controlmap.models.job import JobState
from controlmap.models.mapping import MappingStatus

SSO_MAPPING = "map:acme:SOC2-2017:CTRL-SSO:SOC2-CC6.1:r1"


@pytest.fixture
def service(catalog, registry, config):
    service = ComplianceService(catalog, registry, config=config)
    yield service
    service.coordinator.shutdown()


async def _map(service: ComplianceService, framework_id: str = "SOC2-2017"):
    handle = await service.trigger_mapping("acme", framework_id)
    return await service.wait_for_job(handle.job_id, timeout=5)


async def _settle(service: ComplianceService, statuses):
    return [await service.wait_for_job(s.job_id, timeout=5) for s in statuses]


class TestReads:
    @pytest.mark.asyncio
    async def test_mappings_and_gaps(self, service):
        status = await _map(service)
        assert status.state == JobState.COMPLETED

        mappings = service.get_mappings("acme", "SOC2-2017")
        assert [m.id for m in mappings][0] == SSO_MAPPING
        result = service.get_gap_analysis("acme", "SOC2-2017")
        assert result.overall_coverage == 66.67

    @pytest.mark.asyncio
    async def test_aggregate_coverage(self, service):
        await _map(service)
        coverage = service.aggregate_coverage("acme", "SOC2-2017", "SOC2-CC7.2")
        assert coverage.aggregate_coverage == 100.0
        assert coverage.control_ids == ("CTRL-LOG", "CTRL-SIEM")

        with pytest.raises(KeyError):
            service.aggregate_coverage("acme", "SOC2-2017", "SOC2-CC9.9")

    def test_gap_analysis_without_job(self, service):
        result = service.get_gap_analysis("acme", "SOC2-2017")
        assert result.overall_coverage == 0.0
        assert all(g.status == GapStatus.OPEN for g in result.gaps)

    def test_unknown_framework(self, service):
        with pytest.raises(CatalogUnavailableError):
            service.get_gap_analysis("acme", "PCI-DSS-4")


class TestVerify:
    @pytest.mark.asyncio
    async def test_verify_mapping(self, service):
        await _map(service)
        mapping = service.verify_mapping(SSO_MAPPING, "alice")
        assert mapping.status == MappingStatus.VERIFIED
        assert mapping.verified_by == "alice"
        assert mapping.verified_at is not None

    def test_verify_unknown(self, service):
        with pytest.raises(MappingNotFoundError):
            service.verify_mapping("map:acme:SOC2-2017:nope:nope:r1", "alice")

    @pytest.mark.asyncio
    async def test_gap_workflow(self, service):
        await _map(service)
        result = service.update_gap_status("acme", "SOC2-2017", "SOC2-CC6.2", GapStatus.IN_REMEDIATION)
        gap = next(g for g in result.gaps if g.requirement_id == "SOC2-CC6.2")
        assert gap.status == GapStatus.IN_REMEDIATION


class TestControlChanged:
    @pytest.mark.asyncio
    async def test_removed_control_reopens_gap(self, service, registry):
        await _map(service)
        assert _gap(service, "SOC2-CC6.1").status == GapStatus.RESOLVED

        registry.remove("acme", "CTRL-SSO")
        statuses = await service.handle_control_changed(ControlChanged(control_id="CTRL-SSO", organization_id="acme"))

        assert statuses == []
        assert service.store.get_mapping(SSO_MAPPING).status == MappingStatus.RETIRED
        gap = _gap(service, "SOC2-CC6.1")
        assert gap.status == GapStatus.REOPENED
        assert gap.missing_coverage == 100.0

    @pytest.mark.asyncio
    async def test_unchanged_edit_keeps_verification(self, service, registry, sso_control):
        await _map(service)
        service.verify_mapping(SSO_MAPPING, "alice")

        registry.put(sso_control.model_copy(update={"description": "SSO with hardware keys."}))
        statuses = await service.handle_control_changed(ControlChanged(control_id="CTRL-SSO", organization_id="acme"))
        assert service.store.get_mapping(SSO_MAPPING).status == MappingStatus.STALE

        done = await _settle(service, statuses)
        assert [s.state for s in done] == [JobState.COMPLETED]
        assert done[0].pairs_total == 2
        assert service.store.get_mapping(SSO_MAPPING).status == MappingStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_weaker_control_supersedes(self, service, registry, sso_control):
        await _map(service)
        service.verify_mapping(SSO_MAPPING, "alice")

        registry.put(sso_control.model_copy(update={"evidence_dimensions": frozenset({"sso-config"})}))
        statuses = await service.handle_control_changed(ControlChanged(control_id="CTRL-SSO", organization_id="acme"))
        await _settle(service, statuses)

        assert service.store.get_mapping(SSO_MAPPING).status == MappingStatus.SUPERSEDED
        new = service.store.get_mapping("map:acme:SOC2-2017:CTRL-SSO:SOC2-CC6.1:r2")
        assert new.status == MappingStatus.PROPOSED
        assert new.coverage == 50.0
        assert _gap(service, "SOC2-CC6.1").status == GapStatus.REOPENED


class TestRequirementChanged:
    @pytest.mark.asyncio
    async def test_requirement_rescored(self, service):
        await _map(service)
        statuses = await service.handle_requirement_changed(
            RequirementChanged(framework_id="SOC2-2017", requirement_id="SOC2-CC7.2")
        )
        assert len(statuses) == 1

        done = await _settle(service, statuses)
        assert done[0].pairs_total == 2
        assert all(m.status == MappingStatus.PROPOSED for m in service.get_mappings("acme", "SOC2-2017"))

    @pytest.mark.asyncio
    async def test_untracked_framework_ignored(self, service):
        statuses = await service.handle_requirement_changed(
            RequirementChanged(framework_id="SOC2-2017", requirement_id="SOC2-CC7.2")
        )
        assert statuses == []


class TestFrameworkVersionPublished:
    @pytest.mark.asyncio
    async def test_new_version_mapped(self, service, catalog, soc2):
        await _map(service)
        catalog.add(ComplianceFramework(
            id="SOC2-2022",
            name=soc2.name,
            version="2022",
            domains=soc2.domains,
            requirements=tuple(
                r.model_copy(update={"id": r.id.replace("SOC2-", "SOC2-2022-"), "framework_id": "SOC2-2022"})
                for r in soc2.requirements
            ),
            supersedes="SOC2-2017",
        ))

        statuses = await service.handle_framework_version_published(
            FrameworkVersionPublished(previous_framework_id="SOC2-2017", framework_id="SOC2-2022")
        )
        done = await _settle(service, statuses)

        assert [s.framework_id for s in done] == ["SOC2-2022"]
        assert len(service.get_mappings("acme", "SOC2-2022")) == 3
        assert len(service.get_mappings("acme", "SOC2-2017")) == 3

    @pytest.mark.asyncio
    async def test_new_version_reusing_requirement_ids(self, service, catalog, soc2):
        await _map(service)
        service.verify_mapping(SSO_MAPPING, "alice")
        catalog.add(soc2.model_copy(update={
            "id": "SOC2-2022",
            "version": "2022",
            "requirements": tuple(r.model_copy(update={"framework_id": "SOC2-2022"}) for r in soc2.requirements),
            "supersedes": "SOC2-2017",
        }))

        statuses = await service.handle_framework_version_published(
            FrameworkVersionPublished(previous_framework_id="SOC2-2017", framework_id="SOC2-2022")
        )
        done = await _settle(service, statuses)

        assert done[0].state == JobState.COMPLETED
        newer = service.get_mappings("acme", "SOC2-2022")
        assert len(newer) == 3
        assert all(m.framework_id == "SOC2-2022" and m.status == MappingStatus.PROPOSED for m in newer)
        assert service.get_gap_analysis("acme", "SOC2-2022").overall_coverage == 66.67

        assert len(service.get_mappings("acme", "SOC2-2017")) == 3
        assert service.store.get_mapping(SSO_MAPPING).status == MappingStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_unknown_version_raises(self, service):
        with pytest.raises(CatalogUnavailableError):
            await service.handle_framework_version_published(
                FrameworkVersionPublished(previous_framework_id="SOC2-2017", framework_id="SOC2-2030")
            )


def _gap(service: ComplianceService, requirement_id: str):
    result = service.get_gap_analysis("acme", "SOC2-2017")
    return next(g for g in result.gaps if g.requirement_id == requirement_id)
