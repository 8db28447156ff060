"""Mapping and gap persistence.

Mapping rows are append-mostly: status transitions are recorded in an audit
log and superseded rows are kept. New mappings are staged per job
generation and become visible to readers only on commit, so readers always
see one fully committed generation per (organization, framework).
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from ..errors import MappingNotFoundError
from ..models.gap import GapAnalysisResult, GapStatus, StatusChange
from ..models.job import JobScope
from ..models.mapping import ControlMapping, MappingStatus, mapping_id

SNAPSHOT_VERSION = "1.1.0"

RowKey = tuple[str, str, str, str]


def _row_key(mapping: ControlMapping) -> RowKey:
    return (mapping.organization_id, mapping.framework_id, mapping.control_id, mapping.requirement_id)


class StatusTransition(BaseModel):
    mapping_id: str
    from_status: MappingStatus
    to_status: MappingStatus
    at: datetime
    reason: str = ""
    actor: Optional[str] = None


class StagedGeneration:
    """Mappings produced by one job generation, not yet visible to readers."""

    def __init__(self, organization_id: str, framework_id: str, generation: int, scope: JobScope):
        self.organization_id = organization_id
        self.framework_id = framework_id
        self.generation = generation
        self.scope = scope
        self.mappings: dict[tuple[str, str], ControlMapping] = {}

    def upsert(self, mapping: ControlMapping) -> None:
        # Each pair has exactly one writer per generation, so last write wins.
        self.mappings[mapping.pair] = mapping


class CommitSummary(BaseModel):
    generation: int
    created: int = 0
    unchanged: int = 0
    superseded: int = 0
    retired: int = 0
    affected_requirements: set[str] = set()


class MappingStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._rows: dict[str, ControlMapping] = {}
        self._active: dict[RowKey, str] = {}
        self._revisions: dict[RowKey, int] = {}
        self._transitions: list[StatusTransition] = []
        self._committed: dict[tuple[str, str], int] = {}
        self._gaps: dict[tuple[str, str], GapAnalysisResult] = {}

    # -- reads ---------------------------------------------------------------

    def committed_generation(self, organization_id: str, framework_id: str) -> int:
        with self._lock:
            return self._committed.get((organization_id, framework_id), 0)

    def tracked_keys(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._committed)

    def get_mapping(self, mapping_id_: str) -> ControlMapping:
        with self._lock:
            mapping = self._rows.get(mapping_id_)
        if mapping is None:
            raise MappingNotFoundError(mapping_id_)
        return mapping

    def list_mappings(
        self,
        organization_id: str,
        framework_id: Optional[str] = None,
        include_history: bool = False,
    ) -> list[ControlMapping]:
        with self._lock:
            rows = [
                m for m in self._rows.values()
                if m.organization_id == organization_id
                and (framework_id is None or m.framework_id == framework_id)
                and (include_history or m.is_active)
            ]
        return sorted(rows, key=lambda m: (m.requirement_id, m.control_id, m.revision))

    def mapped_elsewhere(self, organization_id: str, framework_id: str) -> frozenset[tuple[str, str]]:
        """Active (control, requirement) pairs of this organization in other frameworks."""
        with self._lock:
            return frozenset(
                (m.control_id, m.requirement_id)
                for m in self._rows.values()
                if m.organization_id == organization_id
                and m.framework_id != framework_id
                and m.is_active
            )

    def transitions(self, mapping_id_: Optional[str] = None) -> list[StatusTransition]:
        with self._lock:
            return [t for t in self._transitions if mapping_id_ is None or t.mapping_id == mapping_id_]

    # -- writes --------------------------------------------------------------

    def _set_status(
        self,
        mapping: ControlMapping,
        status: MappingStatus,
        reason: str,
        at: datetime,
        actor: Optional[str] = None,
        **updates,
    ) -> ControlMapping:
        updated = mapping.model_copy(update={"status": status, **updates})
        self._rows[mapping.id] = updated
        self._transitions.append(StatusTransition(
            mapping_id=mapping.id,
            from_status=mapping.status,
            to_status=status,
            at=at,
            reason=reason,
            actor=actor,
        ))
        key = _row_key(mapping)
        if not updated.is_active and self._active.get(key) == mapping.id:
            del self._active[key]
        return updated

    def _status_before_stale(self, mapping: ControlMapping) -> MappingStatus:
        for t in reversed(self._transitions):
            if t.mapping_id == mapping.id and t.to_status == MappingStatus.STALE:
                return t.from_status
        return MappingStatus.PROPOSED

    def begin(self, organization_id: str, framework_id: str, generation: int, scope: JobScope) -> StagedGeneration:
        return StagedGeneration(organization_id, framework_id, generation, scope)

    def commit(self, staged: StagedGeneration, at: Optional[datetime] = None) -> CommitSummary:
        """Apply a staged generation atomically.

        For every pair inside the staged scope: an identical result keeps the
        existing row (and its Verified status); a changed result supersedes
        the old row with a new Proposed revision; a pair with no new mapping
        retires the old row.
        """
        at = at or datetime.now(timezone.utc)
        org, fw = staged.organization_id, staged.framework_id
        summary = CommitSummary(generation=staged.generation)

        with self._lock:
            for (control_id, requirement_id), new in sorted(staged.mappings.items()):
                key = (org, fw, control_id, requirement_id)
                summary.affected_requirements.add(requirement_id)
                current_id = self._active.get(key)
                current = self._rows.get(current_id) if current_id else None

                if current is not None and current.same_match(new):
                    if current.status == MappingStatus.STALE:
                        self._set_status(current, self._status_before_stale(current), "recomputed unchanged", at)
                    summary.unchanged += 1
                    continue

                revision = self._revisions.get(key, 0) + 1
                if current is not None:
                    self._set_status(current, MappingStatus.SUPERSEDED, f"superseded by generation {staged.generation}", at)
                    summary.superseded += 1

                row = new.model_copy(update={
                    "id": mapping_id(org, fw, control_id, requirement_id, revision),
                    "framework_id": fw,
                    "revision": revision,
                    "status": MappingStatus.PROPOSED,
                    "generation": staged.generation,
                    "verified_by": None,
                    "verified_at": None,
                })
                self._rows[row.id] = row
                self._active[key] = row.id
                self._revisions[key] = revision
                summary.created += 1

            for current_id in [v for _, v in sorted(self._active.items())]:
                current = self._rows[current_id]
                if current.organization_id != org or current.framework_id != fw:
                    continue
                if current.pair in staged.mappings:
                    continue
                if staged.scope.covers(current.control_id, current.requirement_id):
                    self._set_status(current, MappingStatus.RETIRED, "no longer matches", at)
                    summary.retired += 1
                    summary.affected_requirements.add(current.requirement_id)

            self._committed[(org, fw)] = max(self._committed.get((org, fw), 0), staged.generation)

        return summary

    def mark_stale(
        self,
        organization_id: str,
        control_id: Optional[str] = None,
        requirement_id: Optional[str] = None,
        framework_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> list[ControlMapping]:
        """Mark active mappings touching a changed control or requirement as Stale.

        ``framework_id`` limits the change to one framework version; versions
        may share requirement ids.
        """
        at = at or datetime.now(timezone.utc)
        changed = []
        with self._lock:
            for current_id in list(self._active.values()):
                current = self._rows[current_id]
                if current.organization_id != organization_id or current.status == MappingStatus.STALE:
                    continue
                if framework_id is not None and current.framework_id != framework_id:
                    continue
                if current.control_id == control_id or current.requirement_id == requirement_id:
                    changed.append(self._set_status(current, MappingStatus.STALE, "source changed", at))
        return changed

    def retire_control(self, organization_id: str, control_id: str, at: Optional[datetime] = None) -> list[ControlMapping]:
        """Retire every active mapping of a control removed from the registry."""
        at = at or datetime.now(timezone.utc)
        retired = []
        with self._lock:
            for (org, _, ctrl, _), current_id in list(self._active.items()):
                if org == organization_id and ctrl == control_id:
                    retired.append(self._set_status(self._rows[current_id], MappingStatus.RETIRED, "control removed", at))
        return retired

    def verify(self, mapping_id_: str, verified_by: str, at: Optional[datetime] = None) -> ControlMapping:
        at = at or datetime.now(timezone.utc)
        with self._lock:
            mapping = self.get_mapping(mapping_id_)
            if mapping.status == MappingStatus.VERIFIED:
                return mapping
            if mapping.status != MappingStatus.PROPOSED:
                raise ValueError(f"Cannot verify mapping in status {mapping.status.value}: {mapping_id_}")
            return self._set_status(
                mapping,
                MappingStatus.VERIFIED,
                "verified by reviewer",
                at,
                actor=verified_by,
                verified_by=verified_by,
                verified_at=at,
                needs_review=False,
            )

    # -- gaps ----------------------------------------------------------------

    def get_gap_analysis(self, organization_id: str, framework_id: str) -> Optional[GapAnalysisResult]:
        with self._lock:
            return self._gaps.get((organization_id, framework_id))

    def put_gap_analysis(self, result: GapAnalysisResult) -> None:
        with self._lock:
            self._gaps[(result.organization_id, result.framework_id)] = result

    def update_gap_status(
        self,
        organization_id: str,
        framework_id: str,
        requirement_id: str,
        status: GapStatus,
        at: Optional[datetime] = None,
    ) -> GapAnalysisResult:
        at = at or datetime.now(timezone.utc)
        with self._lock:
            result = self._gaps.get((organization_id, framework_id))
            if result is None:
                raise KeyError(f"No gap analysis for {organization_id}/{framework_id}")
            gaps = []
            found = False
            for gap in result.gaps:
                if gap.requirement_id == requirement_id:
                    found = True
                    gap = gap.model_copy(update={
                        "status": status,
                        "status_history": [
                            *gap.status_history,
                            StatusChange(status=status, at=at, generation=result.generation),
                        ],
                    })
                gaps.append(gap)
            if not found:
                raise KeyError(f"No gap for requirement {requirement_id}")
            plan_ids = [g.requirement_id for g in result.remediation_plan]
            by_id = {g.requirement_id: g for g in gaps}
            updated = result.model_copy(update={
                "gaps": gaps,
                "remediation_plan": [by_id[i] for i in plan_ids],
            })
            self._gaps[(organization_id, framework_id)] = updated
            return updated

    # -- snapshots -----------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Write all rows, transitions, generations and gaps to a JSON file."""
        with self._lock:
            snapshot = {
                "version": SNAPSHOT_VERSION,
                "mappings": [m.model_dump(mode="json") for m in self._rows.values()],
                "transitions": [t.model_dump(mode="json") for t in self._transitions],
                "committed": [
                    {"organization_id": org, "framework_id": fw, "generation": gen}
                    for (org, fw), gen in sorted(self._committed.items())
                ],
                "gaps": [g.model_dump(mode="json") for g in self._gaps.values()],
            }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(snapshot, indent=2, ensure_ascii=False), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "MappingStore":
        store = cls()
        if not path.exists():
            return store
        data = json.loads(path.read_text(encoding="utf-8"))
        for raw in data.get("mappings", []):
            mapping = ControlMapping(**raw)
            store._rows[mapping.id] = mapping
            key = _row_key(mapping)
            store._revisions[key] = max(store._revisions.get(key, 0), mapping.revision)
            if mapping.is_active:
                store._active[key] = mapping.id
        store._transitions = [StatusTransition(**t) for t in data.get("transitions", [])]
        for entry in data.get("committed", []):
            store._committed[(entry["organization_id"], entry["framework_id"])] = int(entry["generation"])
        for raw in data.get("gaps", []):
            result = GapAnalysisResult(**raw)
            store._gaps[(result.organization_id, result.framework_id)] = result
        return store
