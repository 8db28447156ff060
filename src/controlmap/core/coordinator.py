"""Recomputation coordinator.

Schedules background mapping jobs per (organization, framework) key. At
most one job per key is in flight: a trigger for a busy key bumps the key's
generation counter, and the running job notices the bump at its next batch
checkpoint and restarts with fresh inputs and the merged scope. Jobs for
different keys run independently.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console

from ..catalog.loader import FrameworkCatalog
from ..catalog.registry import ControlRegistry
from ..errors import (
    ControlMapError,
    JobNotFoundError,
    JobTimeoutError,
    RegistryUnavailableError,
)
from ..models.control import Control
from ..models.framework import ComplianceFramework, ComplianceRequirement
from ..models.job import JobEvent, JobScope, JobState, JobStatus, KeyState, PairError
from ..models.mapping import ControlMapping
from ..scoring.base import SimilarityScorer, get_scorer
from ..utils.sanitize import sanitize_error
from .config import DEFAULT_CONFIG
from .engine import candidate_pairs, map_pair, stamp_assessment, validate_inputs
from .gaps import analyze_gaps
from .store import MappingStore

console = Console(stderr=True)

JobKey = tuple[str, str]


class _GenerationAdvanced(Exception):
    """Raised at a checkpoint when a newer trigger arrived for the key."""


class _Job:
    def __init__(self, status: JobStatus):
        self.status = status
        self.task: Optional[asyncio.Task] = None
        self.done = asyncio.Event()
        self.finished_mono: Optional[float] = None

    @property
    def key(self) -> JobKey:
        return (self.status.organization_id, self.status.framework_id)


class _KeySlot:
    def __init__(self):
        self.generation = 0
        self.job: Optional[_Job] = None
        self.pending_scope: Optional[JobScope] = None

    @property
    def state(self) -> KeyState:
        return KeyState.RUNNING if self.job is not None else KeyState.IDLE


def _score_slice(
    pairs: list[tuple[Control, ComplianceRequirement]],
    organization_id: str,
    framework_id: str,
    scorer: SimilarityScorer,
    config: dict,
    mapped_elsewhere: frozenset[tuple[str, str]],
    generation: int,
) -> tuple[list[ControlMapping], list[PairError]]:
    """Score a slice of pairs on a worker thread. Never raises."""
    mappings: list[ControlMapping] = []
    errors: list[PairError] = []
    for control, requirement in pairs:
        try:
            mapping, error = map_pair(
                organization_id, framework_id, control, requirement,
                scorer, config, mapped_elsewhere, generation,
            )
        except Exception as e:
            mapping, error = None, PairError(
                stage="classification",
                control_id=control.id,
                requirement_id=requirement.id,
                message=sanitize_error(f"{type(e).__name__}: {e}"),
            )
        if error:
            errors.append(error)
        if mapping:
            mappings.append(mapping)
    return mappings, errors


class RecomputationCoordinator:
    def __init__(
        self,
        catalog: FrameworkCatalog,
        registry: ControlRegistry,
        store: MappingStore,
        scorer: Optional[SimilarityScorer] = None,
        config: Optional[dict] = None,
    ):
        self.catalog = catalog
        self.registry = registry
        self.store = store
        self.config = config or DEFAULT_CONFIG
        self.scorer = scorer or get_scorer(self.config)

        coordinator_config = self.config.get("coordinator", {})
        self.batch_size = max(int(coordinator_config.get("batch_size", 200)), 1)
        self.max_workers = max(int(coordinator_config.get("max_workers", 8)), 1)
        self.timeout_seconds = float(coordinator_config.get("timeout_seconds", 300))
        self.debounce_seconds = float(coordinator_config.get("debounce_seconds", 0))
        self.job_retention_seconds = float(coordinator_config.get("job_retention_seconds", 3600))
        self.event_queue_size = max(int(coordinator_config.get("event_queue_size", 1000)), 1)

        self._slots: dict[JobKey, _KeySlot] = {}
        self._jobs: dict[str, _Job] = {}
        self._subscribers: list[asyncio.Queue] = []
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="controlmap-score")

    # -- public API ------------------------------------------------------------

    async def trigger(
        self,
        organization_id: str,
        framework_id: str,
        scope: Optional[JobScope] = None,
    ) -> JobStatus:
        """Request a recomputation and return its job status immediately.

        If a job already runs for the key, no second job is started: the
        key's generation is bumped, the scope is queued for the running job,
        and that job's status is returned with ``in_progress`` set.
        """
        self._prune_finished()
        scope = scope or JobScope.everything()
        key = (organization_id, framework_id)
        slot = self._slots.setdefault(key, _KeySlot())
        slot.generation += 1

        if slot.job is not None:
            job = slot.job
            if job.status.state == JobState.PENDING:
                job.status.scope = job.status.scope.merge(scope)
                job.status.generation = slot.generation
            else:
                slot.pending_scope = scope if slot.pending_scope is None else slot.pending_scope.merge(scope)
            console.print(
                f"  [dim]{organization_id}/{framework_id} busy; "
                f"queued as generation {slot.generation}[/dim]"
            )
            return job.status.model_copy(update={"in_progress": True})

        job = _Job(JobStatus(
            job_id=uuid.uuid4().hex[:12],
            organization_id=organization_id,
            framework_id=framework_id,
            generation=slot.generation,
            scope=scope,
            created_at=datetime.now(timezone.utc),
        ))
        slot.job = job
        self._jobs[job.status.job_id] = job
        job.task = asyncio.create_task(self._run(job, slot))
        self._publish(job)
        return job.status.model_copy()

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started yet.

        A running job cannot be killed mid-batch; trigger again to supersede it.
        """
        job = self._get(job_id)
        if job.status.state != JobState.PENDING:
            return False
        if job.task is not None:
            job.task.cancel()
        self._finish(job, JobState.CANCELLED)
        return True

    def status(self, job_id: str) -> JobStatus:
        return self._get(job_id).status.model_copy()

    def key_state(self, organization_id: str, framework_id: str) -> KeyState:
        slot = self._slots.get((organization_id, framework_id))
        return slot.state if slot else KeyState.IDLE

    def list_jobs(self, organization_id: Optional[str] = None) -> list[JobStatus]:
        self._prune_finished()
        return [
            j.status.model_copy() for j in self._jobs.values()
            if organization_id is None or j.status.organization_id == organization_id
        ]

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        job = self._get(job_id)
        await asyncio.wait_for(job.done.wait(), timeout)
        return job.status.model_copy()

    async def wait_idle(self, organization_id: str, framework_id: str) -> None:
        slot = self._slots.get((organization_id, framework_id))
        while slot is not None and slot.job is not None:
            await slot.job.done.wait()

    def subscribe(self) -> asyncio.Queue:
        """Return a queue that receives a JobEvent on every job change.

        The queue is bounded; a subscriber that falls behind loses its oldest
        events first.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.event_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- internals -------------------------------------------------------------

    def _get(self, job_id: str) -> _Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _prune_finished(self) -> None:
        """Forget finished jobs older than the retention window."""
        cutoff = time.monotonic() - self.job_retention_seconds
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.finished_mono is not None and job.finished_mono <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

    def _publish(self, job: _Job) -> None:
        s = job.status
        event = JobEvent(
            job_id=s.job_id,
            organization_id=s.organization_id,
            framework_id=s.framework_id,
            state=s.state,
            progress=s.progress,
            generation=s.generation,
            errors=list(s.errors),
            failure_reason=s.failure_reason,
        )
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    def _finish(self, job: _Job, state: JobState, reason: Optional[str] = None) -> None:
        if job.status.state.finished:
            return
        job.status.state = state
        job.status.failure_reason = reason
        job.status.finished_at = datetime.now(timezone.utc)
        job.finished_mono = time.monotonic()
        slot = self._slots.get(job.key)
        if slot is not None and slot.job is job:
            slot.job = None
            slot.pending_scope = None
        job.done.set()
        self._publish(job)

    def _checkpoint(self, job: _Job, slot: _KeySlot, deadline: float) -> None:
        if time.monotonic() > deadline:
            raise JobTimeoutError(f"job {job.status.job_id} exceeded {self.timeout_seconds}s")
        if slot.generation != job.status.generation:
            raise _GenerationAdvanced()

    def _load_inputs(self, organization_id: str, framework_id: str) -> tuple[ComplianceFramework, list[Control]]:
        framework = self.catalog.get_framework(framework_id)
        try:
            controls = self.registry.list_controls(organization_id)
        except RegistryUnavailableError:
            raise
        except Exception as e:
            raise RegistryUnavailableError(f"Cannot list controls for {organization_id}: {e}") from e
        return framework, controls

    async def _run(self, job: _Job, slot: _KeySlot) -> None:
        org, fw = job.key
        try:
            if self.debounce_seconds > 0:
                await asyncio.sleep(self.debounce_seconds)

            job.status.state = JobState.RUNNING
            job.status.started_at = datetime.now(timezone.utc)
            self._publish(job)
            console.print(f"  [cyan]Mapping {org}/{fw} (generation {job.status.generation})...[/cyan]")

            deadline = time.monotonic() + self.timeout_seconds
            while True:
                try:
                    await self._compute(job, slot, deadline)
                    break
                except _GenerationAdvanced:
                    job.status.restarts += 1
                    job.status.generation = slot.generation
                    if slot.pending_scope is not None:
                        job.status.scope = job.status.scope.merge(slot.pending_scope)
                        slot.pending_scope = None
                    job.status.errors = []
                    console.print(
                        f"  [dim]{org}/{fw} restarting at generation {job.status.generation}[/dim]"
                    )

            self._finish(job, JobState.COMPLETED)
            console.print(
                f"  [green]OK[/green] {org}/{fw}: {job.status.mappings_committed} mapping(s) committed, "
                f"{len(job.status.errors)} pair error(s)"
            )
        except asyncio.CancelledError:
            self._finish(job, JobState.CANCELLED)
            raise
        except ControlMapError as e:
            reason = getattr(e, "reason", "error")
            job.status.errors.append(PairError(stage="job", message=sanitize_error(str(e))))
            self._finish(job, JobState.FAILED, reason)
            console.print(f"  [red]ERROR[/red] {org}/{fw} failed ({reason}): {sanitize_error(str(e))}")
        except Exception as e:
            job.status.errors.append(PairError(stage="job", message=sanitize_error(f"{type(e).__name__}: {e}")))
            self._finish(job, JobState.FAILED, "error")
            console.print(f"  [red]ERROR[/red] {org}/{fw} failed: {sanitize_error(str(e))}")

    async def _compute(self, job: _Job, slot: _KeySlot, deadline: float) -> None:
        org, fw = job.key
        generation = job.status.generation
        scope = job.status.scope

        framework, controls = self._load_inputs(org, fw)
        errors: list[PairError] = []
        controls, requirements = validate_inputs(org, fw, controls, framework.requirements, errors)
        related_score = float(self.config["scoring"].get("related_category_score", 0.8))
        pairs = list(candidate_pairs(
            controls,
            requirements,
            None if scope.full else scope,
            related_score,
        ))
        mapped_elsewhere = self.store.mapped_elsewhere(org, fw)
        staged = self.store.begin(org, fw, generation, scope)

        job.status.pairs_total = len(pairs)
        job.status.pairs_scored = 0
        job.status.progress = 0.0
        loop = asyncio.get_running_loop()

        for start in range(0, len(pairs), self.batch_size):
            self._checkpoint(job, slot, deadline)
            batch = pairs[start:start + self.batch_size]
            slice_size = max(1, -(-len(batch) // self.max_workers))
            futures = [
                loop.run_in_executor(
                    self._executor,
                    _score_slice,
                    batch[i:i + slice_size], org, fw, self.scorer, self.config,
                    mapped_elsewhere, generation,
                )
                for i in range(0, len(batch), slice_size)
            ]
            for mappings, slice_errors in await asyncio.gather(*futures):
                for mapping in mappings:
                    staged.upsert(mapping)
                errors.extend(slice_errors)

            job.status.pairs_scored += len(batch)
            job.status.progress = round(job.status.pairs_scored / len(pairs), 4)
            self._publish(job)

        self._checkpoint(job, slot, deadline)

        # Nothing below awaits: commit and analysis are atomic for readers.
        assessed_at = datetime.now(timezone.utc)
        by_id = {r.id: r for r in requirements}
        for mapping in stamp_assessment(list(staged.mappings.values()), by_id, assessed_at, self.config):
            staged.upsert(mapping)
        summary = self.store.commit(staged, assessed_at)

        affected = None
        if not scope.full:
            affected = summary.affected_requirements | set(scope.requirement_ids)
        result = analyze_gaps(
            org,
            framework,
            self.store.list_mappings(org, fw),
            controls=controls,
            previous=self.store.get_gap_analysis(org, fw),
            requirement_ids=affected,
            config=self.config,
            generation=generation,
            analyzed_at=assessed_at,
        )
        self.store.put_gap_analysis(result)

        job.status.errors = errors
        job.status.mappings_committed = summary.created + summary.unchanged
        job.status.progress = 1.0
