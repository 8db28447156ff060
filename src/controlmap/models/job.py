"""Recomputation job data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class KeyState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"


class JobState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"

    @property
    def finished(self) -> bool:
        return self in (JobState.COMPLETED, JobState.CANCELLED, JobState.FAILED)


class JobScope(BaseModel):
    """What a job recomputes.

    ``full`` rescans the whole framework; otherwise only the listed controls
    are scored against every requirement and the listed requirements against
    every control.
    """

    full: bool = False
    control_ids: frozenset[str] = frozenset()
    requirement_ids: frozenset[str] = frozenset()

    @classmethod
    def everything(cls) -> "JobScope":
        return cls(full=True)

    def merge(self, other: "JobScope") -> "JobScope":
        if self.full or other.full:
            return JobScope(full=True)
        return JobScope(
            control_ids=self.control_ids | other.control_ids,
            requirement_ids=self.requirement_ids | other.requirement_ids,
        )

    def covers(self, control_id: str, requirement_id: str) -> bool:
        return (
            self.full
            or control_id in self.control_ids
            or requirement_id in self.requirement_ids
        )


class PairError(BaseModel):
    stage: str
    message: str
    control_id: Optional[str] = None
    requirement_id: Optional[str] = None


class JobStatus(BaseModel):
    job_id: str
    organization_id: str
    framework_id: str
    state: JobState = JobState.PENDING
    generation: int = 0
    restarts: int = 0
    progress: float = 0.0
    pairs_total: int = 0
    pairs_scored: int = 0
    mappings_committed: int = 0
    errors: list[PairError] = []
    failure_reason: Optional[str] = None
    in_progress: bool = False
    scope: JobScope = JobScope(full=True)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobEvent(BaseModel):
    """Published on every job state change and progress checkpoint."""

    job_id: str
    organization_id: str
    framework_id: str
    state: JobState
    progress: float = 0.0
    generation: int = 0
    errors: list[PairError] = []
    failure_reason: Optional[str] = None
