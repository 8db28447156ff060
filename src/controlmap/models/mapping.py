"""Control mapping data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MappingType(str, Enum):
    DIRECT = "direct"
    PARTIAL = "partial"
    INHERITED = "inherited"
    COMPENSATING = "compensating"


class MappingStatus(str, Enum):
    PROPOSED = "Proposed"
    VERIFIED = "Verified"
    STALE = "Stale"
    SUPERSEDED = "Superseded"
    RETIRED = "Retired"


ACTIVE_STATUSES = frozenset({MappingStatus.PROPOSED, MappingStatus.VERIFIED, MappingStatus.STALE})


def mapping_id(
    organization_id: str,
    framework_id: str,
    control_id: str,
    requirement_id: str,
    revision: int = 1,
) -> str:
    return f"map:{organization_id}:{framework_id}:{control_id}:{requirement_id}:r{revision}"


class ControlMapping(BaseModel):
    """One (control, requirement) match produced by the Mapping Engine.

    Rows are append-mostly: a recomputation that changes a pair adds a new
    revision and moves the previous row to Superseded instead of editing it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    control_id: str
    requirement_id: str
    framework_id: str
    organization_id: str
    mapping_type: MappingType
    coverage: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0, le=1)
    automated: bool = True
    status: MappingStatus = MappingStatus.PROPOSED
    evidence_dimensions_covered: tuple[str, ...] = ()
    evidence_required: tuple[str, ...] = ()
    testing_required: tuple[str, ...] = ()
    needs_review: bool = False
    revision: int = 1
    generation: int = 0
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    last_assessed: Optional[datetime] = None
    next_assessment: Optional[datetime] = None

    @field_validator("evidence_dimensions_covered", "evidence_required", mode="before")
    @classmethod
    def _sorted(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return ()
        return tuple(sorted(set(value)))

    @property
    def pair(self) -> tuple[str, str]:
        return (self.control_id, self.requirement_id)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def same_match(self, other: "ControlMapping") -> bool:
        """True when two rows describe the identical classification result."""
        return (
            self.mapping_type == other.mapping_type
            and self.confidence == other.confidence
            and self.coverage == other.coverage
            and self.evidence_dimensions_covered == other.evidence_dimensions_covered
        )
