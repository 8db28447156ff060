"""Gap analysis data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class GapSeverity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    def step_down(self) -> "GapSeverity":
        if self in (GapSeverity.NONE, GapSeverity.LOW):
            return self
        return SEVERITY_ORDER[self.rank - 1]


SEVERITY_ORDER = [
    GapSeverity.NONE,
    GapSeverity.LOW,
    GapSeverity.MEDIUM,
    GapSeverity.HIGH,
    GapSeverity.CRITICAL,
]


class GapStatus(str, Enum):
    OPEN = "Open"
    IN_REMEDIATION = "InRemediation"
    RESOLVED = "Resolved"
    VERIFIED = "Verified"
    REOPENED = "Reopened"


CLOSED_GAP_STATUSES = frozenset({GapStatus.RESOLVED, GapStatus.VERIFIED})


class GapType(str, Enum):
    MISSING = "missing"
    PARTIAL = "partial"


class EffortLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReadinessLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StatusChange(BaseModel):
    status: GapStatus
    at: datetime
    generation: int = 0


class Gap(BaseModel):
    requirement_id: str
    requirement_code: str = ""
    requirement_title: str = ""
    domain_id: str = ""
    category: str = ""
    mandatory: bool = False
    priority: str = "medium"
    severity: GapSeverity = GapSeverity.NONE
    gap_type: Optional[GapType] = None
    aggregate_coverage: float = Field(default=0.0, ge=0, le=100)
    missing_coverage: float = Field(default=100.0, ge=0, le=100)
    status: GapStatus = GapStatus.OPEN
    risk_level: int = 0
    effort_level: EffortLevel = EffortLevel.LOW
    estimated_effort: int = 0
    existing_controls: list[str] = []
    missing_dimensions: list[str] = []
    recommended_actions: list[str] = []
    status_history: list[StatusChange] = []


class DomainMaturity(BaseModel):
    domain_id: str
    name: str = ""
    weight: float = 1.0
    requirements: int = 0
    average_coverage: float = 0.0


class GapAnalysisResult(BaseModel):
    """Gap analysis for one organization x framework."""

    organization_id: str
    framework_id: str
    generation: int = 0
    total_requirements: int = 0
    mapped_requirements: int = 0
    overall_coverage: float = Field(default=0.0, ge=0, le=100)
    maturity_score: float = Field(default=0.0, ge=0, le=100)
    risk_score: float = 0.0
    readiness_level: ReadinessLevel = ReadinessLevel.LOW
    time_to_compliance_days: int = 0
    domains: list[DomainMaturity] = []
    gaps: list[Gap] = []
    remediation_plan: list[Gap] = []
    analyzed_at: Optional[datetime] = None

    @property
    def open_gaps(self) -> list[Gap]:
        return [g for g in self.gaps if g.severity != GapSeverity.NONE]
