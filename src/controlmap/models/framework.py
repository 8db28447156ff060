"""Framework catalog data models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AssessmentFrequency(str, Enum):
    CONTINUOUS = "continuous"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


def _normalize_tags(value: object) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    return frozenset(str(v).strip().lower() for v in value if str(v).strip())


class ComplianceRequirement(BaseModel):
    """A single obligation within a framework version."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    framework_id: str = Field(min_length=1)
    domain_id: str = ""
    code: str = ""
    title: str = ""
    description: str = ""
    category: str = ""
    priority: Priority = Priority.MEDIUM
    mandatory: bool = False
    testable: bool = True
    frequency: AssessmentFrequency = AssessmentFrequency.ANNUAL
    required_dimensions: frozenset[str] = frozenset()
    related_requirements: frozenset[str] = frozenset()
    tags: frozenset[str] = frozenset()

    @field_validator("required_dimensions", "tags", mode="before")
    @classmethod
    def _tags(cls, value: object) -> frozenset[str]:
        return _normalize_tags(value)

    @field_validator("related_requirements", mode="before")
    @classmethod
    def _related(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(str(v) for v in value if v)


class FrameworkDomain(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    weight: float = Field(default=1.0, ge=0)


class ComplianceFramework(BaseModel):
    """Immutable definition of one framework version.

    A new regulatory version is published under a new id; an existing
    definition is never edited in place.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    version: str = ""
    description: str = ""
    domains: tuple[FrameworkDomain, ...] = ()
    requirements: tuple[ComplianceRequirement, ...] = ()
    supersedes: Optional[str] = None

    @property
    def requirement_ids(self) -> list[str]:
        return [r.id for r in self.requirements]

    def get_requirement(self, requirement_id: str) -> Optional[ComplianceRequirement]:
        return next((r for r in self.requirements if r.id == requirement_id), None)

    def get_domain(self, domain_id: str) -> Optional[FrameworkDomain]:
        return next((d for d in self.domains if d.id == domain_id), None)
