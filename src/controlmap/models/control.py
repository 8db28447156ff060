"""Control registry snapshots and change events."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Control(BaseModel):
    """An organization-owned safeguard, as read from the Control Registry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    name: str = ""
    category: str = ""
    type: str = ""
    description: str = ""
    evidence_dimensions: frozenset[str] = frozenset()

    @field_validator("evidence_dimensions", mode="before")
    @classmethod
    def _dimensions(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(str(v).strip().lower() for v in value if str(v).strip())

    @property
    def text(self) -> str:
        return f"{self.name} {self.description}".strip()


class ControlChanged(BaseModel):
    control_id: str
    organization_id: str


class RequirementChanged(BaseModel):
    framework_id: str
    requirement_id: str


class FrameworkVersionPublished(BaseModel):
    previous_framework_id: str
    framework_id: str
