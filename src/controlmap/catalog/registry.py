"""Control Registry adapters.

The registry is owned by another system; this engine only reads control
snapshots from it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError
from rich.console import Console

from ..errors import RegistryUnavailableError
from ..models.control import Control
from ..models.job import PairError

console = Console(stderr=True)


@runtime_checkable
class ControlRegistry(Protocol):
    def list_controls(self, organization_id: str) -> list[Control]: ...


def validate_controls(
    records: list[dict],
    organization_id: str,
    errors: Optional[list[PairError]] = None,
) -> list[Control]:
    """Turn raw registry records into controls, skipping malformed ones."""
    controls: list[Control] = []
    seen: set[str] = set()

    for raw in records or []:
        fields = raw if isinstance(raw, dict) else {}
        try:
            control = Control(**{"organization_id": organization_id, **fields})
        except ValidationError as e:
            control_id = fields.get("id")
            console.print(
                f"  [yellow]WARN[/yellow] Skipping malformed control {control_id or '?'}: "
                f"{e.error_count()} error(s)"
            )
            if errors is not None:
                errors.append(PairError(
                    stage="validation",
                    control_id=control_id,
                    message=f"invalid control record: {e.errors()[0]['msg']}",
                ))
            continue

        if control.organization_id != organization_id or control.id in seen:
            continue
        seen.add(control.id)
        controls.append(control)

    return controls


class InMemoryControlRegistry:
    """Registry held in memory; used for embedding and tests."""

    def __init__(self, controls: Optional[list[Control]] = None):
        self._controls: dict[tuple[str, str], Control] = {}
        for control in controls or []:
            self.put(control)

    def put(self, control: Control) -> None:
        self._controls[(control.organization_id, control.id)] = control

    def remove(self, organization_id: str, control_id: str) -> None:
        self._controls.pop((organization_id, control_id), None)

    def list_controls(self, organization_id: str) -> list[Control]:
        return sorted(
            (c for (org, _), c in self._controls.items() if org == organization_id),
            key=lambda c: c.id,
        )


class YamlControlRegistry:
    """Registry read from a YAML file.

    Format::

        organizations:
          acme:
            - id: CTRL-1
              name: Enforce SSO
              category: IAM
              evidence_dimensions: [sso-config, mfa-policy]
    """

    def __init__(self, path: Path):
        self.path = path

    def list_controls(self, organization_id: str) -> list[Control]:
        try:
            content = yaml.safe_load(self.path.read_text(encoding="utf-8-sig")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RegistryUnavailableError(f"Cannot read controls from {self.path.name}: {e}") from e

        records = (content.get("organizations") or {}).get(organization_id) or []
        return sorted(validate_controls(records, organization_id), key=lambda c: c.id)
