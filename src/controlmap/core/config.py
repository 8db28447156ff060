"""3-layer configuration system for controlmap.

Loads and merges configuration from:
1. Default settings (built-in)
2. Project config (.controlmap/config.yaml)
3. CLI parameters (override)
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Optional

import yaml

CONFIG_DIR = ".controlmap"

DEFAULT_CONFIG: dict = {
    "scoring": {
        "strategy": "evidence",
        "weights": {"category": 0.2, "dimensions": 0.8, "equivalence": 0.45},
        "related_category_score": 0.8,
    },
    "classification": {
        "direct_confidence": 0.80,
        "direct_dimension_ratio": 0.90,
        "inherited_confidence": 0.65,
        "partial_confidence": 0.40,
        "compensating_confidence": 0.25,
    },
    "coordinator": {
        "batch_size": 200,
        "max_workers": 8,
        "timeout_seconds": 300,
        "debounce_seconds": 0,
        "job_retention_seconds": 3600,
        "event_queue_size": 1000,
    },
    "assessment": {
        "interval_days": {
            "continuous": 30,
            "monthly": 30,
            "quarterly": 90,
            "annual": 365,
        },
    },
    "gaps": {
        "timeline_days": {"critical": 30, "high": 60, "medium": 90, "low": 120},
        "max_recommendations": 3,
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Arrays are replaced, not merged."""
    result = {}
    for key in base:
        result[key] = base[key]
    for key, value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            result[key] = deep_merge(base_value, value)
        else:
            result[key] = value
    return result


def load_project_config(project_path: Path) -> dict:
    """Load project configuration from .controlmap/config.yaml."""
    config_path = project_path / CONFIG_DIR / "config.yaml"
    if not config_path.exists():
        return {}
    try:
        content = config_path.read_text(encoding="utf-8-sig")  # utf-8-sig strips BOM
        return yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError):
        return {}


def validate_thresholds(config: dict) -> None:
    """Reject classification thresholds that break the tier ordering."""
    c = config.get("classification", {})
    compensating = float(c["compensating_confidence"])
    partial = float(c["partial_confidence"])
    inherited = float(c["inherited_confidence"])
    direct = float(c["direct_confidence"])

    if not 0.0 < compensating < partial < direct <= 1.0:
        raise ValueError(
            "classification thresholds must satisfy 0 < compensating < partial < direct <= 1 "
            f"(got {compensating}, {partial}, {direct})"
        )
    if not partial <= inherited < direct:
        raise ValueError(
            f"inherited_confidence must lie in [partial, direct) (got {inherited})"
        )
    if not 0.0 < float(c["direct_dimension_ratio"]) <= 1.0:
        raise ValueError("direct_dimension_ratio must be in (0, 1]")


def get_effective_config(
    project_path: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
) -> dict:
    """Get the fully resolved configuration."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    if project_path is not None:
        project_config = load_project_config(project_path)
        if project_config:
            config = deep_merge(config, project_config)
        config["_project_path"] = str(project_path)

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    validate_thresholds(config)
    return config
