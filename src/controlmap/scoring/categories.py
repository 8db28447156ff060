"""Category normalization and compatibility."""

from __future__ import annotations

import re

# Categories in the same group are treated as related.
CATEGORY_GROUPS: dict[str, set[str]] = {
    "access-control": {
        "access-control", "access", "iam", "identity", "authentication", "authorization",
    },
    "data-protection": {
        "data-protection", "data", "privacy", "confidentiality", "encryption",
    },
    "monitoring": {
        "monitoring", "logging", "audit", "surveillance", "detection",
    },
    "incident-response": {
        "incident-response", "incident", "response", "recovery", "business-continuity",
    },
    "risk-management": {
        "risk-management", "risk", "assessment", "evaluation", "treatment",
    },
    "governance": {
        "governance", "policy", "procedure", "management", "oversight",
    },
}


def normalize_category(category: str) -> str:
    """Lower-case a category and unify separators (``Access_Control`` -> ``access-control``)."""
    return re.sub(r"[\s_]+", "-", (category or "").strip().lower())


def category_groups(category: str) -> set[str]:
    norm = normalize_category(category)
    return {group for group, members in CATEGORY_GROUPS.items() if norm in members}


def category_compatibility(
    control_category: str,
    requirement_category: str,
    related_score: float = 0.8,
) -> float:
    """Score how compatible two categories are.

    1.0 for the same category, ``related_score`` when both belong to a
    common group, 0.0 otherwise (including when either side is blank).
    """
    a = normalize_category(control_category)
    b = normalize_category(requirement_category)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if category_groups(a) & category_groups(b):
        return related_score
    return 0.0
