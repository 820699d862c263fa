"""Operator guidance attached to conflicts when they are served to reviewers."""

from typing import Any

from conflicts.types import ConflictType

_DUPLICATE_UPC_STEPS = [
    "Verify if products are actually different or variations of the same item",
    "Check if UPC was incorrectly assigned to multiple products",
    "Consider creating unique UPCs for each product variant",
]
_MULTI_UPC_STEPS = [
    "Verify if multiple UPCs are legitimate (different package sizes, etc.)",
    "Check if some UPCs are outdated and should be removed",
    "Consider consolidating to a single primary UPC",
]


def generate_resolution_suggestions(conflict_type: str, group_size: int, severity: str) -> dict[str, Any]:
    """
    Suggest next steps for a conflict.

    Two-entity conflicts are flagged automatable: one side is usually a
    duplicate entry or the clearly dominant code.
    """
    if conflict_type == ConflictType.DUPLICATE_UPC.value:
        suggestions = list(_DUPLICATE_UPC_STEPS)
        if group_size == 2:
            suggestions.append("Review product descriptions to identify if one is a duplicate entry")
    else:
        suggestions = list(_MULTI_UPC_STEPS)
        if group_size == 2:
            suggestions.append("Compare UPC usage frequency to identify the primary UPC")

    return {
        "suggestions": suggestions,
        "automatable": group_size == 2,
        "priority": str(severity).lower(),
    }
