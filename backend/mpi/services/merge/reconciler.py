"""
Profile reconciliation rules.

The surviving profile always wins on conflict: scalar fields are only filled
where the survivor has nothing, and list fields only ever grow.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

# Scalar fields filled from the deprecated profile when the survivor's is null
FILLABLE_FIELDS: tuple[str, ...] = (
    "middle_name",
    "gender",
    "ethnicity",
    "marital_status",
    "living_situation",
    "phone",
    "address",
    "city",
    "state",
    "zip",
    "emergency_contact_name",
    "emergency_contact_phone",
    "emergency_contact_relationship",
    "caregiver_email",
)

# Free-text list fields merged by ordered union
UNION_FIELDS: tuple[str, ...] = (
    "health_conditions",
    "medications",
)


def ordered_union(existing: list[Any] | None, incoming: list[Any] | None) -> list[Any]:
    """Union preserving first appearance, existing entries first."""
    merged: list[Any] = list(existing or [])
    seen = set(merged)
    for item in incoming or []:
        if item not in seen:
            seen.add(item)
            merged.append(item)
    return merged


def reconcile(surviving: Mapping[str, Any], deprecated: Mapping[str, Any]) -> dict[str, Any]:
    """
    Compute the field updates to apply to the surviving profile.

    Args:
        surviving: Current surviving profile values
        deprecated: Deprecated profile values from its snapshot

    Returns:
        Mapping of field name to new value; empty when nothing qualifies
    """
    updates: dict[str, Any] = {}

    for field in FILLABLE_FIELDS:
        if surviving.get(field) is None and deprecated.get(field) is not None:
            updates[field] = deprecated[field]

    for field in UNION_FIELDS:
        incoming = deprecated.get(field)
        if not isinstance(incoming, list) or not incoming:
            continue
        current = surviving.get(field) or []
        merged = ordered_union(current, incoming)
        # No-op writes are skipped
        if len(merged) > len(current):
            updates[field] = merged

    return updates
