"""
Registry of dependent collections owned by a patient identity.

The list is static: adding a dependent collection to the product means
adding it here. Order is the order migrations run in.
"""

from __future__ import annotations

from typing import NamedTuple

import sqlalchemy as sa
from sqlalchemy.sql.expression import TableClause


class MergeableCollection(NamedTuple):
    """A dependent collection and the column holding the owning patient id."""

    name: str
    ownership_key: str
    id_column: str = "id"

    def table(self) -> TableClause:
        """Lightweight table construct covering only the columns the engine touches."""
        return sa.table(
            self.name,
            sa.column(self.id_column),
            sa.column(self.ownership_key),
            sa.column("created_at"),
        )


MERGEABLE_COLLECTIONS: tuple[MergeableCollection, ...] = (
    MergeableCollection("encounters", "patient_id"),
    MergeableCollection("check_ins", "user_id"),
    MergeableCollection("patient_vitals", "patient_id"),
    MergeableCollection("patient_medications", "patient_id"),
    MergeableCollection("patient_allergies", "patient_id"),
    MergeableCollection("clinical_notes", "patient_id"),
    MergeableCollection("ai_progress_notes", "patient_id"),
    MergeableCollection("lab_orders", "patient_id"),
    MergeableCollection("lab_results", "patient_id"),
    MergeableCollection("imaging_orders", "patient_id"),
    MergeableCollection("appointments", "patient_id"),
    MergeableCollection("care_plans", "patient_id"),
    MergeableCollection("goals", "patient_id"),
    MergeableCollection("patient_consents", "patient_id"),
    MergeableCollection("handoff_packets", "patient_id"),
    MergeableCollection("risk_assessments", "patient_id"),
)

# Snapshot sample name -> collection
SNAPSHOT_SAMPLES: dict[str, str] = {
    "encounters": "encounters",
    "notes": "clinical_notes",
    "vitals": "patient_vitals",
    "medications": "patient_medications",
    "allergies": "patient_allergies",
}

_BY_NAME = {collection.name: collection for collection in MERGEABLE_COLLECTIONS}


def get_collection(name: str) -> MergeableCollection | None:
    """Look up a registered collection by name."""
    return _BY_NAME.get(name)
