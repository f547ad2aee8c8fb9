"""
Merge history model for the patient identity merge ledger.

Every merge or unmerge writes exactly one row. Rows are append-only: the
snapshot and provenance columns are frozen once inserted, and only the
rollback stamp and the verification stamp may change afterwards. The guard
enforcing this is registered by ``mpi.services.merge.ledger``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    String,
    Text,
    Uuid,
    false,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column

from mpi.core.database import Base, JSONType, utcnow


class OperationType(str, enum.Enum):
    """Types of ledger operations."""

    MERGE = "merge"
    UNMERGE = "unmerge"
    LINK = "link"
    UNLINK = "unlink"


# Columns that may legitimately change after insert
ROLLBACK_FIELDS = frozenset({
    "rolled_back",
    "rolled_back_at",
    "rolled_back_by",
    "rollback_reason",
    "rollback_batch_id",
})

VERIFICATION_FIELDS = frozenset({
    "verified_by",
    "verified_at",
    "verification_notes",
})

MUTABLE_FIELDS = ROLLBACK_FIELDS | VERIFICATION_FIELDS | {"is_reversible", "updated_at"}


class MergeHistory(Base):
    """
    Ledger entry for one merge or unmerge operation.

    Attributes:
        id: UUID primary key
        merge_batch_id: Groups every side effect of one operation
        operation_type: merge, unmerge, link or unlink
        surviving_patient_id: Identity that remains active
        deprecated_patient_id: Identity deactivated by the merge
        tenant_id: Tenant the operation ran in
        surviving_record_snapshot: Surviving profile before the operation
        deprecated_record_snapshot: Deprecated profile before the operation
        related_data_snapshot: Sampled dependent rows of both identities
        merged_record_snapshot: Surviving profile after reconciliation
        data_migrations: Per-collection migration outcomes
        match_candidate_id: Candidate that triggered the merge, if any
        merge_decision_score: Externally computed match score
        merge_decision_reason: Free-text reason supplied by the operator
        merge_rules_applied: Names of rules that led to the decision
        performed_by: Acting user
        performed_at: When the operation ran
        is_reversible: Whether an unmerge is still allowed
        rolled_back: Whether this merge was reversed
        rollback_batch_id: Batch id of the unmerge that reversed it
    """

    __tablename__ = "mpi_merge_history"
    __table_args__ = (
        Index("idx_mpi_merge_batch", "merge_batch_id"),
        Index("idx_mpi_merge_surviving", "surviving_patient_id"),
        Index("idx_mpi_merge_deprecated", "deprecated_patient_id"),
        Index("idx_mpi_merge_tenant", "tenant_id"),
        Index("idx_mpi_merge_performed_at", text("performed_at DESC")),
        Index(
            "idx_mpi_merge_reversible",
            "is_reversible",
            "rolled_back",
            postgresql_where=text("is_reversible = true AND rolled_back = false"),
        ),
        Index("idx_mpi_merge_operation", "operation_type"),
        CheckConstraint(
            "NOT rolled_back OR NOT is_reversible",
            name="ck_mpi_merge_history_rolled_back_not_reversible",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="UUID primary key",
    )

    # Operation identifiers
    merge_batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        default=uuid.uuid4,
        comment="Groups related side effects of one operation",
    )

    operation_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="merge, unmerge, link or unlink",
    )

    # Identities involved
    surviving_patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    surviving_identity_record_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    deprecated_patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    deprecated_identity_record_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Pre-operation snapshots for rollback
    surviving_record_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    deprecated_record_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    related_data_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Post-merge state
    merged_record_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    data_migrations: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Per-collection migration outcomes",
    )

    # Decision provenance
    match_candidate_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    merge_decision_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    merge_decision_reason: Mapped[str] = mapped_column(Text, nullable=False)
    merge_rules_applied: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    # Operator
    performed_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Rollback support
    is_reversible: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )
    rolled_back: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rollback_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rollback_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        comment="Batch id of the unmerge that reversed this merge",
    )

    # Verification
    verified_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __init__(self, **kwargs: Any) -> None:
        """Initialize with Python-side defaults so unsaved rows are usable."""
        kwargs.setdefault("merge_batch_id", uuid.uuid4())
        kwargs.setdefault("data_migrations", [])
        kwargs.setdefault("is_reversible", True)
        kwargs.setdefault("rolled_back", False)
        kwargs.setdefault("performed_at", utcnow())
        super().__init__(**kwargs)

    @property
    def can_unmerge(self) -> bool:
        """Check whether this entry is a merge that may still be reversed."""
        return (
            self.operation_type == OperationType.MERGE.value
            and self.is_reversible
            and not self.rolled_back
        )

    def stamp_rollback(
        self,
        rolled_back_by: uuid.UUID,
        reason: str,
        rollback_batch_id: uuid.UUID,
        rolled_back_at: datetime | None = None,
    ) -> None:
        """
        Mark this merge as reversed.

        Sets every rollback field at once and closes the entry to further
        reversal.

        Args:
            rolled_back_by: User performing the unmerge
            reason: Why the merge was reversed
            rollback_batch_id: Batch id of the unmerge ledger entry
            rolled_back_at: Rollback time, defaults to now
        """
        self.rolled_back = True
        self.rolled_back_at = rolled_back_at or utcnow()
        self.rolled_back_by = rolled_back_by
        self.rollback_reason = reason
        self.rollback_batch_id = rollback_batch_id
        self.is_reversible = False

    def __repr__(self) -> str:
        """Return string representation."""
        status = " (rolled back)" if self.rolled_back else ""
        return (
            f"<MergeHistory {self.operation_type} "
            f"{self.deprecated_patient_id} -> {self.surviving_patient_id}{status}>"
        )
