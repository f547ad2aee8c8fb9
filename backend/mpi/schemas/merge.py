"""
Patient merge request/response schemas.

This module defines Pydantic models for the merge engine: the requests the
orchestrator accepts, the per-collection migration outcomes it records, the
snapshots it captures and the ledger views it returns.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class MigrationStatus(str, Enum):
    """Lifecycle of one collection migration."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"  # Set by a later unmerge


class MigrationAction(str, Enum):
    """Action taken on a dependent collection."""

    REASSIGN = "reassign"


# Record ids as stored in the ledger: JSON scalars only
RecordId = Union[int, str]


# =============================================================================
# Migration and Snapshot Schemas
# =============================================================================


class DataMigration(BaseModel):
    """Outcome of reassigning one dependent collection."""

    collection: str = Field(description="Dependent collection name")
    ids: list[RecordId] = Field(default_factory=list, description="Affected record ids")
    action: MigrationAction = Field(MigrationAction.REASSIGN, description="Action taken")
    status: MigrationStatus = Field(MigrationStatus.PENDING, description="Migration status")
    error: Optional[str] = Field(None, description="Error message when the migration failed")

    @property
    def is_replayable(self) -> bool:
        """A reversal only replays completed migrations that moved rows."""
        return self.status == MigrationStatus.COMPLETED and bool(self.ids)


class ProfileSnapshot(BaseModel):
    """Point-in-time copy of a profile plus sampled dependent rows."""

    model_config = ConfigDict(frozen=True)

    version: int = Field(1, description="Snapshot format version")
    identity_id: UUID = Field(description="Patient identity captured")
    captured_at: datetime = Field(description="When the snapshot was taken")
    profile: dict[str, Any] = Field(description="Profile columns, JSON encoded")
    related_data: dict[str, list[dict[str, Any]]] = Field(
        default_factory=dict,
        description="Sampled dependent rows keyed by sample name, newest first",
    )


# =============================================================================
# Request Schemas
# =============================================================================


class MergeRequest(BaseModel):
    """Request to merge a deprecated identity into a surviving one."""

    surviving_patient_id: UUID = Field(description="Identity that remains active")
    deprecated_patient_id: UUID = Field(description="Identity to deactivate")
    tenant_id: UUID = Field(description="Tenant the identities belong to")
    performed_by: UUID = Field(description="Acting user")
    reason: str = Field(description="Why the merge is performed", min_length=1, max_length=2000)
    match_candidate_id: Optional[UUID] = Field(None, description="Candidate that triggered the merge")
    match_score: Optional[float] = Field(None, ge=0.0, le=100.0, description="Externally computed score")
    rules_applied: Optional[list[str]] = Field(None, description="Rules that led to the decision")

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        """Reject blank reasons."""
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class UnmergeRequest(BaseModel):
    """Request to reverse a prior merge."""

    merge_history_id: UUID = Field(description="Ledger entry of the merge to reverse")
    performed_by: UUID = Field(description="Acting user")
    reason: str = Field(description="Why the merge is reversed", min_length=1, max_length=2000)


class UnmergeBody(BaseModel):
    """Body of the unmerge endpoint; the ledger id comes from the path."""

    performed_by: UUID
    reason: str = Field(min_length=1, max_length=2000)


class VerifyMergeRequest(BaseModel):
    """Human sign-off on a completed merge."""

    verified_by: UUID = Field(description="Reviewing user")
    notes: Optional[str] = Field(None, max_length=2000, description="Verification notes")


# =============================================================================
# Response Schemas
# =============================================================================


class MergeResult(BaseModel):
    """Result of a merge or unmerge."""

    merge_history_id: UUID = Field(description="Ledger entry written by the operation")
    merge_batch_id: UUID = Field(description="Batch id grouping the operation's side effects")
    surviving_patient_id: UUID
    deprecated_patient_id: UUID
    data_migrations: list[DataMigration] = Field(default_factory=list)
    success: bool = True

    @property
    def failed_migrations(self) -> list[DataMigration]:
        """Migrations that did not complete; callers surface these as warnings."""
        return [m for m in self.data_migrations if m.status == MigrationStatus.FAILED]


class MergeHistoryRecord(BaseModel):
    """Read view of one ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merge_batch_id: UUID
    operation_type: str
    surviving_patient_id: UUID
    surviving_identity_record_id: Optional[UUID] = None
    deprecated_patient_id: UUID
    deprecated_identity_record_id: Optional[UUID] = None
    tenant_id: UUID
    surviving_record_snapshot: dict[str, Any]
    deprecated_record_snapshot: dict[str, Any]
    related_data_snapshot: Optional[dict[str, Any]] = None
    merged_record_snapshot: Optional[dict[str, Any]] = None
    data_migrations: list[DataMigration] = Field(default_factory=list)
    match_candidate_id: Optional[UUID] = None
    merge_decision_score: Optional[float] = None
    merge_decision_reason: str
    merge_rules_applied: Optional[list[str]] = None
    performed_by: UUID
    performed_at: datetime
    is_reversible: bool
    rolled_back: bool
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[UUID] = None
    rollback_reason: Optional[str] = None
    rollback_batch_id: Optional[UUID] = None
    verified_by: Optional[UUID] = None
    verified_at: Optional[datetime] = None
    verification_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "performed_at", "rolled_back_at", "verified_at", "created_at", "updated_at",
    )
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Backends without timezone support hand back naive UTC values."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class MergeStats(BaseModel):
    """Aggregate ledger statistics for one tenant."""

    total_merges: int = 0
    total_unmerges: int = 0
    pending_verification: int = 0
    merges_this_month: int = 0
    average_merge_score: float = 0.0
