"""
Patient identity merge engine.

Components, leaves first:

Snapshot Store:
    Captures a profile plus capped samples of dependent collections.

Profile Reconciler:
    Fills null fields and unions list fields onto the surviving profile.

Collection Migrator:
    Moves dependent-record ownership collection by collection, recording
    each outcome independently.

Merge Ledger:
    Append-only history of merges and unmerges, plus read-only queries.

Merge Orchestrator:
    Sequences the steps and exposes the public operations.

Example usage:
    from mpi.services.merge import MergeOrchestrator
    from mpi.schemas.merge import MergeRequest

    orchestrator = MergeOrchestrator(AsyncSessionLocal)
    result = await orchestrator.merge_patients(MergeRequest(
        surviving_patient_id=p1,
        deprecated_patient_id=p2,
        tenant_id=tenant_id,
        performed_by=user_id,
        reason="Duplicate registration",
    ))
"""

from mpi.services.merge.errors import (
    ErrorCode,
    LedgerEntryNotFoundError,
    LedgerImmutableError,
    LedgerWriteError,
    MergeError,
    MergeStepError,
    MergeUndoError,
    MergeValidationError,
    PatientNotFoundError,
    ServiceError,
    ServiceResult,
)
from mpi.services.merge.ledger import MergeLedger
from mpi.services.merge.locks import IdentityLockRegistry
from mpi.services.merge.migrator import CollectionMigrator
from mpi.services.merge.orchestrator import MergeOrchestrator, MergeState
from mpi.services.merge.reconciler import FILLABLE_FIELDS, UNION_FIELDS, reconcile
from mpi.services.merge.registry import MERGEABLE_COLLECTIONS, MergeableCollection
from mpi.services.merge.snapshot import SnapshotStore

__all__ = [
    # Errors
    "ErrorCode",
    "LedgerEntryNotFoundError",
    "LedgerImmutableError",
    "LedgerWriteError",
    "MergeError",
    "MergeStepError",
    "MergeUndoError",
    "MergeValidationError",
    "PatientNotFoundError",
    "ServiceError",
    "ServiceResult",
    # Components
    "CollectionMigrator",
    "IdentityLockRegistry",
    "MergeLedger",
    "MergeOrchestrator",
    "MergeState",
    "SnapshotStore",
    # Registry and rules
    "FILLABLE_FIELDS",
    "MERGEABLE_COLLECTIONS",
    "MergeableCollection",
    "UNION_FIELDS",
    "reconcile",
]
