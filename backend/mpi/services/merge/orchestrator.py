"""
Merge orchestrator: the public entry points of the merge engine.

A forward merge runs snapshot, reconcile, migrate, deactivate and ledger
write in that order. An unmerge reactivates the deprecated identity, replays
the completed migrations backwards, restores the surviving profile and
writes its own ledger entry.

Nothing is compensated automatically. When a collection migration fails
the merge still completes and the ledger records exactly which collections
moved; callers inspect ``data_migrations`` to detect partial completion.

Example:
    orchestrator = MergeOrchestrator(AsyncSessionLocal)
    result = await orchestrator.merge_patients(MergeRequest(...))
    if result.success:
        history_id = result.data.merge_history_id
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpi.core.config import settings
from mpi.core.database import utcnow
from mpi.models.identity_record import MPIIdentityRecord
from mpi.models.match_candidate import MatchCandidate, MatchCandidateStatus
from mpi.models.merge_history import MergeHistory, OperationType
from mpi.models.patient_profile import PatientProfile
from mpi.observability import merge_operations_total, tracer
from mpi.schemas.merge import (
    DataMigration,
    MergeHistoryRecord,
    MergeRequest,
    MergeResult,
    MergeStats,
    MigrationStatus,
    ProfileSnapshot,
    UnmergeRequest,
)
from mpi.services.audit_logger import AuditLogger
from mpi.services.merge.errors import (
    ErrorCode,
    LedgerEntryNotFoundError,
    LedgerWriteError,
    MergeError,
    MergeStepError,
    MergeUndoError,
    MergeValidationError,
    PatientNotFoundError,
    ServiceResult,
)
from mpi.services.merge.ledger import MergeLedger
from mpi.services.merge.locks import IdentityLockRegistry
from mpi.services.merge.migrator import CollectionMigrator
from mpi.services.merge.reconciler import reconcile
from mpi.services.merge.snapshot import SnapshotStore, apply_profile_snapshot, profile_to_json

logger = logging.getLogger(__name__)


class MergeState(str, Enum):
    """Steps of a forward merge."""

    STARTED = "started"
    SNAPSHOTTING = "snapshotting"
    RECONCILING = "reconciling"
    MIGRATING = "migrating"
    DEACTIVATING_LOSER = "deactivating_loser"
    LEDGER_WRITE = "ledger_write"
    DONE = "done"
    FAILED = "failed"


# Shared by every orchestrator in this process
identity_locks = IdentityLockRegistry(enabled=settings.MERGE_IDENTITY_LOCKING_ENABLED)


def _count(migrations: list[DataMigration], status: MigrationStatus) -> int:
    return sum(1 for m in migrations if m.status == status)


class MergeOrchestrator:
    """
    Sequences merge and unmerge operations.

    Every public method returns a ServiceResult and never raises; failures
    are audit-logged with the operation context before being converted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger | None = None,
        snapshots: SnapshotStore | None = None,
        migrator: CollectionMigrator | None = None,
        ledger: MergeLedger | None = None,
        locks: IdentityLockRegistry | None = None,
    ):
        self._session_factory = session_factory
        self.audit = audit or AuditLogger()
        self.snapshots = snapshots or SnapshotStore(session_factory, self.audit)
        self.migrator = migrator or CollectionMigrator(session_factory)
        self.ledger = ledger or MergeLedger(session_factory)
        self.locks = locks or identity_locks

    # =========================================================================
    # Forward merge
    # =========================================================================

    async def merge_patients(self, request: MergeRequest) -> ServiceResult[MergeResult]:
        """
        Merge the deprecated identity into the surviving one.

        Args:
            request: Identities, tenant, operator and decision provenance

        Returns:
            ServiceResult with the MergeResult, or OPERATION_FAILED /
            DATABASE_ERROR when a step could not complete
        """
        batch_id = uuid.uuid4()
        context = {
            "merge_batch_id": batch_id,
            "surviving_patient_id": request.surviving_patient_id,
            "deprecated_patient_id": request.deprecated_patient_id,
            "tenant_id": request.tenant_id,
            "performed_by": request.performed_by,
        }
        state = MergeState.STARTED

        with tracer.start_as_current_span("mpi.merge_patients") as span:
            span.set_attribute("mpi.merge_batch_id", str(batch_id))
            span.set_attribute("mpi.surviving_patient_id", str(request.surviving_patient_id))
            span.set_attribute("mpi.deprecated_patient_id", str(request.deprecated_patient_id))

            try:
                async with self.locks.hold(request.surviving_patient_id, request.deprecated_patient_id):
                    self.audit.info("MPI_MERGE_STARTED", context)
                    await self._validate_merge(request)

                    state = MergeState.SNAPSHOTTING
                    surviving_snapshot, deprecated_snapshot = await self._snapshot_pair(request, state)

                    state = MergeState.RECONCILING
                    merged_profile = await self._reconcile_profile(
                        request.surviving_patient_id, deprecated_snapshot, state
                    )

                    state = MergeState.MIGRATING
                    migrations = await self._migrate(request, state)

                    state = MergeState.DEACTIVATING_LOSER
                    identity_record_ids = await self._deactivate_loser(request, state)

                    state = MergeState.LEDGER_WRITE
                    entry = await self._write_merge_entry(
                        request,
                        batch_id,
                        surviving_snapshot,
                        deprecated_snapshot,
                        merged_profile,
                        migrations,
                        identity_record_ids,
                    )
                    state = MergeState.DONE
            except Exception as e:
                span.set_attribute("mpi.failed_state", state.value)
                span.record_exception(e)
                merge_operations_total.labels(operation="merge", outcome="failed").inc()
                self.audit.error("MPI_MERGE_FAILED", e, {**context, "state": state.value})
                if isinstance(e, MergeError):
                    return ServiceResult.fail(e.code, e.message, {"state": state.value})
                return ServiceResult.fail(
                    ErrorCode.OPERATION_FAILED,
                    f"Failed to merge patients: {e}",
                    {"state": state.value},
                )

        completed = _count(migrations, MigrationStatus.COMPLETED)
        failed = _count(migrations, MigrationStatus.FAILED)
        merge_operations_total.labels(
            operation="merge",
            outcome="partial" if failed else "success",
        ).inc()
        self.audit.info(
            "MPI_MERGE_COMPLETED",
            {
                **context,
                "merge_history_id": entry.id,
                "migrations_completed": completed,
                "migrations_failed": failed,
            },
        )

        return ServiceResult.ok(MergeResult(
            merge_history_id=entry.id,
            merge_batch_id=batch_id,
            surviving_patient_id=request.surviving_patient_id,
            deprecated_patient_id=request.deprecated_patient_id,
            data_migrations=migrations,
            success=True,
        ))

    async def _validate_merge(self, request: MergeRequest) -> None:
        """Fail fast, before any mutation, when the pair cannot be merged."""
        if request.surviving_patient_id == request.deprecated_patient_id:
            raise MergeValidationError("Cannot merge a patient into itself")

        patient_ids = [request.surviving_patient_id, request.deprecated_patient_id]
        try:
            active = await self.ledger.find_active_merge_of(request.deprecated_patient_id)

            async with self._session_factory() as session:
                result = await session.execute(
                    select(MPIIdentityRecord).where(
                        MPIIdentityRecord.patient_id.in_(patient_ids),
                        MPIIdentityRecord.tenant_id == request.tenant_id,
                    )
                )
                records = {record.patient_id: record for record in result.scalars()}

                result = await session.execute(
                    select(PatientProfile.user_id, PatientProfile.tenant_id).where(
                        PatientProfile.user_id.in_(patient_ids)
                    )
                )
                profile_tenants = {user_id: tenant_id for user_id, tenant_id in result}
        except SQLAlchemyError as e:
            raise MergeStepError(f"Failed to validate merge: {e}", MergeState.STARTED) from e

        if active is not None:
            raise MergeValidationError(
                f"Patient {request.deprecated_patient_id} was already merged into "
                f"{active.surviving_patient_id} (merge {active.id})"
            )

        for patient_id, role in (
            (request.deprecated_patient_id, "Deprecated"),
            (request.surviving_patient_id, "Surviving"),
        ):
            # Profiles without a tenant are accepted; missing ones fail at snapshot
            profile_tenant = profile_tenants.get(patient_id)
            if profile_tenant is not None and profile_tenant != request.tenant_id:
                raise MergeValidationError(
                    f"{role} patient {patient_id} belongs to another tenant"
                )

            record = records.get(patient_id)
            if record is not None and not record.is_active:
                raise MergeValidationError(
                    f"{role} patient {patient_id} identity is inactive: {record.deactivated_reason}"
                )

    async def _snapshot_pair(
        self, request: MergeRequest, state: MergeState
    ) -> tuple[ProfileSnapshot, ProfileSnapshot]:
        surviving, deprecated = await asyncio.gather(
            self.snapshots.snapshot(request.surviving_patient_id),
            self.snapshots.snapshot(request.deprecated_patient_id),
            return_exceptions=True,
        )
        for role, patient_id, outcome in (
            ("surviving", request.surviving_patient_id, surviving),
            ("deprecated", request.deprecated_patient_id, deprecated),
        ):
            if isinstance(outcome, BaseException):
                self.audit.error("MPI_SNAPSHOT_FAILED", outcome, {"patient_id": patient_id})
                if isinstance(outcome, PatientNotFoundError):
                    raise outcome
                raise MergeStepError(f"Failed to snapshot {role} patient: {outcome}", state)
        return surviving, deprecated

    async def _reconcile_profile(
        self,
        surviving_patient_id: UUID,
        deprecated_snapshot: ProfileSnapshot,
        state: MergeState,
    ) -> dict[str, Any]:
        """Fill gaps on the surviving profile; returns the post-merge profile."""
        try:
            async with self._session_factory() as session:
                profile = await session.get(PatientProfile, surviving_patient_id)
                if profile is None:
                    raise MergeStepError(f"Surviving profile {surviving_patient_id} disappeared", state)

                updates = reconcile(profile.to_dict(), deprecated_snapshot.profile)
                if updates:
                    for field, value in updates.items():
                        setattr(profile, field, value)
                    await session.commit()
                    await session.refresh(profile)
                    logger.info(
                        f"Filled {len(updates)} profile fields on {surviving_patient_id}",
                        extra={"fields": sorted(updates)},
                    )
                return profile_to_json(profile)
        except SQLAlchemyError as e:
            self.audit.error("MPI_PROFILE_MERGE_FAILED", e, {"surviving_patient_id": surviving_patient_id})
            raise MergeStepError(f"Failed to merge profile fields: {e}", state) from e

    async def _migrate(self, request: MergeRequest, state: MergeState) -> list[DataMigration]:
        try:
            return await self.migrator.migrate(request.surviving_patient_id, request.deprecated_patient_id)
        except Exception as e:
            self.audit.error(
                "MPI_REASSIGN_FAILED",
                e,
                {
                    "surviving_patient_id": request.surviving_patient_id,
                    "deprecated_patient_id": request.deprecated_patient_id,
                },
            )
            raise MergeStepError(f"Failed to reassign patient records: {e}", state) from e

    async def _deactivate_loser(
        self, request: MergeRequest, state: MergeState
    ) -> dict[UUID, UUID]:
        """Deactivate the deprecated identity and consume the match candidate."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(MPIIdentityRecord.patient_id, MPIIdentityRecord.id).where(
                        MPIIdentityRecord.patient_id.in_(
                            [request.surviving_patient_id, request.deprecated_patient_id]
                        ),
                        MPIIdentityRecord.tenant_id == request.tenant_id,
                    )
                )
                identity_record_ids = {patient_id: record_id for patient_id, record_id in result}

                await session.execute(
                    update(MPIIdentityRecord)
                    .where(
                        MPIIdentityRecord.patient_id == request.deprecated_patient_id,
                        MPIIdentityRecord.tenant_id == request.tenant_id,
                    )
                    .values(
                        is_active=False,
                        deactivated_at=utcnow(),
                        deactivated_reason=f"Merged into patient {request.surviving_patient_id}",
                    )
                )

                if request.match_candidate_id:
                    await session.execute(
                        update(MatchCandidate)
                        .where(MatchCandidate.id == request.match_candidate_id)
                        .values(status=MatchCandidateStatus.MERGED.value)
                    )
                await session.commit()
        except SQLAlchemyError as e:
            raise MergeStepError(f"Failed to deactivate deprecated patient: {e}", state) from e
        return identity_record_ids

    async def _write_merge_entry(
        self,
        request: MergeRequest,
        batch_id: UUID,
        surviving_snapshot: ProfileSnapshot,
        deprecated_snapshot: ProfileSnapshot,
        merged_profile: dict[str, Any],
        migrations: list[DataMigration],
        identity_record_ids: dict[UUID, UUID],
    ) -> MergeHistory:
        entry = MergeHistory(
            merge_batch_id=batch_id,
            operation_type=OperationType.MERGE.value,
            surviving_patient_id=request.surviving_patient_id,
            surviving_identity_record_id=identity_record_ids.get(request.surviving_patient_id),
            deprecated_patient_id=request.deprecated_patient_id,
            deprecated_identity_record_id=identity_record_ids.get(request.deprecated_patient_id),
            tenant_id=request.tenant_id,
            surviving_record_snapshot=surviving_snapshot.model_dump(mode="json"),
            deprecated_record_snapshot=deprecated_snapshot.model_dump(mode="json"),
            related_data_snapshot={
                "surviving": {k: len(v) for k, v in surviving_snapshot.related_data.items()},
                "deprecated": {k: len(v) for k, v in deprecated_snapshot.related_data.items()},
            },
            merged_record_snapshot=merged_profile,
            data_migrations=[m.model_dump(mode="json") for m in migrations],
            match_candidate_id=request.match_candidate_id,
            merge_decision_score=request.match_score,
            merge_decision_reason=request.reason,
            merge_rules_applied=request.rules_applied or [],
            performed_by=request.performed_by,
            is_reversible=True,
        )
        try:
            return await self.ledger.record(entry)
        except LedgerWriteError as e:
            self.audit.error("MPI_MERGE_HISTORY_FAILED", e, {"merge_batch_id": batch_id})
            raise

    # =========================================================================
    # Unmerge
    # =========================================================================

    async def unmerge_patients(self, request: UnmergeRequest) -> ServiceResult[MergeResult]:
        """
        Reverse a prior merge.

        Preconditions are checked before any mutation: the merge must exist,
        must not be rolled back and must still be reversible.

        Args:
            request: Merge history id, operator and reason

        Returns:
            ServiceResult with the MergeResult of the unmerge ledger entry,
            NOT_FOUND or OPERATION_FAILED
        """
        rollback_batch_id = uuid.uuid4()
        context = {
            "rollback_batch_id": rollback_batch_id,
            "merge_history_id": request.merge_history_id,
            "performed_by": request.performed_by,
        }

        with tracer.start_as_current_span("mpi.unmerge_patients") as span:
            span.set_attribute("mpi.rollback_batch_id", str(rollback_batch_id))
            span.set_attribute("mpi.merge_history_id", str(request.merge_history_id))

            try:
                original = await self.ledger.get(request.merge_history_id)
                if original is None:
                    return ServiceResult.fail(ErrorCode.NOT_FOUND, "Merge history record not found")

                async with self.locks.hold(original.surviving_patient_id, original.deprecated_patient_id):
                    # Re-read under the lock; a concurrent unmerge may have finished
                    original = await self.ledger.get(request.merge_history_id)
                    self._check_unmergeable(original)

                    self.audit.info(
                        "MPI_UNMERGE_STARTED",
                        {**context, "original_merge_batch_id": original.merge_batch_id},
                    )
                    span.set_attribute("mpi.surviving_patient_id", str(original.surviving_patient_id))
                    span.set_attribute("mpi.deprecated_patient_id", str(original.deprecated_patient_id))

                    await self._reactivate_deprecated(original)
                    rollbacks = await self._rollback_migrations(original)
                    await self._restore_surviving_profile(original)
                    unmerge_entry = await self._write_unmerge_entry(
                        original, request, rollback_batch_id, rollbacks
                    )
                    try:
                        await self._reopen_candidate(original, request.reason)
                    except SQLAlchemyError as e:
                        # The unmerge is already committed; the candidate stays as it was
                        self.audit.error(
                            "MPI_UNMERGE_FAILED",
                            e,
                            {**context, "match_candidate_id": original.match_candidate_id},
                        )
            except MergeValidationError as e:
                logger.info(f"Unmerge of {request.merge_history_id} rejected: {e.message}")
                return ServiceResult.fail(e.code, e.message)
            except Exception as e:
                span.record_exception(e)
                merge_operations_total.labels(operation="unmerge", outcome="failed").inc()
                self.audit.error("MPI_UNMERGE_FAILED", e, context)
                if isinstance(e, MergeError):
                    code = ErrorCode.NOT_FOUND if e.code == ErrorCode.NOT_FOUND else ErrorCode.OPERATION_FAILED
                    return ServiceResult.fail(code, e.message)
                return ServiceResult.fail(ErrorCode.OPERATION_FAILED, f"Failed to unmerge patients: {e}")

        rolled_back = _count(rollbacks, MigrationStatus.ROLLED_BACK)
        failed = _count(rollbacks, MigrationStatus.FAILED)
        merge_operations_total.labels(
            operation="unmerge",
            outcome="partial" if failed else "success",
        ).inc()
        self.audit.info(
            "MPI_UNMERGE_COMPLETED",
            {
                **context,
                "unmerge_history_id": unmerge_entry.id,
                "surviving_patient_id": original.surviving_patient_id,
                "deprecated_patient_id": original.deprecated_patient_id,
                "rollbacks_completed": rolled_back,
                "rollbacks_failed": failed,
            },
        )

        return ServiceResult.ok(MergeResult(
            merge_history_id=unmerge_entry.id,
            merge_batch_id=rollback_batch_id,
            surviving_patient_id=original.surviving_patient_id,
            deprecated_patient_id=original.deprecated_patient_id,
            data_migrations=rollbacks,
            success=True,
        ))

    @staticmethod
    def _check_unmergeable(entry: MergeHistory | None) -> None:
        if entry is None:
            raise LedgerEntryNotFoundError("Merge history record not found")
        if entry.rolled_back:
            raise MergeValidationError("This merge has already been rolled back")
        if not entry.is_reversible:
            raise MergeValidationError("This merge operation is not reversible")
        if entry.operation_type != OperationType.MERGE.value:
            raise MergeValidationError(f"A {entry.operation_type} operation is not reversible")

    async def _reactivate_deprecated(self, original: MergeHistory) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(MPIIdentityRecord)
                .where(
                    MPIIdentityRecord.patient_id == original.deprecated_patient_id,
                    MPIIdentityRecord.tenant_id == original.tenant_id,
                )
                .values(is_active=True, deactivated_at=None, deactivated_reason=None)
            )
            await session.commit()

    async def _rollback_migrations(self, original: MergeHistory) -> list[DataMigration]:
        try:
            return await self.migrator.rollback_migrations(
                original.data_migrations, original.deprecated_patient_id
            )
        except Exception as e:
            self.audit.error("MPI_ROLLBACK_REASSIGN_FAILED", e, {"merge_history_id": original.id})
            raise MergeUndoError(f"Failed to rollback record reassignments: {e}") from e

    async def _restore_surviving_profile(self, original: MergeHistory) -> None:
        """Write the pre-merge surviving profile back over the current one."""
        snapshot_profile = (original.surviving_record_snapshot or {}).get("profile")
        if not snapshot_profile:
            return
        async with self._session_factory() as session:
            profile = await session.get(PatientProfile, original.surviving_patient_id)
            if profile is None:
                raise MergeUndoError(f"Surviving profile {original.surviving_patient_id} not found")
            apply_profile_snapshot(profile, snapshot_profile)
            await session.commit()

    async def _write_unmerge_entry(
        self,
        original: MergeHistory,
        request: UnmergeRequest,
        rollback_batch_id: UUID,
        rollbacks: list[DataMigration],
    ) -> MergeHistory:
        unmerge_entry = MergeHistory(
            merge_batch_id=rollback_batch_id,
            operation_type=OperationType.UNMERGE.value,
            surviving_patient_id=original.surviving_patient_id,
            surviving_identity_record_id=original.surviving_identity_record_id,
            deprecated_patient_id=original.deprecated_patient_id,
            deprecated_identity_record_id=original.deprecated_identity_record_id,
            tenant_id=original.tenant_id,
            surviving_record_snapshot=original.merged_record_snapshot or {},
            deprecated_record_snapshot={},
            data_migrations=[m.model_dump(mode="json") for m in rollbacks],
            merge_decision_reason=request.reason,
            merge_rules_applied=["rollback"],
            performed_by=request.performed_by,
            is_reversible=False,
        )
        try:
            _, unmerge_entry = await self.ledger.record_rollback(
                original.id, unmerge_entry, request.performed_by, request.reason
            )
        except LedgerWriteError as e:
            self.audit.error("MPI_UNMERGE_HISTORY_FAILED", e, {"rollback_batch_id": rollback_batch_id})
            raise
        return unmerge_entry

    async def _reopen_candidate(self, original: MergeHistory, reason: str) -> None:
        if not original.match_candidate_id:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(MatchCandidate)
                .where(MatchCandidate.id == original.match_candidate_id)
                .values(
                    status=MatchCandidateStatus.PENDING.value,
                    reviewed_by=None,
                    reviewed_at=None,
                    review_decision=None,
                    review_notes=f"Merge rolled back: {reason}",
                )
            )
            await session.commit()

    # =========================================================================
    # Verification and queries
    # =========================================================================

    async def verify_merge(
        self,
        merge_history_id: UUID,
        verified_by: UUID,
        notes: str | None = None,
    ) -> ServiceResult[MergeHistoryRecord]:
        try:
            entry = await self.ledger.verify(merge_history_id, verified_by, notes)
        except Exception as e:
            self.audit.error(
                "MPI_VERIFY_FAILED",
                e,
                {"merge_history_id": merge_history_id, "verified_by": verified_by},
            )
            return ServiceResult.from_exception(e, "Failed to verify merge")

        self.audit.info("MPI_MERGE_VERIFIED", {"merge_history_id": merge_history_id, "verified_by": verified_by})
        return ServiceResult.ok(MergeHistoryRecord.model_validate(entry))

    async def get_merge_history(
        self,
        patient_id: UUID,
        limit: int | None = None,
        include_rolled_back: bool = False,
    ) -> ServiceResult[list[MergeHistoryRecord]]:
        try:
            entries = await self.ledger.history_for(patient_id, limit, include_rolled_back)
        except Exception as e:
            self.audit.error("MPI_GET_HISTORY_FAILED", e, {"patient_id": patient_id})
            return ServiceResult.from_exception(e, "Failed to get merge history")
        return ServiceResult.ok([MergeHistoryRecord.model_validate(e) for e in entries])

    async def get_merge_history_by_id(
        self, merge_history_id: UUID
    ) -> ServiceResult[MergeHistoryRecord | None]:
        try:
            entry = await self.ledger.get(merge_history_id)
        except Exception as e:
            self.audit.error("MPI_GET_HISTORY_BY_ID_FAILED", e, {"merge_history_id": merge_history_id})
            return ServiceResult.from_exception(e, "Failed to get merge history")
        return ServiceResult.ok(MergeHistoryRecord.model_validate(entry) if entry else None)

    async def get_merge_stats(
        self,
        tenant_id: UUID,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> ServiceResult[MergeStats]:
        try:
            stats = await self.ledger.stats(tenant_id, from_date, to_date)
        except Exception as e:
            self.audit.error("MPI_MERGE_STATS_FAILED", e, {"tenant_id": tenant_id})
            return ServiceResult.from_exception(e, "Failed to get merge stats")
        return ServiceResult.ok(stats)

    async def get_reversible_merges(
        self, tenant_id: UUID, limit: int | None = None
    ) -> ServiceResult[list[MergeHistoryRecord]]:
        try:
            entries = await self.ledger.reversible_merges(tenant_id, limit)
        except Exception as e:
            self.audit.error("MPI_GET_REVERSIBLE_FAILED", e, {"tenant_id": tenant_id})
            return ServiceResult.from_exception(e, "Failed to get reversible merges")
        return ServiceResult.ok([MergeHistoryRecord.model_validate(e) for e in entries])
