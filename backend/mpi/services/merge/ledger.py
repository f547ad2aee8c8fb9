"""
Merge ledger: append-only writes and read-only queries over merge history.

Importing this module registers the ORM guard that keeps ledger rows
append-only: after insert only the rollback stamp (once) and the
verification stamp may change.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, event, func, inspect, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpi.core.database import utcnow
from mpi.models.merge_history import (
    MUTABLE_FIELDS,
    ROLLBACK_FIELDS,
    MergeHistory,
    OperationType,
)
from mpi.schemas.merge import MergeStats
from mpi.services.merge.errors import (
    LedgerEntryNotFoundError,
    LedgerImmutableError,
    LedgerWriteError,
    MergeUndoError,
)

logger = logging.getLogger(__name__)


@event.listens_for(MergeHistory, "before_update")
def guard_ledger_immutability(mapper: Any, connection: Any, target: MergeHistory) -> None:
    """Reject flushes that change frozen ledger columns."""
    state = inspect(target)
    changed = {attr.key for attr in state.attrs if attr.history.has_changes()}

    frozen = changed - MUTABLE_FIELDS
    if frozen:
        raise LedgerImmutableError(
            f"Merge history {target.id} is append-only; cannot change {', '.join(sorted(frozen))}"
        )

    if changed & ROLLBACK_FIELDS:
        history = state.attrs.rolled_back.history
        previous = history.deleted or history.unchanged
        if previous and previous[0]:
            raise LedgerImmutableError(f"Merge history {target.id} was already rolled back")

    if "is_reversible" in changed and target.is_reversible:
        raise LedgerImmutableError(f"Merge history {target.id} cannot be made reversible again")


def _current_month_start() -> datetime:
    return utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class MergeLedger:
    """
    Persistence for MergeHistory rows.

    Every call opens its own session. Entries are returned detached; the
    session factory must not expire them on commit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # =========================================================================
    # Writes
    # =========================================================================

    async def record(self, entry: MergeHistory) -> MergeHistory:
        """Insert a new ledger entry and return it with server state loaded."""
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to record merge history: {e}") from e
        return entry

    async def record_rollback(
        self,
        merge_history_id: UUID,
        unmerge_entry: MergeHistory,
        rolled_back_by: UUID,
        reason: str,
    ) -> tuple[MergeHistory, MergeHistory]:
        """
        Stamp a merge as rolled back and insert its unmerge entry in one commit.

        The original is re-read inside the write so a concurrent rollback
        that landed first is detected.

        Args:
            merge_history_id: Merge being reversed
            unmerge_entry: New unmerge ledger entry
            rolled_back_by: User performing the unmerge
            reason: Why the merge is reversed

        Returns:
            Tuple of (stamped original, inserted unmerge entry)

        Raises:
            MergeUndoError: If the merge can no longer be reversed
            LedgerWriteError: If the write fails
        """
        try:
            async with self._session_factory() as session:
                original = await session.get(MergeHistory, merge_history_id, with_for_update=True)
                if original is None:
                    raise LedgerEntryNotFoundError(f"Merge history {merge_history_id} not found")
                if not original.can_unmerge:
                    raise MergeUndoError("This merge has already been rolled back")

                original.stamp_rollback(
                    rolled_back_by=rolled_back_by,
                    reason=reason,
                    rollback_batch_id=unmerge_entry.merge_batch_id,
                )
                session.add(unmerge_entry)
                await session.commit()
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to record unmerge history: {e}") from e
        return original, unmerge_entry

    async def verify(
        self,
        merge_history_id: UUID,
        verified_by: UUID,
        notes: str | None = None,
    ) -> MergeHistory:
        """Stamp human sign-off on an entry; reversibility is untouched."""
        async with self._session_factory() as session:
            entry = await session.get(MergeHistory, merge_history_id)
            if entry is None:
                raise LedgerEntryNotFoundError(f"Merge history {merge_history_id} not found")
            entry.verified_by = verified_by
            entry.verified_at = utcnow()
            entry.verification_notes = notes
            await session.commit()
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, merge_history_id: UUID) -> MergeHistory | None:
        async with self._session_factory() as session:
            return await session.get(MergeHistory, merge_history_id)

    async def find_active_merge_of(self, deprecated_patient_id: UUID) -> MergeHistory | None:
        """Return the active merge that deprecated this patient, if any."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(MergeHistory)
                .where(
                    MergeHistory.deprecated_patient_id == deprecated_patient_id,
                    MergeHistory.operation_type == OperationType.MERGE.value,
                    MergeHistory.rolled_back.is_(False),
                )
                .order_by(MergeHistory.performed_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def history_for(
        self,
        patient_id: UUID,
        limit: int | None = None,
        include_rolled_back: bool = False,
    ) -> list[MergeHistory]:
        """Entries where the patient is either side, newest first."""
        query = (
            select(MergeHistory)
            .where(
                or_(
                    MergeHistory.surviving_patient_id == patient_id,
                    MergeHistory.deprecated_patient_id == patient_id,
                )
            )
            .order_by(MergeHistory.performed_at.desc())
        )
        if not include_rolled_back:
            query = query.where(MergeHistory.rolled_back.is_(False))
        if limit:
            query = query.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def reversible_merges(self, tenant_id: UUID, limit: int | None = None) -> list[MergeHistory]:
        """Merges of a tenant that can still be reversed, newest first."""
        query = (
            select(MergeHistory)
            .where(
                MergeHistory.tenant_id == tenant_id,
                MergeHistory.operation_type == OperationType.MERGE.value,
                MergeHistory.is_reversible.is_(True),
                MergeHistory.rolled_back.is_(False),
            )
            .order_by(MergeHistory.performed_at.desc())
        )
        if limit:
            query = query.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def stats(
        self,
        tenant_id: UUID,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> MergeStats:
        """Aggregate merge counts and the mean decision score for a tenant."""
        is_merge = and_(
            MergeHistory.operation_type == OperationType.MERGE.value,
            MergeHistory.rolled_back.is_(False),
        )
        query = select(
            func.count().filter(is_merge),
            func.count().filter(MergeHistory.operation_type == OperationType.UNMERGE.value),
            func.count().filter(is_merge, MergeHistory.verified_at.is_(None)),
            func.count().filter(is_merge, MergeHistory.performed_at >= _current_month_start()),
            func.avg(MergeHistory.merge_decision_score).filter(is_merge),
        ).where(MergeHistory.tenant_id == tenant_id)

        if from_date is not None:
            query = query.where(MergeHistory.performed_at >= from_date)
        if to_date is not None:
            query = query.where(MergeHistory.performed_at <= to_date)

        async with self._session_factory() as session:
            row = (await session.execute(query)).one()

        merges, unmerges, pending, this_month, average = row
        return MergeStats(
            total_merges=merges or 0,
            total_unmerges=unmerges or 0,
            pending_verification=pending or 0,
            merges_this_month=this_month or 0,
            average_merge_score=round(float(average), 2) if average is not None else 0.0,
        )
