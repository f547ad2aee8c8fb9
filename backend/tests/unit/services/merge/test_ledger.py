"""
Unit tests for MergeLedger.

Covers append-only enforcement, rollback stamping, verification and the
history, reversibility and statistics queries.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from mpi.models.merge_history import MergeHistory
from mpi.services.merge.errors import (
    LedgerEntryNotFoundError,
    LedgerImmutableError,
    MergeUndoError,
)
from mpi.services.merge.ledger import MergeLedger


def _unmerge_entry(original: MergeHistory) -> MergeHistory:
    return MergeHistory(
        operation_type="unmerge",
        surviving_patient_id=original.surviving_patient_id,
        deprecated_patient_id=original.deprecated_patient_id,
        tenant_id=original.tenant_id,
        surviving_record_snapshot={},
        deprecated_record_snapshot={},
        merge_decision_reason="Wrong person",
        merge_rules_applied=["rollback"],
        performed_by=uuid.uuid4(),
        is_reversible=False,
    )


class TestImmutability:
    """Tests for the append-only guard."""

    @pytest.mark.asyncio
    async def test_frozen_column_cannot_change(self, session_factory, make_history):
        entry = await make_history()

        async with session_factory() as session:
            stored = await session.get(MergeHistory, entry.id)
            stored.merge_decision_reason = "Rewritten"
            with pytest.raises(LedgerImmutableError):
                await session.commit()

    @pytest.mark.asyncio
    async def test_snapshot_cannot_change(self, session_factory, make_history):
        entry = await make_history(surviving_record_snapshot={"profile": {"city": "Oslo"}})

        async with session_factory() as session:
            stored = await session.get(MergeHistory, entry.id)
            stored.surviving_record_snapshot = {"profile": {"city": "Bergen"}}
            with pytest.raises(LedgerImmutableError):
                await session.commit()

    @pytest.mark.asyncio
    async def test_rollback_stamp_is_written_once(self, session_factory, make_history):
        entry = await make_history()
        ledger = MergeLedger(session_factory)
        await ledger.record_rollback(entry.id, _unmerge_entry(entry), uuid.uuid4(), "Wrong person")

        async with session_factory() as session:
            stored = await session.get(MergeHistory, entry.id)
            stored.rollback_reason = "Another reason"
            with pytest.raises(LedgerImmutableError):
                await session.commit()

    @pytest.mark.asyncio
    async def test_cannot_become_reversible_again(self, session_factory, make_history):
        entry = await make_history(is_reversible=False)

        async with session_factory() as session:
            stored = await session.get(MergeHistory, entry.id)
            stored.is_reversible = True
            with pytest.raises(LedgerImmutableError):
                await session.commit()


class TestRecordRollback:
    """Tests for stamping a merge as rolled back."""

    @pytest.mark.asyncio
    async def test_stamps_original_and_inserts_unmerge(self, session_factory, make_history):
        entry = await make_history()
        ledger = MergeLedger(session_factory)
        undo = _unmerge_entry(entry)
        actor = uuid.uuid4()

        original, inserted = await ledger.record_rollback(entry.id, undo, actor, "Wrong person")

        stored = await ledger.get(entry.id)
        assert stored.rolled_back is True
        assert stored.is_reversible is False
        assert stored.rolled_back_by == actor
        assert stored.rollback_reason == "Wrong person"
        assert stored.rollback_batch_id == undo.merge_batch_id
        assert stored.rolled_back_at is not None
        assert (await ledger.get(inserted.id)).operation_type == "unmerge"

    @pytest.mark.asyncio
    async def test_second_rollback_is_rejected(self, session_factory, make_history):
        entry = await make_history()
        ledger = MergeLedger(session_factory)
        await ledger.record_rollback(entry.id, _unmerge_entry(entry), uuid.uuid4(), "First")

        second = _unmerge_entry(entry)
        with pytest.raises(MergeUndoError):
            await ledger.record_rollback(entry.id, second, uuid.uuid4(), "Second")

        assert await ledger.get(second.id) is None

    @pytest.mark.asyncio
    async def test_missing_entry(self, session_factory):
        ledger = MergeLedger(session_factory)
        undo = MergeHistory(
            operation_type="unmerge",
            surviving_patient_id=uuid.uuid4(),
            deprecated_patient_id=uuid.uuid4(),
            tenant_id=uuid.uuid4(),
            surviving_record_snapshot={},
            deprecated_record_snapshot={},
            merge_decision_reason="x",
            performed_by=uuid.uuid4(),
        )

        with pytest.raises(LedgerEntryNotFoundError):
            await ledger.record_rollback(uuid.uuid4(), undo, uuid.uuid4(), "x")


class TestVerify:
    """Tests for verification stamping."""

    @pytest.mark.asyncio
    async def test_verify_sets_stamp_and_keeps_reversibility(self, session_factory, make_history):
        entry = await make_history()
        ledger = MergeLedger(session_factory)
        reviewer = uuid.uuid4()

        verified = await ledger.verify(entry.id, reviewer, "Checked by phone")

        assert verified.verified_by == reviewer
        assert verified.verified_at is not None
        assert verified.verification_notes == "Checked by phone"
        stored = await ledger.get(entry.id)
        assert stored.is_reversible is True

    @pytest.mark.asyncio
    async def test_verify_can_be_repeated(self, session_factory, make_history):
        entry = await make_history()
        ledger = MergeLedger(session_factory)
        await ledger.verify(entry.id, uuid.uuid4())

        second = uuid.uuid4()
        await ledger.verify(entry.id, second, "Rechecked")

        assert (await ledger.get(entry.id)).verified_by == second

    @pytest.mark.asyncio
    async def test_verify_missing_entry(self, session_factory):
        with pytest.raises(LedgerEntryNotFoundError):
            await MergeLedger(session_factory).verify(uuid.uuid4(), uuid.uuid4())


class TestQueries:
    """Tests for ledger read queries."""

    @pytest.mark.asyncio
    async def test_history_covers_both_sides_newest_first(self, session_factory, make_history):
        patient = uuid.uuid4()
        now = datetime.now(timezone.utc)
        older = await make_history(surviving_patient_id=patient, performed_at=now - timedelta(days=2))
        newer = await make_history(deprecated_patient_id=patient, performed_at=now - timedelta(days=1))
        await make_history()

        entries = await MergeLedger(session_factory).history_for(patient)

        assert [e.id for e in entries] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_history_excludes_rolled_back_by_default(self, session_factory, make_history):
        patient = uuid.uuid4()
        active = await make_history(surviving_patient_id=patient)
        reversed_entry = await make_history(surviving_patient_id=patient)
        ledger = MergeLedger(session_factory)
        await ledger.record_rollback(
            reversed_entry.id, _unmerge_entry(reversed_entry), uuid.uuid4(), "Wrong person"
        )

        default = await ledger.history_for(patient)
        everything = await ledger.history_for(patient, include_rolled_back=True)

        assert reversed_entry.id not in {e.id for e in default}
        assert active.id in {e.id for e in default}
        assert reversed_entry.id in {e.id for e in everything}

    @pytest.mark.asyncio
    async def test_history_limit(self, session_factory, make_history):
        patient = uuid.uuid4()
        for _ in range(3):
            await make_history(surviving_patient_id=patient)

        entries = await MergeLedger(session_factory).history_for(patient, limit=2)

        assert len(entries) == 2

    @pytest.mark.asyncio
    async def test_reversible_merges(self, session_factory, make_history, tenant_id):
        reversible = await make_history()
        await make_history(is_reversible=False)
        await make_history(operation_type="link")
        await make_history(tenant_id=uuid.uuid4())

        entries = await MergeLedger(session_factory).reversible_merges(tenant_id)

        assert [e.id for e in entries] == [reversible.id]

    @pytest.mark.asyncio
    async def test_find_active_merge_of(self, session_factory, make_history):
        deprecated = uuid.uuid4()
        ledger = MergeLedger(session_factory)
        assert await ledger.find_active_merge_of(deprecated) is None

        entry = await make_history(deprecated_patient_id=deprecated)

        found = await ledger.find_active_merge_of(deprecated)
        assert found.id == entry.id


class TestStats:
    """Tests for tenant statistics."""

    @pytest.mark.asyncio
    async def test_empty_tenant(self, session_factory, tenant_id):
        stats = await MergeLedger(session_factory).stats(tenant_id)

        assert stats.total_merges == 0
        assert stats.total_unmerges == 0
        assert stats.pending_verification == 0
        assert stats.merges_this_month == 0
        assert stats.average_merge_score == 0.0

    @pytest.mark.asyncio
    async def test_counts_and_average(self, session_factory, make_history, tenant_id):
        ledger = MergeLedger(session_factory)
        await make_history(merge_decision_score=90.0)
        verified = await make_history(merge_decision_score=85.5)
        await ledger.verify(verified.id, uuid.uuid4())
        reversed_entry = await make_history(merge_decision_score=10.0)
        await ledger.record_rollback(
            reversed_entry.id, _unmerge_entry(reversed_entry), uuid.uuid4(), "Wrong person"
        )

        stats = await ledger.stats(tenant_id)

        assert stats.total_merges == 2
        assert stats.total_unmerges == 1
        assert stats.pending_verification == 1
        assert stats.merges_this_month == 2
        assert stats.average_merge_score == 87.75

    @pytest.mark.asyncio
    async def test_date_window(self, session_factory, make_history, tenant_id):
        now = datetime.now(timezone.utc)
        await make_history(performed_at=now - timedelta(days=400))
        await make_history(performed_at=now)

        stats = await MergeLedger(session_factory).stats(
            tenant_id, from_date=now - timedelta(days=30)
        )

        assert stats.total_merges == 1
