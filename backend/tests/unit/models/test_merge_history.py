"""Unit tests for MergeHistory model."""

from datetime import datetime, timezone
from uuid import uuid4

from mpi.models.merge_history import (
    MUTABLE_FIELDS,
    ROLLBACK_FIELDS,
    MergeHistory,
    OperationType,
)


def _history(**fields) -> MergeHistory:
    fields.setdefault("operation_type", OperationType.MERGE.value)
    return MergeHistory(
        surviving_patient_id=uuid4(),
        deprecated_patient_id=uuid4(),
        tenant_id=uuid4(),
        surviving_record_snapshot={},
        deprecated_record_snapshot={},
        merge_decision_reason="Duplicate registration",
        performed_by=uuid4(),
        **fields,
    )


class TestOperationTypeEnum:
    """Tests for OperationType enum."""

    def test_operation_type_values(self):
        assert OperationType.MERGE.value == "merge"
        assert OperationType.UNMERGE.value == "unmerge"
        assert OperationType.LINK.value == "link"
        assert OperationType.UNLINK.value == "unlink"


class TestMergeHistoryCreation:
    """Tests for MergeHistory model creation."""

    def test_defaults(self):
        """Test that unsaved rows carry usable defaults."""
        history = _history()

        assert history.merge_batch_id is not None
        assert history.data_migrations == []
        assert history.is_reversible is True
        assert history.rolled_back is False
        assert history.performed_at is not None

    def test_explicit_values_win(self):
        batch_id = uuid4()
        performed_at = datetime(2026, 1, 1, tzinfo=timezone.utc)

        history = _history(merge_batch_id=batch_id, performed_at=performed_at, is_reversible=False)

        assert history.merge_batch_id == batch_id
        assert history.performed_at == performed_at
        assert history.is_reversible is False

    def test_mutable_fields(self):
        assert ROLLBACK_FIELDS <= MUTABLE_FIELDS
        assert "verified_at" in MUTABLE_FIELDS
        assert "surviving_record_snapshot" not in MUTABLE_FIELDS
        assert "data_migrations" not in MUTABLE_FIELDS


class TestMergeHistoryCanUnmerge:
    """Tests for can_unmerge property."""

    def test_fresh_merge(self):
        assert _history().can_unmerge is True

    def test_rolled_back_merge(self):
        assert _history(rolled_back=True, is_reversible=False).can_unmerge is False

    def test_not_reversible_merge(self):
        assert _history(is_reversible=False).can_unmerge is False

    def test_unmerge_entry(self):
        assert _history(operation_type=OperationType.UNMERGE.value).can_unmerge is False

    def test_link_entry(self):
        assert _history(operation_type=OperationType.LINK.value).can_unmerge is False


class TestStampRollback:
    """Tests for stamp_rollback."""

    def test_sets_every_rollback_field(self):
        history = _history()
        actor = uuid4()
        batch_id = uuid4()

        history.stamp_rollback(actor, "Different people", batch_id)

        assert history.rolled_back is True
        assert history.rolled_back_by == actor
        assert history.rollback_reason == "Different people"
        assert history.rollback_batch_id == batch_id
        assert history.rolled_back_at is not None
        assert history.is_reversible is False
        assert history.can_unmerge is False

    def test_explicit_timestamp(self):
        history = _history()
        when = datetime(2026, 5, 1, tzinfo=timezone.utc)

        history.stamp_rollback(uuid4(), "reason", uuid4(), rolled_back_at=when)

        assert history.rolled_back_at == when

    def test_repr(self):
        history = _history()
        history.stamp_rollback(uuid4(), "reason", uuid4())

        assert "rolled back" in repr(history)
