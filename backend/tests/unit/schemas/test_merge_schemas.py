"""Unit tests for merge schemas."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from mpi.schemas.merge import (
    DataMigration,
    MergeHistoryRecord,
    MergeRequest,
    MergeResult,
    MigrationStatus,
    ProfileSnapshot,
)


def _merge_request(**overrides):
    data = {
        "surviving_patient_id": uuid4(),
        "deprecated_patient_id": uuid4(),
        "tenant_id": uuid4(),
        "performed_by": uuid4(),
        "reason": "Duplicate registration",
    }
    data.update(overrides)
    return MergeRequest(**data)


class TestMergeRequest:
    """Tests for MergeRequest validation."""

    def test_reason_is_stripped(self):
        assert _merge_request(reason="  typo at intake ").reason == "typo at intake"

    def test_blank_reason_rejected(self):
        with pytest.raises(ValidationError):
            _merge_request(reason="   ")

    def test_score_range(self):
        assert _merge_request(match_score=100.0).match_score == 100.0
        with pytest.raises(ValidationError):
            _merge_request(match_score=101.0)

    def test_optional_provenance_defaults(self):
        request = _merge_request()

        assert request.match_candidate_id is None
        assert request.match_score is None
        assert request.rules_applied is None


class TestDataMigration:
    """Tests for DataMigration."""

    def test_defaults(self):
        migration = DataMigration(collection="encounters")

        assert migration.ids == []
        assert migration.status == MigrationStatus.PENDING
        assert migration.error is None

    def test_replayable_only_when_completed_with_ids(self):
        assert DataMigration(collection="a", ids=["x"], status="completed").is_replayable
        assert not DataMigration(collection="a", ids=[], status="completed").is_replayable
        assert not DataMigration(collection="a", ids=["x"], status="failed").is_replayable
        assert not DataMigration(collection="a", ids=["x"], status="rolled_back").is_replayable

    def test_integer_and_string_ids(self):
        migration = DataMigration(collection="a", ids=[1, "b2"])

        assert migration.model_dump(mode="json")["ids"] == [1, "b2"]


class TestProfileSnapshot:
    """Tests for ProfileSnapshot."""

    def test_is_frozen(self):
        snapshot = ProfileSnapshot(
            identity_id=uuid4(),
            captured_at=datetime.now(timezone.utc),
            profile={"city": "Oslo"},
        )

        with pytest.raises(ValidationError):
            snapshot.version = 2

    def test_json_dump_carries_version(self):
        snapshot = ProfileSnapshot(
            identity_id=uuid4(),
            captured_at=datetime.now(timezone.utc),
            profile={},
            related_data={"encounters": [{"id": "e1"}]},
        )

        dumped = snapshot.model_dump(mode="json")

        assert dumped["version"] == 1
        assert dumped["related_data"] == {"encounters": [{"id": "e1"}]}


class TestMergeResult:
    """Tests for MergeResult."""

    def test_failed_migrations(self):
        result = MergeResult(
            merge_history_id=uuid4(),
            merge_batch_id=uuid4(),
            surviving_patient_id=uuid4(),
            deprecated_patient_id=uuid4(),
            data_migrations=[
                DataMigration(collection="encounters", status="completed"),
                DataMigration(collection="goals", status="failed", error="timeout"),
            ],
        )

        assert [m.collection for m in result.failed_migrations] == ["goals"]


class TestMergeHistoryRecord:
    """Tests for MergeHistoryRecord."""

    def test_naive_datetimes_become_utc(self):
        naive = datetime(2026, 3, 1, 12, 0)
        record = MergeHistoryRecord(
            id=uuid4(),
            merge_batch_id=uuid4(),
            operation_type="merge",
            surviving_patient_id=uuid4(),
            deprecated_patient_id=uuid4(),
            tenant_id=uuid4(),
            surviving_record_snapshot={},
            deprecated_record_snapshot={},
            merge_decision_reason="dup",
            performed_by=uuid4(),
            performed_at=naive,
            is_reversible=True,
            rolled_back=False,
            created_at=naive,
            updated_at=naive,
        )

        assert record.performed_at.tzinfo == timezone.utc
        assert record.rolled_back_at is None
