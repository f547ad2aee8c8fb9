"""Pydantic schemas for the merge API."""

from mpi.schemas.merge import (
    DataMigration,
    MergeHistoryRecord,
    MergeRequest,
    MergeResult,
    MergeStats,
    MigrationAction,
    MigrationStatus,
    ProfileSnapshot,
    UnmergeBody,
    UnmergeRequest,
    VerifyMergeRequest,
)

__all__ = [
    "DataMigration",
    "MergeHistoryRecord",
    "MergeRequest",
    "MergeResult",
    "MergeStats",
    "MigrationAction",
    "MigrationStatus",
    "ProfileSnapshot",
    "UnmergeBody",
    "UnmergeRequest",
    "VerifyMergeRequest",
]
