"""
Database models.

This module exports all database models for easy import throughout the
application. All models inherit from Base and carry the created_at and
updated_at audit columns.

Models:
    - PatientProfile: Mutable demographic profile of a patient
    - MPIIdentityRecord: Durable per-tenant identity of a patient
    - MatchCandidate: Suspected duplicate pair produced by matching
    - MatchCandidateStatus: Enum of candidate review states
    - MergeHistory: Append-only ledger of merge and unmerge operations
    - OperationType: Enum of ledger operation types
"""

from mpi.models.identity_record import MPIIdentityRecord
from mpi.models.match_candidate import MatchCandidate, MatchCandidateStatus
from mpi.models.merge_history import MergeHistory, OperationType
from mpi.models.patient_profile import PatientProfile

__all__ = [
    "PatientProfile",
    "MPIIdentityRecord",
    "MatchCandidate",
    "MatchCandidateStatus",
    "MergeHistory",
    "OperationType",
]
