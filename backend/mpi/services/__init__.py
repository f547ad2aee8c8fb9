"""Application services."""

from mpi.services.audit_logger import AuditLogger
from mpi.services.merge import MergeOrchestrator

__all__ = [
    "AuditLogger",
    "MergeOrchestrator",
]
