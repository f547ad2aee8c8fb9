"""
Patient merge API endpoints.

This router provides endpoints for:
- Merging a deprecated patient identity into a surviving one
- Reversing (unmerging) a prior merge
- Verifying a completed merge
- Viewing merge history, reversible merges and tenant statistics

Authentication and role checks happen upstream of this service.
"""

import logging
from datetime import datetime
from typing import NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from mpi.api.dependencies.database import Orchestrator
from mpi.core.config import settings
from mpi.schemas.merge import (
    MergeHistoryRecord,
    MergeRequest,
    MergeResult,
    MergeStats,
    UnmergeBody,
    UnmergeRequest,
    VerifyMergeRequest,
)
from mpi.services.merge.errors import ErrorCode, ServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpi", tags=["mpi"])

ERROR_STATUS = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.OPERATION_FAILED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.DATABASE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.UNKNOWN_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _raise_for_error(error: ServiceError) -> NoReturn:
    status_code = ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error("Merge operation failed", extra={"error_code": error.code.value, "error": error.message})
    raise HTTPException(status_code=status_code, detail=error.message)


# =============================================================================
# Merge Operations
# =============================================================================


@router.post(
    "/merges",
    response_model=MergeResult,
    status_code=status.HTTP_201_CREATED,
    summary="Merge two patient identities",
)
async def merge_patients(request: MergeRequest, orchestrator: Orchestrator) -> MergeResult:
    """
    Merge the deprecated patient into the surviving patient.

    A 201 can still carry failed collection migrations; check
    ``data_migrations`` for entries with status ``failed``.
    """
    result = await orchestrator.merge_patients(request)
    if not result.success:
        _raise_for_error(result.error)

    if result.data.failed_migrations:
        logger.warning(
            "Merge completed with failed collection migrations",
            extra={
                "merge_history_id": str(result.data.merge_history_id),
                "failed_collections": [m.collection for m in result.data.failed_migrations],
            },
        )
    return result.data


@router.post(
    "/merges/{merge_history_id}/unmerge",
    response_model=MergeResult,
    summary="Reverse a prior merge",
)
async def unmerge_patients(
    merge_history_id: UUID,
    body: UnmergeBody,
    orchestrator: Orchestrator,
) -> MergeResult:
    result = await orchestrator.unmerge_patients(UnmergeRequest(
        merge_history_id=merge_history_id,
        performed_by=body.performed_by,
        reason=body.reason,
    ))
    if not result.success:
        _raise_for_error(result.error)
    return result.data


@router.get(
    "/merges/{merge_history_id}",
    response_model=MergeHistoryRecord,
    summary="Get one merge history entry",
)
async def get_merge_history_entry(merge_history_id: UUID, orchestrator: Orchestrator) -> MergeHistoryRecord:
    result = await orchestrator.get_merge_history_by_id(merge_history_id)
    if not result.success:
        _raise_for_error(result.error)
    if result.data is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Merge history record not found",
        )
    return result.data


@router.post(
    "/merges/{merge_history_id}/verify",
    response_model=MergeHistoryRecord,
    summary="Record human sign-off on a merge",
)
async def verify_merge(
    merge_history_id: UUID,
    request: VerifyMergeRequest,
    orchestrator: Orchestrator,
) -> MergeHistoryRecord:
    result = await orchestrator.verify_merge(merge_history_id, request.verified_by, request.notes)
    if not result.success:
        _raise_for_error(result.error)
    return result.data


# =============================================================================
# Queries
# =============================================================================


@router.get(
    "/patients/{patient_id}/merge-history",
    response_model=list[MergeHistoryRecord],
    summary="Merge history of a patient",
)
async def get_patient_merge_history(
    patient_id: UUID,
    orchestrator: Orchestrator,
    limit: int = Query(settings.MERGE_HISTORY_DEFAULT_LIMIT, ge=1, le=500),
    include_rolled_back: bool = Query(False, description="Include merges that were reversed"),
) -> list[MergeHistoryRecord]:
    result = await orchestrator.get_merge_history(patient_id, limit, include_rolled_back)
    if not result.success:
        _raise_for_error(result.error)
    return result.data


@router.get(
    "/tenants/{tenant_id}/merge-stats",
    response_model=MergeStats,
    summary="Merge statistics of a tenant",
)
async def get_merge_stats(
    tenant_id: UUID,
    orchestrator: Orchestrator,
    from_date: Optional[datetime] = Query(None, description="Only count operations at or after"),
    to_date: Optional[datetime] = Query(None, description="Only count operations at or before"),
) -> MergeStats:
    result = await orchestrator.get_merge_stats(tenant_id, from_date, to_date)
    if not result.success:
        _raise_for_error(result.error)
    return result.data


@router.get(
    "/tenants/{tenant_id}/reversible-merges",
    response_model=list[MergeHistoryRecord],
    summary="Merges of a tenant that can still be reversed",
)
async def get_reversible_merges(
    tenant_id: UUID,
    orchestrator: Orchestrator,
    limit: Optional[int] = Query(None, ge=1, le=500),
) -> list[MergeHistoryRecord]:
    result = await orchestrator.get_reversible_merges(tenant_id, limit)
    if not result.success:
        _raise_for_error(result.error)
    return result.data
