"""
Snapshot store for pre-merge patient state.

A snapshot is the restoration source for a later unmerge: the full profile
row plus a capped, newest-first sample of each tracked dependent collection.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic_core import to_jsonable_python
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpi.core.config import settings
from mpi.core.database import utcnow
from mpi.models.patient_profile import PatientProfile
from mpi.schemas.merge import ProfileSnapshot
from mpi.services.audit_logger import AuditLogger
from mpi.services.merge.errors import PatientNotFoundError
from mpi.services.merge.registry import SNAPSHOT_SAMPLES, get_collection

logger = logging.getLogger(__name__)


# Never written back when restoring a profile from a snapshot
IMMUTABLE_PROFILE_FIELDS = frozenset({"user_id", "created_at", "updated_at"})


def profile_to_json(profile: PatientProfile) -> dict[str, Any]:
    """Encode every profile column as JSON-compatible values."""
    return to_jsonable_python(profile.to_dict())


def _from_json(column: Any, value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if python_type is datetime:
        return datetime.fromisoformat(value)
    if python_type is date:
        return date.fromisoformat(value)
    if python_type is uuid.UUID:
        return uuid.UUID(value)
    return value


def apply_profile_snapshot(profile: PatientProfile, data: dict[str, Any]) -> list[str]:
    """
    Overwrite profile columns with the values captured in a snapshot.

    Keys and creation timestamps are skipped, as are keys that are no longer
    profile columns.

    Returns:
        Names of the fields written
    """
    columns = PatientProfile.__table__.columns
    written = []
    for key, value in data.items():
        if key in IMMUTABLE_PROFILE_FIELDS or key not in columns:
            continue
        setattr(profile, key, _from_json(columns[key], value))
        written.append(key)
    return written


class SnapshotStore:
    """
    Reads bounded, versioned snapshots of patient identities.

    Reads only. Each collection sample runs on its own session so the
    samples can be fetched concurrently and fail independently.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger | None = None,
        row_limit: int | None = None,
    ):
        self._session_factory = session_factory
        self._audit = audit or AuditLogger()
        self.row_limit = row_limit or settings.MERGE_SNAPSHOT_ROW_LIMIT

    async def snapshot(self, identity_id: UUID) -> ProfileSnapshot:
        """
        Capture the profile and dependent samples of one identity.

        Args:
            identity_id: Patient identity to capture

        Returns:
            ProfileSnapshot of the identity

        Raises:
            PatientNotFoundError: If the identity has no profile
        """
        async with self._session_factory() as session:
            profile = await session.get(PatientProfile, identity_id)
            if profile is None:
                raise PatientNotFoundError(f"Patient profile {identity_id} not found")
            profile_data = profile_to_json(profile)

        sample_names = list(SNAPSHOT_SAMPLES)
        samples = await asyncio.gather(
            *(self._sample(identity_id, SNAPSHOT_SAMPLES[name]) for name in sample_names)
        )

        return ProfileSnapshot(
            identity_id=identity_id,
            captured_at=utcnow(),
            profile=profile_data,
            related_data=dict(zip(sample_names, samples)),
        )

    async def _sample(self, identity_id: UUID, collection_name: str) -> list[dict[str, Any]]:
        """Read the newest rows of one collection; degrade to empty on failure."""
        collection = get_collection(collection_name)
        table = collection.table()
        query = (
            select(text("*"))
            .select_from(table)
            .where(table.c[collection.ownership_key] == str(identity_id))
            .order_by(table.c.created_at.desc())
            .limit(self.row_limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [to_jsonable_python(dict(row._mapping)) for row in result]
        except SQLAlchemyError as e:
            self._audit.error(
                "MPI_SNAPSHOT_COLLECTION_DEGRADED",
                e,
                {"patient_id": identity_id, "collection": collection_name},
            )
            return []
