"""
MPI identity record model.

One row per (patient, tenant) pair. The merge engine only toggles the
activity flags: deactivated when the patient becomes the deprecated side of
a merge, reactivated by an unmerge.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Text, UniqueConstraint, Uuid, true
from sqlalchemy.orm import Mapped, mapped_column

from mpi.core.database import Base


class MPIIdentityRecord(Base):
    """
    Durable identifier for one person within a tenant.

    Attributes:
        id: UUID primary key
        patient_id: Patient identity id (profiles.user_id)
        tenant_id: Tenant this identity belongs to
        is_active: False once deprecated by a merge
        deactivated_at: When the identity was deactivated
        deactivated_reason: Why the identity was deactivated
    """

    __tablename__ = "mpi_identity_records"
    __table_args__ = (
        UniqueConstraint("patient_id", "tenant_id", name="mpi_identity_records_patient_tenant_unique"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="UUID primary key",
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """Return string representation."""
        state = "active" if self.is_active else "inactive"
        return f"<MPIIdentityRecord {self.patient_id} tenant={self.tenant_id} {state}>"
