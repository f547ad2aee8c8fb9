"""
Patient profile model.

Profiles are owned by the wider records platform; the merge engine reads
them for snapshots, fills gaps on the surviving profile and restores the
pre-merge state on unmerge.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy import Date, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mpi.core.database import Base, JSONType


class PatientProfile(Base):
    """
    Mutable demographic and contact profile of one patient.

    Attributes:
        user_id: Patient identity id (primary key)
        tenant_id: Tenant the patient is registered with
        health_conditions: Free-text condition names
        medications: Free-text medication names
    """

    __tablename__ = "profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        comment="Patient identity id",
    )

    tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    # Names and identifiers
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    middle_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Demographics
    gender: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ethnicity: Mapped[str | None] = mapped_column(String(100), nullable=True)
    marital_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    living_situation: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Address
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    zip: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Emergency contact and caregiver
    emergency_contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    emergency_contact_relationship: Mapped[str | None] = mapped_column(String(100), nullable=True)
    caregiver_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Free-text lists
    health_conditions: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    medications: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Return every column value keyed by attribute name."""
        return {
            column.key: getattr(self, column.key)
            for column in self.__table__.columns
        }

    def __repr__(self) -> str:
        """Return string representation."""
        return f"<PatientProfile {self.user_id}>"
