"""
Match candidate model.

Candidates are produced by the external matching pipeline. The merge engine
consumes them: a merge marks its candidate ``merged``, an unmerge re-opens
it for review.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mpi.core.database import Base


class MatchCandidateStatus(str, enum.Enum):
    """Review workflow states for a candidate pair."""

    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    CONFIRMED_MATCH = "confirmed_match"
    CONFIRMED_NOT_MATCH = "confirmed_not_match"
    MERGED = "merged"
    DEFERRED = "deferred"


class MatchCandidate(Base):
    """
    A suspected duplicate pair of patient identities.

    Attributes:
        id: UUID primary key
        tenant_id: Tenant the pair belongs to
        patient_id_a: First patient of the pair
        patient_id_b: Second patient of the pair
        overall_match_score: Matching score (0-100)
        status: Review workflow state (see MatchCandidateStatus)
        reviewed_by: User who reviewed the pair
        reviewed_at: When the pair was reviewed
        review_decision: Reviewer decision (merge, link, not_match, ...)
        review_notes: Free-text notes
    """

    __tablename__ = "mpi_match_candidates"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="UUID primary key",
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    patient_id_a: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    patient_id_b: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    overall_match_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=MatchCandidateStatus.PENDING.value,
        index=True,
    )

    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_decision: Mapped[str | None] = mapped_column(String(50), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """Return string representation."""
        return f"<MatchCandidate {self.id} {self.status}>"
