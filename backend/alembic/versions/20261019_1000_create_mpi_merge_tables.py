"""Create patient identity merge tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 10:00:00.000000

Creates the tables the merge engine reads and writes:
1. profiles (patient demographic profile, keyed by user_id)
2. mpi_identity_records (per-tenant identity with activity flags)
3. mpi_match_candidates (suspected duplicate pairs)
4. mpi_merge_history (append-only merge ledger)

The ledger gets no DELETE privilege for the application role.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create merge tables and indexes."""

    op.create_table(
        "profiles",
        sa.Column("user_id", sa.Uuid(), primary_key=True, comment="Patient identity id"),
        sa.Column("tenant_id", sa.Uuid(), nullable=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("middle_name", sa.String(100), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("gender", sa.String(50), nullable=True),
        sa.Column("ethnicity", sa.String(100), nullable=True),
        sa.Column("marital_status", sa.String(50), nullable=True),
        sa.Column("living_situation", sa.String(100), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(50), nullable=True),
        sa.Column("zip", sa.String(20), nullable=True),
        sa.Column("emergency_contact_name", sa.String(200), nullable=True),
        sa.Column("emergency_contact_phone", sa.String(50), nullable=True),
        sa.Column("emergency_contact_relationship", sa.String(100), nullable=True),
        sa.Column("caregiver_email", sa.String(255), nullable=True),
        sa.Column("health_conditions", postgresql.JSONB(), nullable=True),
        sa.Column("medications", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index("ix_profiles_tenant_id", "profiles", ["tenant_id"], if_not_exists=True)

    op.create_table(
        "mpi_identity_records",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("patient_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("patient_id", "tenant_id", name="mpi_identity_records_patient_tenant_unique"),
    )
    op.create_index("ix_mpi_identity_records_patient_id", "mpi_identity_records", ["patient_id"])
    op.create_index("ix_mpi_identity_records_tenant_id", "mpi_identity_records", ["tenant_id"])

    op.create_table(
        "mpi_match_candidates",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("patient_id_a", sa.Uuid(), nullable=False),
        sa.Column("patient_id_b", sa.Uuid(), nullable=False),
        sa.Column("overall_match_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.Uuid(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_decision", sa.String(50), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'under_review', 'confirmed_match', "
            "'confirmed_not_match', 'merged', 'deferred')",
            name="ck_mpi_match_candidates_status",
        ),
    )
    op.create_index("ix_mpi_match_candidates_tenant_id", "mpi_match_candidates", ["tenant_id"])
    op.create_index("ix_mpi_match_candidates_patient_id_a", "mpi_match_candidates", ["patient_id_a"])
    op.create_index("ix_mpi_match_candidates_patient_id_b", "mpi_match_candidates", ["patient_id_b"])
    op.create_index("ix_mpi_match_candidates_status", "mpi_match_candidates", ["status"])

    op.create_table(
        "mpi_merge_history",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        # Operation identifiers
        sa.Column("merge_batch_id", sa.Uuid(), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("operation_type", sa.String(20), nullable=False, comment="merge, unmerge, link or unlink"),
        # Identities
        sa.Column("surviving_patient_id", sa.Uuid(), nullable=False),
        sa.Column(
            "surviving_identity_record_id",
            sa.Uuid(),
            sa.ForeignKey("mpi_identity_records.id", name="fk_mpi_merge_history_surviving_identity"),
            nullable=True,
        ),
        sa.Column("deprecated_patient_id", sa.Uuid(), nullable=False, comment="No FK: patient may be deleted"),
        sa.Column("deprecated_identity_record_id", sa.Uuid(), nullable=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        # Snapshots
        sa.Column("surviving_record_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("deprecated_record_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("related_data_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("merged_record_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("data_migrations", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        # Decision provenance
        sa.Column(
            "match_candidate_id",
            sa.Uuid(),
            sa.ForeignKey("mpi_match_candidates.id", name="fk_mpi_merge_history_match_candidate"),
            nullable=True,
        ),
        sa.Column("merge_decision_score", sa.Float(), nullable=True),
        sa.Column("merge_decision_reason", sa.Text(), nullable=False),
        sa.Column("merge_rules_applied", postgresql.JSONB(), nullable=True),
        # Operator
        sa.Column("performed_by", sa.Uuid(), nullable=False),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        # Rollback support
        sa.Column("is_reversible", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rolled_back", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_by", sa.Uuid(), nullable=True),
        sa.Column("rollback_reason", sa.Text(), nullable=True),
        sa.Column("rollback_batch_id", sa.Uuid(), nullable=True, comment="Batch id of the reversing unmerge"),
        # Verification
        sa.Column("verified_by", sa.Uuid(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "operation_type IN ('merge', 'unmerge', 'link', 'unlink')",
            name="ck_mpi_merge_history_operation_type",
        ),
        sa.CheckConstraint(
            "NOT rolled_back OR NOT is_reversible",
            name="ck_mpi_merge_history_rolled_back_not_reversible",
        ),
    )

    op.create_index("idx_mpi_merge_batch", "mpi_merge_history", ["merge_batch_id"])
    op.create_index("idx_mpi_merge_surviving", "mpi_merge_history", ["surviving_patient_id"])
    op.create_index("idx_mpi_merge_deprecated", "mpi_merge_history", ["deprecated_patient_id"])
    op.create_index("idx_mpi_merge_tenant", "mpi_merge_history", ["tenant_id"])
    op.create_index(
        "idx_mpi_merge_performed_at",
        "mpi_merge_history",
        [sa.text("performed_at DESC")],
    )
    op.create_index(
        "idx_mpi_merge_reversible",
        "mpi_merge_history",
        ["is_reversible", "rolled_back"],
        postgresql_where=sa.text("is_reversible = true AND rolled_back = false"),
    )
    op.create_index("idx_mpi_merge_operation", "mpi_merge_history", ["operation_type"])

    # Compliance record: rows are never deleted
    op.execute("REVOKE DELETE ON mpi_merge_history FROM PUBLIC")


def downgrade() -> None:
    """Drop merge tables."""
    op.drop_table("mpi_merge_history")
    op.drop_table("mpi_match_candidates")
    op.drop_table("mpi_identity_records")
    op.drop_index("ix_profiles_tenant_id", table_name="profiles", if_exists=True)
    op.drop_table("profiles", if_exists=True)
