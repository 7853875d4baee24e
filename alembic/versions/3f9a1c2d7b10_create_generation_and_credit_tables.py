"""create_generation_and_credit_tables

Revision ID: 3f9a1c2d7b10
Revises:
Create Date: 2026-10-19 09:12:44.301187

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_status = sa.Enum(
    "PENDING", "UPLOADING", "PROCESSING", "COMPLETED", "FAILED", name="jobstatus"
)
failure_reason = sa.Enum(
    "UPLOAD_ERROR",
    "SUBMISSION_ERROR",
    "PROVIDER_FAILURE",
    "TIMEOUT",
    "CANCELLED",
    "INTERRUPTED",
    name="failurereason",
)
ledger_reason = sa.Enum(
    "PURCHASE", "REDEEM_CODE", "GENERATION_DEBIT", "GENERATION_REFUND", name="ledgerreason"
)


def upgrade() -> None:
    """Create generation job, credit ledger and redeem code tables."""
    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=128), nullable=False),
        sa.Column("pet_id", sqlmodel.sql.sqltypes.AutoString(length=128), nullable=True),
        sa.Column("prompt", sqlmodel.sql.sqltypes.AutoString(length=2000), nullable=False),
        sa.Column("style", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column(
            "source_image_ref", sqlmodel.sql.sqltypes.AutoString(length=1024), nullable=False
        ),
        sa.Column(
            "remote_image_url", sqlmodel.sql.sqltypes.AutoString(length=2048), nullable=True
        ),
        sa.Column("remote_task_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column("status", job_status, nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column(
            "result_video_url", sqlmodel.sql.sqltypes.AutoString(length=2048), nullable=True
        ),
        sa.Column("error_code", failure_reason, nullable=True),
        sa.Column("error_reason", sqlmodel.sql.sqltypes.AutoString(length=1000), nullable=True),
        sa.Column("credit_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("poll_failure_count", sa.Integer(), nullable=False),
        sa.Column("next_poll_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_jobs_owner_id", "generation_jobs", ["owner_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_remote_task_id", "generation_jobs", ["remote_task_id"])
    op.create_index("ix_generation_jobs_next_poll_at", "generation_jobs", ["next_poll_at"])

    op.create_table(
        "credit_ledger_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=128), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", ledger_reason, nullable=False),
        sa.Column("related_job_id", sa.Uuid(), nullable=True),
        sa.Column("reference", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("related_job_id", "reason", name="uq_ledger_job_reason"),
        sa.UniqueConstraint("reason", "reference", name="uq_ledger_reason_reference"),
    )
    op.create_index("ix_credit_ledger_entries_owner_id", "credit_ledger_entries", ["owner_id"])
    op.create_index("ix_credit_ledger_entries_reason", "credit_ledger_entries", ["reason"])
    op.create_index(
        "ix_credit_ledger_entries_related_job_id", "credit_ledger_entries", ["related_job_id"]
    )

    op.create_table(
        "credit_accounts",
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=128), nullable=False),
        sa.Column("ledger_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )

    op.create_table(
        "redeem_codes",
        sa.Column("code", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("description", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=False),
        sa.Column("current_uses", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("code"),
        sa.CheckConstraint("current_uses <= max_uses", name="ck_redeem_codes_uses_within_max"),
    )

    op.create_table(
        "redeem_code_usages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=128), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["code"], ["redeem_codes.code"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", "owner_id", name="uq_redeem_usage_code_owner"),
    )
    op.create_index("ix_redeem_code_usages_code", "redeem_code_usages", ["code"])
    op.create_index("ix_redeem_code_usages_owner_id", "redeem_code_usages", ["owner_id"])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table("redeem_code_usages")
    op.drop_table("redeem_codes")
    op.drop_table("credit_accounts")
    op.drop_table("credit_ledger_entries")
    op.drop_table("generation_jobs")
    ledger_reason.drop(op.get_bind(), checkfirst=True)
    failure_reason.drop(op.get_bind(), checkfirst=True)
    job_status.drop(op.get_bind(), checkfirst=True)
