"""create_batch_generation_tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-18 09:12:41.207318

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7e40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

batch_job_status = sa.Enum(
    "PENDING", "PROCESSING", "PAUSED", "CANCELLED", "COMPLETED", name="batchjobstatus"
)
artifact_visibility = sa.Enum("PUBLIC", "UNLISTED", name="artifactvisibility")


def upgrade() -> None:
    """Create batch jobs, queue items, generated artifacts and user accounts."""
    op.create_table(
        "batch_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("status", batch_job_status, nullable=False),
        sa.Column("total_count", sa.Integer(), nullable=False),
        sa.Column("current_index", sa.Integer(), nullable=False),
        sa.Column("completed_count", sa.Integer(), nullable=False),
        sa.Column("failed_count", sa.Integer(), nullable=False),
        sa.Column("in_flight_count", sa.Integer(), nullable=False),
        sa.Column("current_item_retry_count", sa.Integer(), nullable=False),
        sa.Column("generation_params", sa.JSON(), nullable=False),
        sa.Column("artifact_ids", sa.JSON(), nullable=False),
        sa.Column("item_errors", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batch_jobs_owner_id", "batch_jobs", ["owner_id"])
    op.create_index("ix_batch_jobs_status", "batch_jobs", ["status"])
    op.create_index("ix_batch_jobs_created_at", "batch_jobs", ["created_at"])

    op.create_table(
        "batch_queue_items",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("batch_job_id", sa.Uuid(), nullable=False),
        sa.Column("item_index", sa.Integer(), nullable=False),
        sa.Column("run_at", sa.DateTime(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["batch_job_id"], ["batch_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "batch_job_id", "item_index", name="uq_batch_queue_items_job_index"
        ),
    )
    op.create_index("ix_batch_queue_items_batch_job_id", "batch_queue_items", ["batch_job_id"])
    op.create_index("ix_batch_queue_items_run_at", "batch_queue_items", ["run_at"])

    op.create_table(
        "generated_artifacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("object_key", sa.String(length=512), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("thumbnail_key", sa.String(length=512), nullable=True),
        sa.Column("thumbnail_url", sa.String(length=1024), nullable=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("content_type", sa.String(length=100), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("aspect_ratio", sa.Float(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("model", sa.String(length=100), nullable=False),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("generation_params", sa.JSON(), nullable=False),
        sa.Column("visibility", artifact_visibility, nullable=False),
        sa.Column("batch_job_id", sa.Uuid(), nullable=True),
        sa.Column("item_index", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["batch_job_id"], ["batch_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generated_artifacts_owner_id", "generated_artifacts", ["owner_id"])
    op.create_index(
        "ix_generated_artifacts_batch_job_id", "generated_artifacts", ["batch_job_id"]
    )

    op.create_table(
        "user_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("encrypted_api_key", sa.String(length=1024), nullable=True),
        sa.Column("has_active_subscription", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_accounts_owner_id", "user_accounts", ["owner_id"], unique=True)


def downgrade() -> None:
    """Drop all batch generation tables."""
    op.drop_index("ix_user_accounts_owner_id", table_name="user_accounts")
    op.drop_table("user_accounts")

    op.drop_index("ix_generated_artifacts_batch_job_id", table_name="generated_artifacts")
    op.drop_index("ix_generated_artifacts_owner_id", table_name="generated_artifacts")
    op.drop_table("generated_artifacts")

    op.drop_index("ix_batch_queue_items_run_at", table_name="batch_queue_items")
    op.drop_index("ix_batch_queue_items_batch_job_id", table_name="batch_queue_items")
    op.drop_table("batch_queue_items")

    op.drop_index("ix_batch_jobs_created_at", table_name="batch_jobs")
    op.drop_index("ix_batch_jobs_status", table_name="batch_jobs")
    op.drop_index("ix_batch_jobs_owner_id", table_name="batch_jobs")
    op.drop_table("batch_jobs")

    artifact_visibility.drop(op.get_bind(), checkfirst=True)
    batch_job_status.drop(op.get_bind(), checkfirst=True)
