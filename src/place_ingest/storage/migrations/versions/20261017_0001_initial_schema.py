"""Create places and batch checkpoint tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "places",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("crawl_status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_places_crawl_status", "places", ["crawl_status"])
    op.create_index("idx_places_crawl_status_id", "places", ["crawl_status", "id"])

    op.create_table(
        "batch_checkpoint",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_name", sa.String(length=100), nullable=False),
        sa.Column("region_type", sa.String(length=50), nullable=False),
        sa.Column("region_code", sa.String(length=20), nullable=False),
        sa.Column("region_name", sa.String(length=200), nullable=False),
        sa.Column("parent_code", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "batch_name",
            "region_type",
            "region_code",
            name="uq_batch_checkpoint_scope_region",
        ),
    )
    op.create_index("idx_batch_checkpoint_status", "batch_checkpoint", ["batch_name", "status"])
    op.create_index("idx_batch_checkpoint_parent", "batch_checkpoint", ["parent_code"])

    op.create_table(
        "batch_execution_metadata",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_name", sa.String(length=100), nullable=False),
        sa.Column("execution_id", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="RUNNING"),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_regions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_regions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_regions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "last_checkpoint_id",
            sa.Integer(),
            sa.ForeignKey("batch_checkpoint.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "batch_name",
            "execution_id",
            name="uq_batch_execution_metadata_batch_execution",
        ),
    )
    op.create_index(
        "ix_batch_execution_metadata_batch_name",
        "batch_execution_metadata",
        ["batch_name"],
    )
    # At most one RUNNING execution per batch name.
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_batch_execution_metadata_single_running
            ON batch_execution_metadata (batch_name)
            WHERE status = 'RUNNING'
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_batch_execution_metadata_single_running"))
    op.drop_index("ix_batch_execution_metadata_batch_name", table_name="batch_execution_metadata")
    op.drop_table("batch_execution_metadata")
    op.drop_index("idx_batch_checkpoint_parent", table_name="batch_checkpoint")
    op.drop_index("idx_batch_checkpoint_status", table_name="batch_checkpoint")
    op.drop_table("batch_checkpoint")
    op.drop_index("idx_places_crawl_status_id", table_name="places")
    op.drop_index("ix_places_crawl_status", table_name="places")
    op.drop_table("places")
