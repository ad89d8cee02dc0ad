"""export pipeline tables

Revision ID: 20260101_0001
Revises: None
Create Date: 2026-01-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260101_0001_export_pipeline_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "export_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=255), nullable=False),
        sa.Column("table_id", sa.String(length=255), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("output_location", sa.Text(), nullable=True),
        sa.Column("expected_file_count", sa.Integer(), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_export_jobs_job_id", "export_jobs", ["job_id"], unique=True)
    op.create_index("ix_export_jobs_table_id", "export_jobs", ["table_id"])
    op.create_index("ix_export_jobs_status", "export_jobs", ["status"])
    op.create_index(
        "ix_export_jobs_table_window", "export_jobs", ["table_id", "window_start", "window_end"]
    )

    op.create_table(
        "file_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_id", sa.String(length=64), nullable=False),
        sa.Column(
            "job_id",
            sa.String(length=255),
            sa.ForeignKey("export_jobs.job_id"),
            nullable=False,
        ),
        sa.Column("partition_key", sa.Text(), nullable=False),
        sa.Column("location", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("lease_token", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_file_records_file_id", "file_records", ["file_id"], unique=True)
    op.create_index("ix_file_records_job_id", "file_records", ["job_id"])
    op.create_index("ix_file_records_status", "file_records", ["status"])
    op.create_index("ix_file_records_lease_expires_at", "file_records", ["lease_expires_at"])
    op.create_index("ix_file_records_job_status", "file_records", ["job_id", "status"])

    op.create_table(
        "pipeline_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("trigger", sa.String(length=32), nullable=False),
        sa.Column("table_id", sa.String(length=255), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("job_id", sa.String(length=255), nullable=True),
        sa.Column(
            "stage", sa.String(length=32), nullable=False, server_default="CHECK_IDEMPOTENCY"
        ),
        sa.Column("files_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_file_ids", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_pipeline_runs_table_id", "pipeline_runs", ["table_id"])
    op.create_index("ix_pipeline_runs_job_id", "pipeline_runs", ["job_id"])
    op.create_index("ix_pipeline_runs_stage", "pipeline_runs", ["stage"])


def downgrade() -> None:
    op.drop_index("ix_pipeline_runs_stage", table_name="pipeline_runs")
    op.drop_index("ix_pipeline_runs_job_id", table_name="pipeline_runs")
    op.drop_index("ix_pipeline_runs_table_id", table_name="pipeline_runs")
    op.drop_table("pipeline_runs")

    op.drop_index("ix_file_records_job_status", table_name="file_records")
    op.drop_index("ix_file_records_lease_expires_at", table_name="file_records")
    op.drop_index("ix_file_records_status", table_name="file_records")
    op.drop_index("ix_file_records_job_id", table_name="file_records")
    op.drop_index("ix_file_records_file_id", table_name="file_records")
    op.drop_table("file_records")

    op.drop_index("ix_export_jobs_table_window", table_name="export_jobs")
    op.drop_index("ix_export_jobs_status", table_name="export_jobs")
    op.drop_index("ix_export_jobs_table_id", table_name="export_jobs")
    op.drop_index("ix_export_jobs_job_id", table_name="export_jobs")
    op.drop_table("export_jobs")
