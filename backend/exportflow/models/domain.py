# ruff: noqa: E501
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exportflow.database import Base


class ExportStatus(str, PyEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_EXPORT_STATUSES = frozenset({ExportStatus.SUCCEEDED.value, ExportStatus.FAILED.value})


class FileStatus(str, PyEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PipelineStage(str, PyEnum):
    CHECK_IDEMPOTENCY = "CHECK_IDEMPOTENCY"
    EXPORTING = "EXPORTING"
    ENUMERATING = "ENUMERATING"
    DISPATCHING = "DISPATCHING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ExportJob(Base):
    __tablename__ = "export_jobs"
    __table_args__ = (
        Index("ix_export_jobs_table_window", "table_id", "window_start", "window_end"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Externally assigned by the source export capability (e.g. an export ARN).
    job_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    table_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Half-open interval [window_start, window_end), always UTC.
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Forward-only: PENDING -> RUNNING -> SUCCEEDED|FAILED; immutable once terminal.
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=ExportStatus.PENDING.value, index=True
    )
    # Only set when status == SUCCEEDED.
    output_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    expected_file_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # No cascade: the ledger is an audit trail and outlives job archival.
    files = relationship("FileRecord", back_populates="job", passive_deletes="all")


class FileRecord(Base):
    __tablename__ = "file_records"
    __table_args__ = (
        Index("ix_file_records_job_status", "job_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Deterministic: derived from job_id + partition so re-enumeration is idempotent.
    file_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("export_jobs.job_id"),
        nullable=False,
        index=True,
    )
    partition_key: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)

    # PENDING -> IN_PROGRESS -> COMPLETED|FAILED, plus FAILED -> PENDING (retry) and
    # IN_PROGRESS -> PENDING/IN_PROGRESS (lease reclaim).
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=FileStatus.PENDING.value, index=True
    )
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    job = relationship("ExportJob", back_populates="files")


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # run_export | resume | incremental
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    table_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    window_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Forward-only: CHECK_IDEMPOTENCY -> EXPORTING -> ENUMERATING -> DISPATCHING -> DONE|FAILED|CANCELLED
    stage: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=PipelineStage.CHECK_IDEMPOTENCY.value, index=True
    )
    files_processed: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    failed_file_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
