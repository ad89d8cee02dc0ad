from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exportflow import models
from exportflow.core.clock import as_utc, utcnow
from exportflow.core.errors import ExportJobNotFound, InvalidTransition, InvalidWindow

ExportStatus = models.ExportStatus

_EXPORT_STATUS_ORDER = {
    ExportStatus.PENDING.value: 0,
    ExportStatus.RUNNING.value: 1,
    ExportStatus.SUCCEEDED.value: 2,
    ExportStatus.FAILED.value: 2,
}

_ACTIVE_STATUSES = (ExportStatus.PENDING.value, ExportStatus.RUNNING.value)


@dataclass(frozen=True)
class ExportJobSnapshot:
    job_id: str
    table_id: str
    window_start: datetime
    window_end: datetime
    status: str
    output_location: str | None
    expected_file_count: int | None
    failure_message: str | None
    completed_at: datetime | None

    @classmethod
    def from_row(cls, row: models.ExportJob) -> "ExportJobSnapshot":
        return cls(
            job_id=str(row.job_id),
            table_id=str(row.table_id),
            window_start=as_utc(row.window_start),
            window_end=as_utc(row.window_end),
            status=str(row.status),
            output_location=row.output_location,
            expected_file_count=(
                int(row.expected_file_count) if row.expected_file_count is not None else None
            ),
            failure_message=row.failure_message,
            completed_at=as_utc(row.completed_at),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in models.TERMINAL_EXPORT_STATUSES


def normalize_window(window_start: datetime, window_end: datetime) -> tuple[datetime, datetime]:
    """Coerce both bounds to UTC and require a non-empty half-open interval."""
    start = as_utc(window_start)
    end = as_utc(window_end)
    if start is None or end is None:
        raise InvalidWindow("window_start and window_end are required")
    if start >= end:
        raise InvalidWindow(
            "window_start must be before window_end",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
        )
    return start, end


def get_export_job(db: Session, job_id: str) -> models.ExportJob | None:
    return db.query(models.ExportJob).filter(models.ExportJob.job_id == str(job_id)).first()


def require_export_job(db: Session, job_id: str) -> models.ExportJob:
    job = get_export_job(db, job_id)
    if job is None:
        raise ExportJobNotFound(f"Export job not found: {job_id}", job_id=job_id)
    return job


def find_job_for_window(
    db: Session,
    *,
    table_id: str,
    window_start: datetime,
    window_end: datetime,
) -> models.ExportJob | None:
    """Most relevant job for an exact window: any non-FAILED one first, else the latest FAILED."""
    base = (
        db.query(models.ExportJob)
        .filter(models.ExportJob.table_id == str(table_id))
        .filter(models.ExportJob.window_start == window_start)
        .filter(models.ExportJob.window_end == window_end)
        .filter(models.ExportJob.archived_at.is_(None))
    )
    live = (
        base.filter(models.ExportJob.status != ExportStatus.FAILED.value)
        .order_by(models.ExportJob.id.desc())
        .first()
    )
    if live is not None:
        return live
    return base.order_by(models.ExportJob.id.desc()).first()


def count_failed_jobs_for_window(
    db: Session,
    *,
    table_id: str,
    window_start: datetime,
    window_end: datetime,
) -> int:
    return (
        db.query(models.ExportJob)
        .filter(models.ExportJob.table_id == str(table_id))
        .filter(models.ExportJob.window_start == window_start)
        .filter(models.ExportJob.window_end == window_end)
        .filter(models.ExportJob.status == ExportStatus.FAILED.value)
        .count()
    )


def find_overlapping_active_job(
    db: Session,
    *,
    table_id: str,
    window_start: datetime,
    window_end: datetime,
) -> models.ExportJob | None:
    return (
        db.query(models.ExportJob)
        .filter(models.ExportJob.table_id == str(table_id))
        .filter(models.ExportJob.status.in_(_ACTIVE_STATUSES))
        .filter(models.ExportJob.archived_at.is_(None))
        .filter(models.ExportJob.window_start < window_end)
        .filter(models.ExportJob.window_end > window_start)
        .order_by(models.ExportJob.id.desc())
        .first()
    )


def latest_job_for_table(db: Session, table_id: str) -> models.ExportJob | None:
    return (
        db.query(models.ExportJob)
        .filter(models.ExportJob.table_id == str(table_id))
        .filter(models.ExportJob.archived_at.is_(None))
        .order_by(models.ExportJob.window_end.desc(), models.ExportJob.id.desc())
        .first()
    )


def list_export_jobs(
    db: Session,
    *,
    table_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[models.ExportJob]:
    q = db.query(models.ExportJob).filter(models.ExportJob.archived_at.is_(None))
    if table_id is not None:
        q = q.filter(models.ExportJob.table_id == str(table_id))
    if status is not None:
        q = q.filter(models.ExportJob.status == str(status))
    return q.order_by(models.ExportJob.window_end.desc(), models.ExportJob.id.desc()).limit(
        int(limit)
    ).all()


def ensure_export_job(
    db: Session,
    *,
    job_id: str,
    table_id: str,
    window_start: datetime,
    window_end: datetime,
    status: str = ExportStatus.RUNNING.value,
) -> models.ExportJob:
    """Persist a job row for ``job_id``; a source that deduplicates starts may hand back a known id."""
    existing = get_export_job(db, job_id)
    if existing is not None:
        return existing

    now = utcnow()
    job = models.ExportJob(
        job_id=str(job_id),
        table_id=str(table_id),
        window_start=window_start,
        window_end=window_end,
        status=str(status),
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_export_job(db, job_id)
        if existing is None:
            raise
        return existing

    return job


def transition_export_job_status(
    db: Session,
    *,
    job: models.ExportJob,
    new_status: str,
    output_location: str | None = None,
    expected_file_count: int | None = None,
    failure_message: str | None = None,
) -> models.ExportJob:
    if new_status not in _EXPORT_STATUS_ORDER:
        raise InvalidTransition(f"Invalid export job status: {new_status}", job_id=job.job_id)

    old = str(job.status or ExportStatus.PENDING.value)
    if old not in _EXPORT_STATUS_ORDER:
        old = ExportStatus.PENDING.value

    if old == new_status:
        return job
    if old in models.TERMINAL_EXPORT_STATUSES:
        raise InvalidTransition(
            f"Export job is terminal; cannot transition: {old} -> {new_status}",
            job_id=job.job_id,
        )
    if _EXPORT_STATUS_ORDER[new_status] < _EXPORT_STATUS_ORDER[old]:
        raise InvalidTransition(
            f"Invalid export job transition: {old} -> {new_status}",
            job_id=job.job_id,
        )
    if new_status == ExportStatus.SUCCEEDED.value and not output_location:
        raise InvalidTransition(
            "A succeeded export must have an output location",
            job_id=job.job_id,
        )

    now = utcnow()
    job.status = new_status
    job.updated_at = now

    if new_status == ExportStatus.SUCCEEDED.value:
        job.output_location = output_location
        job.expected_file_count = expected_file_count
        job.completed_at = now
    elif new_status == ExportStatus.FAILED.value:
        job.failure_message = failure_message
        job.completed_at = now

    db.flush()
    return job


def archive_export_job(db: Session, *, job: models.ExportJob) -> models.ExportJob:
    """Hide a job from window planning; its file records are kept as-is."""
    if job.archived_at is None:
        job.archived_at = utcnow()
        db.flush()
    return job
