"""Tracking ledger: durable per-file processing state for export jobs.

The ledger is the only writer of ``file_records``. Every operation runs in its
own session and commits once, so callers never observe partial updates.
Claims use conditional UPDATEs (status / lease token in the WHERE clause) and
treat ``rowcount == 1`` as ownership, which makes concurrent claimers disjoint
on any backend that serializes row writes.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Iterator, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as SATimeoutError
from sqlalchemy.orm import Session, sessionmaker

from exportflow import models
from exportflow.core.clock import Clock, as_utc, utcnow
from exportflow.core.errors import FileRecordNotFound, InvalidTransition, LedgerUnavailable

logger = logging.getLogger("exportflow.ledger")

FileStatus = models.FileStatus

DEFAULT_LEASE_SECONDS = 15 * 60
_IN_CLAUSE_CHUNK = 500
_INITIALIZE_ATTEMPTS = 3
_ERROR_MESSAGE_MAX = 4000


def compute_file_id(job_id: str, partition: str) -> str:
    raw = f"{job_id}\n{partition}".encode("utf-8")
    return "fil_" + hashlib.sha256(raw).hexdigest()[:32]


@dataclass(frozen=True)
class FileRecordSnapshot:
    id: int
    file_id: str
    job_id: str
    partition_key: str
    location: str
    status: str
    retry_count: int
    lease_token: str | None
    lease_expires_at: datetime | None
    error_message: str | None
    start_time: datetime | None
    end_time: datetime | None
    last_updated: datetime | None
    archived_at: datetime | None

    @classmethod
    def from_row(cls, row: models.FileRecord) -> "FileRecordSnapshot":
        return cls(
            id=int(row.id),
            file_id=str(row.file_id),
            job_id=str(row.job_id),
            partition_key=str(row.partition_key),
            location=str(row.location),
            status=str(row.status),
            retry_count=int(row.retry_count or 0),
            lease_token=row.lease_token,
            lease_expires_at=as_utc(row.lease_expires_at),
            error_message=row.error_message,
            start_time=as_utc(row.start_time),
            end_time=as_utc(row.end_time),
            last_updated=as_utc(row.last_updated),
            archived_at=as_utc(row.archived_at),
        )

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "location": self.location,
            "status": self.status,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
        }


def _chunks(values: Sequence[str], size: int = _IN_CLAUSE_CHUNK) -> Iterator[Sequence[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


def _safe_rollback(db: Session) -> None:
    try:
        db.rollback()
    except Exception:  # noqa: BLE001
        pass


@contextmanager
def storage_session(session_factory: sessionmaker, operation: str) -> Iterator[Session]:
    """One session per operation; storage faults surface as LedgerUnavailable."""
    db = session_factory()
    try:
        yield db
    except (OperationalError, SATimeoutError) as exc:
        _safe_rollback(db)
        logger.warning(
            "ledger_unavailable",
            extra={"operation": operation, "error": str(exc)},
        )
        raise LedgerUnavailable(
            f"Ledger storage unavailable during {operation}",
            operation=operation,
            error=str(exc),
        ) from exc
    except Exception:
        _safe_rollback(db)
        raise
    finally:
        db.close()


class TrackingLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self._session_factory = session_factory
        self.lease_seconds = float(lease_seconds)
        self._clock = clock

    def _session(self, operation: str):
        return storage_session(self._session_factory, operation)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # -- seeding ---------------------------------------------------------

    def initialize(self, job_id: str, locations: Iterable[str]) -> int:
        """Create one PENDING record per location; existing records are left untouched.

        Returns the number of records created by this call.
        """
        by_file_id: dict[str, str] = {}
        for loc in locations:
            location = str(loc)
            by_file_id.setdefault(compute_file_id(job_id, location), location)

        if not by_file_id:
            return 0

        for attempt in range(1, _INITIALIZE_ATTEMPTS + 1):
            with self._session("initialize") as db:
                existing: set[str] = set()
                for chunk in _chunks(list(by_file_id)):
                    existing.update(
                        db.execute(
                            select(models.FileRecord.file_id).where(
                                models.FileRecord.file_id.in_(list(chunk))
                            )
                        ).scalars()
                    )

                now = self._now()
                created = 0
                for file_id, location in by_file_id.items():
                    if file_id in existing:
                        continue
                    db.add(
                        models.FileRecord(
                            file_id=file_id,
                            job_id=str(job_id),
                            partition_key=location,
                            location=location,
                            status=FileStatus.PENDING.value,
                            retry_count=0,
                            last_updated=now,
                            created_at=now,
                        )
                    )
                    created += 1

                try:
                    db.commit()
                except IntegrityError:
                    # A concurrent initializer inserted some of the same file_ids.
                    db.rollback()
                    logger.info(
                        "ledger_initialize_conflict",
                        extra={"job_id": job_id, "attempt": attempt},
                    )
                    continue

                logger.info(
                    "ledger_initialized",
                    extra={
                        "job_id": job_id,
                        "created_count": created,
                        "already_present": len(existing),
                    },
                )
                return created

        raise InvalidTransition(
            "Could not seed ledger after repeated conflicts",
            job_id=job_id,
        )

    # -- claiming --------------------------------------------------------

    def claim_next_batch(self, job_id: str, max_n: int) -> list[FileRecordSnapshot]:
        """Atomically claim up to ``max_n`` PENDING or lease-expired records.

        Reclaimed records (expired lease) get ``retry_count`` incremented by one.
        """
        if int(max_n) <= 0:
            return []

        now = self._now()
        expires_at = now + timedelta(seconds=self.lease_seconds)
        claimed_ids: list[int] = []
        reclaimed = 0
        tried: set[int] = set()

        with self._session("claim_next_batch") as db:
            while len(claimed_ids) < int(max_n):
                stmt = (
                    select(
                        models.FileRecord.id,
                        models.FileRecord.status,
                        models.FileRecord.lease_token,
                    )
                    .where(models.FileRecord.job_id == str(job_id))
                    .where(models.FileRecord.archived_at.is_(None))
                    .where(
                        or_(
                            models.FileRecord.status == FileStatus.PENDING.value,
                            and_(
                                models.FileRecord.status == FileStatus.IN_PROGRESS.value,
                                models.FileRecord.lease_expires_at <= now,
                            ),
                        )
                    )
                    .order_by(models.FileRecord.id.asc())
                    .limit(int(max_n) - len(claimed_ids))
                )
                if tried:
                    stmt = stmt.where(models.FileRecord.id.not_in(tried))

                candidates = db.execute(stmt).all()
                if not candidates:
                    break

                for row in candidates:
                    tried.add(int(row.id))
                    values = {
                        "status": FileStatus.IN_PROGRESS.value,
                        "lease_token": uuid.uuid4().hex,
                        "lease_expires_at": expires_at,
                        "start_time": now,
                        "end_time": None,
                        "last_updated": now,
                    }
                    conditions = [models.FileRecord.id == row.id]
                    if row.status == FileStatus.PENDING.value:
                        conditions.append(models.FileRecord.status == FileStatus.PENDING.value)
                    else:
                        conditions.append(
                            models.FileRecord.status == FileStatus.IN_PROGRESS.value
                        )
                        conditions.append(models.FileRecord.lease_expires_at <= now)
                        if row.lease_token is None:
                            conditions.append(models.FileRecord.lease_token.is_(None))
                        else:
                            conditions.append(models.FileRecord.lease_token == row.lease_token)
                        values["retry_count"] = models.FileRecord.retry_count + 1

                    result = db.execute(
                        update(models.FileRecord)
                        .where(*conditions)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        claimed_ids.append(int(row.id))
                        if row.status != FileStatus.PENDING.value:
                            reclaimed += 1

            db.commit()

            if not claimed_ids:
                return []

            rows = (
                db.execute(
                    select(models.FileRecord)
                    .where(models.FileRecord.id.in_(claimed_ids))
                    .order_by(models.FileRecord.id.asc())
                )
                .scalars()
                .all()
            )
            snapshots = [FileRecordSnapshot.from_row(r) for r in rows]

        logger.info(
            "ledger_claimed",
            extra={"job_id": job_id, "claimed": len(snapshots), "reclaimed": reclaimed},
        )
        return snapshots

    # -- outcomes --------------------------------------------------------

    def _get_row(self, db: Session, file_id: str) -> models.FileRecord:
        row = db.execute(
            select(models.FileRecord).where(models.FileRecord.file_id == str(file_id))
        ).scalar_one_or_none()
        if row is None:
            raise FileRecordNotFound(f"File record not found: {file_id}", file_id=file_id)
        return row

    def mark_completed(self, file_id: str, *, lease_token: str | None = None) -> FileRecordSnapshot:
        """IN_PROGRESS -> COMPLETED. No-op when the record is already COMPLETED."""
        now = self._now()
        with self._session("mark_completed") as db:
            conditions = [
                models.FileRecord.file_id == str(file_id),
                models.FileRecord.status == FileStatus.IN_PROGRESS.value,
            ]
            if lease_token is not None:
                conditions.append(models.FileRecord.lease_token == lease_token)

            result = db.execute(
                update(models.FileRecord)
                .where(*conditions)
                .values(
                    status=FileStatus.COMPLETED.value,
                    end_time=now,
                    last_updated=now,
                    lease_token=None,
                    lease_expires_at=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                row = self._get_row(db, file_id)
                if row.status == FileStatus.COMPLETED.value:
                    return FileRecordSnapshot.from_row(row)
                raise InvalidTransition(
                    f"Cannot complete file record from status {row.status}",
                    file_id=file_id,
                    status=row.status,
                    lease_mismatch=bool(lease_token and row.lease_token != lease_token),
                )

            db.commit()
            snapshot = FileRecordSnapshot.from_row(self._get_row(db, file_id))

        logger.info("ledger_file_completed", extra={"file_id": file_id, "job_id": snapshot.job_id})
        return snapshot

    def mark_failed(
        self,
        file_id: str,
        error: str,
        *,
        lease_token: str | None = None,
    ) -> FileRecordSnapshot:
        """IN_PROGRESS -> FAILED; records the error and counts one failed attempt."""
        now = self._now()
        message = str(error or "unknown error")[:_ERROR_MESSAGE_MAX]
        with self._session("mark_failed") as db:
            conditions = [
                models.FileRecord.file_id == str(file_id),
                models.FileRecord.status == FileStatus.IN_PROGRESS.value,
            ]
            if lease_token is not None:
                conditions.append(models.FileRecord.lease_token == lease_token)

            result = db.execute(
                update(models.FileRecord)
                .where(*conditions)
                .values(
                    status=FileStatus.FAILED.value,
                    error_message=message,
                    end_time=now,
                    last_updated=now,
                    lease_token=None,
                    lease_expires_at=None,
                    retry_count=models.FileRecord.retry_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                row = self._get_row(db, file_id)
                raise InvalidTransition(
                    f"Cannot fail file record from status {row.status}",
                    file_id=file_id,
                    status=row.status,
                    lease_mismatch=bool(lease_token and row.lease_token != lease_token),
                )

            db.commit()
            snapshot = FileRecordSnapshot.from_row(self._get_row(db, file_id))

        logger.warning(
            "ledger_file_failed",
            extra={
                "file_id": file_id,
                "job_id": snapshot.job_id,
                "retry_count": snapshot.retry_count,
                "error": message,
            },
        )
        return snapshot

    def retry_failed(
        self,
        job_id: str,
        *,
        below_retry_limit: int | None = None,
        file_ids: Sequence[str] | None = None,
        reset_retry_count: bool = False,
    ) -> int:
        """FAILED -> PENDING for the job's failed records; returns how many were re-queued."""
        now = self._now()
        with self._session("retry_failed") as db:
            conditions = [
                models.FileRecord.job_id == str(job_id),
                models.FileRecord.status == FileStatus.FAILED.value,
                models.FileRecord.archived_at.is_(None),
            ]
            if below_retry_limit is not None:
                conditions.append(models.FileRecord.retry_count < int(below_retry_limit))
            if file_ids is not None:
                if not file_ids:
                    return 0
                conditions.append(models.FileRecord.file_id.in_([str(f) for f in file_ids]))

            values: dict = {
                "status": FileStatus.PENDING.value,
                "last_updated": now,
                "lease_token": None,
                "lease_expires_at": None,
            }
            if reset_retry_count:
                values["retry_count"] = 0

            result = db.execute(
                update(models.FileRecord)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            requeued = int(result.rowcount or 0)

        if requeued:
            logger.info(
                "ledger_failed_requeued",
                extra={
                    "job_id": job_id,
                    "requeued": requeued,
                    "reset_retry_count": reset_retry_count,
                },
            )
        return requeued

    def exclude(self, file_id: str) -> FileRecordSnapshot:
        """Archive one record so it no longer blocks job completion."""
        now = self._now()
        with self._session("exclude") as db:
            result = db.execute(
                update(models.FileRecord)
                .where(models.FileRecord.file_id == str(file_id))
                .where(models.FileRecord.archived_at.is_(None))
                .where(models.FileRecord.status != FileStatus.IN_PROGRESS.value)
                .values(archived_at=now, last_updated=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                row = self._get_row(db, file_id)
                if row.archived_at is not None:
                    return FileRecordSnapshot.from_row(row)
                raise InvalidTransition(
                    "Cannot exclude a file record while it is in progress",
                    file_id=file_id,
                    status=row.status,
                )
            db.commit()
            snapshot = FileRecordSnapshot.from_row(self._get_row(db, file_id))

        logger.info(
            "ledger_file_excluded",
            extra={"file_id": file_id, "job_id": snapshot.job_id, "status": snapshot.status},
        )
        return snapshot

    # -- queries ---------------------------------------------------------

    def get(self, file_id: str) -> FileRecordSnapshot:
        with self._session("get") as db:
            return FileRecordSnapshot.from_row(self._get_row(db, file_id))

    def list_page(
        self,
        job_id: str,
        status: str | None = None,
        *,
        after_id: int = 0,
        limit: int = 100,
        include_archived: bool = False,
    ) -> tuple[list[FileRecordSnapshot], int | None]:
        """One keyset page ordered by row id; the cursor is None on the last page."""
        limit = max(1, int(limit))
        with self._session("list_page") as db:
            stmt = (
                select(models.FileRecord)
                .where(models.FileRecord.job_id == str(job_id))
                .where(models.FileRecord.id > int(after_id or 0))
                .order_by(models.FileRecord.id.asc())
                .limit(limit + 1)
            )
            if status is not None:
                stmt = stmt.where(models.FileRecord.status == str(status))
            if not include_archived:
                stmt = stmt.where(models.FileRecord.archived_at.is_(None))
            rows = db.execute(stmt).scalars().all()

        items = [FileRecordSnapshot.from_row(r) for r in rows[:limit]]
        next_cursor = items[-1].id if len(rows) > limit and items else None
        return items, next_cursor

    def list_by_status(
        self,
        job_id: str,
        status: str | None,
        *,
        page_size: int = 100,
        after_id: int = 0,
    ) -> Iterator[FileRecordSnapshot]:
        """Lazily walk matching records page by page.

        Restart from any point by passing the ``id`` of the last record seen as
        ``after_id``.
        """
        cursor: int | None = int(after_id or 0)
        while cursor is not None:
            items, cursor = self.list_page(job_id, status, after_id=cursor, limit=page_size)
            yield from items

    def counts(self, job_id: str) -> dict[str, int]:
        out = {s.value: 0 for s in FileStatus}
        with self._session("counts") as db:
            rows = db.execute(
                select(models.FileRecord.status, func.count(models.FileRecord.id))
                .where(models.FileRecord.job_id == str(job_id))
                .where(models.FileRecord.archived_at.is_(None))
                .group_by(models.FileRecord.status)
            ).all()
        for status, count in rows:
            out[str(status)] = int(count or 0)
        return out

    def record_count(self, job_id: str) -> int:
        """Every record ever seeded for the job, excluded ones included."""
        with self._session("record_count") as db:
            total = db.execute(
                select(func.count(models.FileRecord.id)).where(
                    models.FileRecord.job_id == str(job_id)
                )
            ).scalar_one()
        return int(total or 0)

    def is_job_complete(self, job_id: str) -> bool:
        """True iff the job was seeded and every non-archived record is COMPLETED.

        A job whose records were all excluded counts as complete.
        """
        counts = self.counts(job_id)
        total = sum(counts.values())
        if total == 0:
            return self.record_count(job_id) > 0
        return counts[FileStatus.COMPLETED.value] == total

    def has_claimable(self, job_id: str) -> bool:
        now = self._now()
        with self._session("has_claimable") as db:
            found = db.execute(
                select(models.FileRecord.id)
                .where(models.FileRecord.job_id == str(job_id))
                .where(models.FileRecord.archived_at.is_(None))
                .where(
                    or_(
                        models.FileRecord.status == FileStatus.PENDING.value,
                        and_(
                            models.FileRecord.status == FileStatus.IN_PROGRESS.value,
                            models.FileRecord.lease_expires_at <= now,
                        ),
                    )
                )
                .limit(1)
            ).first()
        return found is not None

    def exhausted_failures(self, job_id: str, max_retries: int) -> list[FileRecordSnapshot]:
        return [
            r
            for r in self.list_by_status(job_id, FileStatus.FAILED.value)
            if r.retry_count >= int(max_retries)
        ]
