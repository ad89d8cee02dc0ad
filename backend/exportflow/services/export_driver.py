"""Starts source exports and polls them to a terminal state.

Job state is persisted after every observed change so a crashed or timed-out
run can pick the job back up by ``job_id`` without starting a second export.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy.orm import sessionmaker

from exportflow import models
from exportflow.core.errors import ExportRejected, ExportTimedOut
from exportflow.services import export_job_service
from exportflow.services.export_job_service import ExportJobSnapshot
from exportflow.services.export_source import ExportSource, ExportStatusReport

logger = logging.getLogger("exportflow.export_driver")

ExportStatus = models.ExportStatus


class ExportDriver:
    def __init__(
        self,
        source: ExportSource,
        session_factory: sessionmaker,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self._session_factory = session_factory
        self._monotonic = monotonic
        self._sleep = sleep

    def _admit(self, table_id: str, start: datetime, end: datetime) -> int:
        """Reject overlapping live exports; returns the attempt number for the window."""
        with self._session_factory() as db:
            active = export_job_service.find_overlapping_active_job(
                db, table_id=table_id, window_start=start, window_end=end
            )
            if active is not None:
                raise ExportRejected(
                    "An overlapping export for this table is still running",
                    table_id=table_id,
                    job_id=active.job_id,
                    window_start=start.isoformat(),
                    window_end=end.isoformat(),
                )

            return export_job_service.count_failed_jobs_for_window(
                db, table_id=table_id, window_start=start, window_end=end
            )

    def _record_started(
        self, job_id: str, table_id: str, start: datetime, end: datetime
    ) -> ExportJobSnapshot:
        with self._session_factory() as db:
            job = export_job_service.ensure_export_job(
                db,
                job_id=job_id,
                table_id=table_id,
                window_start=start,
                window_end=end,
                status=ExportStatus.RUNNING.value,
            )
            db.commit()
            return ExportJobSnapshot.from_row(job)

    def _record_report(self, job_id: str, report: ExportStatusReport) -> ExportJobSnapshot:
        with self._session_factory() as db:
            job = export_job_service.require_export_job(db, job_id)
            export_job_service.transition_export_job_status(
                db,
                job=job,
                new_status=report.status,
                output_location=report.output_location,
                expected_file_count=report.expected_file_count,
                failure_message=report.failure_message,
            )
            db.commit()
            return ExportJobSnapshot.from_row(job)

    async def start(
        self, table_id: str, window_start: datetime, window_end: datetime
    ) -> ExportJobSnapshot:
        start, end = export_job_service.normalize_window(window_start, window_end)
        attempt = await asyncio.to_thread(self._admit, table_id, start, end)

        job_id = await self.source.start_export(table_id, start, end, attempt=attempt)
        snapshot = await asyncio.to_thread(self._record_started, job_id, table_id, start, end)

        logger.info(
            "export_job_started",
            extra={
                "job_id": snapshot.job_id,
                "table_id": table_id,
                "window_start": start.isoformat(),
                "window_end": end.isoformat(),
            },
        )
        return snapshot

    def get(self, job_id: str) -> ExportJobSnapshot:
        with self._session_factory() as db:
            return ExportJobSnapshot.from_row(export_job_service.require_export_job(db, job_id))

    async def refresh(self, job_id: str) -> ExportJobSnapshot:
        """Fetch the source status once and persist it if it moved forward."""
        current = await asyncio.to_thread(self.get, job_id)
        if current.is_terminal:
            return current

        report = await self.source.get_export_status(job_id)
        if report.status == current.status or (
            report.status not in models.TERMINAL_EXPORT_STATUSES
            and current.status == ExportStatus.RUNNING.value
        ):
            return current

        snapshot = await asyncio.to_thread(self._record_report, job_id, report)

        logger.info(
            "export_job_status_changed",
            extra={"job_id": job_id, "old_status": current.status, "new_status": snapshot.status},
        )
        return snapshot

    async def await_terminal(
        self,
        job_id: str,
        *,
        poll_interval: float,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> ExportJobSnapshot:
        """Poll until SUCCEEDED or FAILED.

        Raises ExportTimedOut once ``timeout`` seconds have elapsed; the job is
        left RUNNING so a later call can continue polling it.
        A set ``cancel_event`` ends polling early and returns the non-terminal job.
        """
        deadline = self._monotonic() + float(timeout)
        polls = 0
        while True:
            snapshot = await self.refresh(job_id)
            polls += 1
            if snapshot.is_terminal:
                logger.info(
                    "export_job_terminal",
                    extra={"job_id": job_id, "status": snapshot.status, "polls": polls},
                )
                return snapshot

            if cancel_event is not None and cancel_event.is_set():
                logger.info("export_job_poll_cancelled", extra={"job_id": job_id, "polls": polls})
                return snapshot

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                logger.warning(
                    "export_job_poll_timeout",
                    extra={"job_id": job_id, "timeout_seconds": timeout, "polls": polls},
                )
                raise ExportTimedOut(
                    "Export did not reach a terminal state before the timeout",
                    job_id=job_id,
                    timeout_seconds=timeout,
                )
            await self._sleep(min(float(poll_interval), remaining))
