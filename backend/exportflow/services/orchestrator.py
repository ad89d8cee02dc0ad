"""Top-level pipeline: idempotency check -> export -> enumerate -> dispatch.

Each invocation is recorded as a ``pipeline_runs`` row whose stage only moves
forward. Stage failures never escape ``run_export``/``resume``; they come back
as a FAILED PipelineResult carrying the error code, retryability, and the
job/window/file context needed to resume or remediate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from exportflow import models
from exportflow.core.clock import as_utc, utcnow
from exportflow.core.errors import (
    ExportFailed,
    ExportPipelineError,
    InvalidWindow,
    RetryLimitExceeded,
)
from exportflow.services import export_job_service, pipeline_run_service
from exportflow.services.dispatcher import STATE_BLOCKED, STATE_CANCELLED, WorkerDispatcher
from exportflow.services.export_driver import ExportDriver
from exportflow.services.export_job_service import ExportJobSnapshot
from exportflow.services.file_enumerator import FileEnumerator
from exportflow.services.ledger import TrackingLedger, storage_session

logger = logging.getLogger("exportflow.orchestrator")

ExportStatus = models.ExportStatus
PipelineStage = models.PipelineStage

STATUS_DONE = "DONE"
STATUS_FAILED = "FAILED"
STATUS_CANCELLED = "CANCELLED"

PLAN_RUN = "run"
PLAN_RESUME = "resume"
PLAN_BLOCKED = "blocked"


@dataclass(frozen=True)
class PipelineResult:
    status: str
    files_processed: int
    failed_file_ids: list[str] = field(default_factory=list)
    job_id: str | None = None
    table_id: str | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    run_id: int | None = None
    failed_files: tuple[dict[str, Any], ...] = ()
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "files_processed": self.files_processed,
            "failed_file_ids": list(self.failed_file_ids),
            "job_id": self.job_id,
            "table_id": self.table_id,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "run_id": self.run_id,
            "failed_files": [dict(f) for f in self.failed_files],
            "error_code": self.error_code,
            "error_message": self.error_message,
            "retryable": self.retryable,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass(frozen=True)
class WindowPlan:
    table_id: str
    window_start: datetime
    window_end: datetime
    action: str
    reason: str
    job_id: str | None = None


@dataclass
class _RunContext:
    run_id: int | None
    trigger: str
    table_id: str
    window_start: datetime | None
    window_end: datetime | None
    started: float
    job_id: str | None = None


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        ledger: TrackingLedger,
        driver: ExportDriver,
        enumerator: FileEnumerator,
        dispatcher: WorkerDispatcher,
        poll_interval: float = 30.0,
        export_timeout: float = 6 * 60 * 60,
        window_size: timedelta = timedelta(hours=1),
        initial_start: datetime | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.ledger = ledger
        self.driver = driver
        self.enumerator = enumerator
        self.dispatcher = dispatcher
        self.poll_interval = float(poll_interval)
        self.export_timeout = float(export_timeout)
        self.window_size = window_size
        self.initial_start = as_utc(initial_start)
        self._monotonic = monotonic

    # -- run bookkeeping -------------------------------------------------

    # Synchronous SQLAlchemy work; coroutines run it via asyncio.to_thread.

    def _insert_run(
        self,
        trigger: str,
        table_id: str,
        window_start: datetime | None,
        window_end: datetime | None,
        job_id: str | None,
    ) -> int:
        with storage_session(self._session_factory, "start_pipeline_run") as db:
            run = pipeline_run_service.start_pipeline_run(
                db,
                trigger=trigger,  # type: ignore[arg-type]
                table_id=table_id,
                window_start=window_start,
                window_end=window_end,
                job_id=job_id,
            )
            db.commit()
            return int(run.id)

    def _write_stage(self, ctx: _RunContext, stage: PipelineStage, fields: dict[str, Any]) -> None:
        with storage_session(self._session_factory, "advance_pipeline_run") as db:
            run = pipeline_run_service.get_pipeline_run(db, ctx.run_id)
            if run is None:
                return
            pipeline_run_service.transition_pipeline_run_stage(
                db, run=run, new_stage=stage.value, job_id=ctx.job_id, **fields
            )
            db.commit()

    def _find_window_job(
        self, table_id: str, start: datetime, end: datetime
    ) -> ExportJobSnapshot | None:
        with self._session_factory() as db:
            existing = export_job_service.find_job_for_window(
                db, table_id=table_id, window_start=start, window_end=end
            )
            return ExportJobSnapshot.from_row(existing) if existing is not None else None

    async def _start_run(
        self,
        trigger: str,
        table_id: str,
        window_start: datetime | None,
        window_end: datetime | None,
        job_id: str | None = None,
    ) -> _RunContext:
        run_id = await asyncio.to_thread(
            self._insert_run, trigger, table_id, window_start, window_end, job_id
        )

        logger.info(
            "pipeline_run_started",
            extra={
                "run_id": run_id,
                "trigger": trigger,
                "table_id": table_id,
                "job_id": job_id,
                "window_start": window_start.isoformat() if window_start else None,
                "window_end": window_end.isoformat() if window_end else None,
            },
        )
        return _RunContext(
            run_id=run_id,
            trigger=trigger,
            table_id=table_id,
            window_start=window_start,
            window_end=window_end,
            started=self._monotonic(),
            job_id=job_id,
        )

    async def _advance(self, ctx: _RunContext, stage: PipelineStage, **fields: Any) -> None:
        await asyncio.to_thread(self._write_stage, ctx, stage, fields)
        logger.info(
            "pipeline_stage",
            extra={"run_id": ctx.run_id, "stage": stage.value, "job_id": ctx.job_id},
        )

    async def _finish(self, ctx: _RunContext, stage: PipelineStage, **fields: Any) -> None:
        # The result is returned even when the run row cannot be updated.
        try:
            await self._advance(ctx, stage, **fields)
        except (ExportPipelineError, SQLAlchemyError) as exc:
            logger.error(
                "pipeline_run_not_recorded",
                extra={"run_id": ctx.run_id, "stage": stage.value, "error": str(exc)},
            )

    def _result(self, ctx: _RunContext, status: str, files_processed: int, **kw: Any) -> PipelineResult:
        return PipelineResult(
            status=status,
            files_processed=int(files_processed),
            job_id=ctx.job_id,
            table_id=ctx.table_id,
            window_start=ctx.window_start,
            window_end=ctx.window_end,
            run_id=ctx.run_id,
            elapsed_seconds=max(0.0, self._monotonic() - ctx.started),
            **kw,
        )

    async def _done(self, ctx: _RunContext, files_processed: int) -> PipelineResult:
        await self._finish(ctx, PipelineStage.DONE, files_processed=files_processed, failed_file_ids=[])
        result = self._result(ctx, STATUS_DONE, files_processed)
        logger.info(
            "pipeline_done",
            extra={
                "run_id": ctx.run_id,
                "job_id": ctx.job_id,
                "files_processed": files_processed,
                "elapsed_seconds": round(result.elapsed_seconds, 3),
            },
        )
        return result

    async def _completed_count(self, ctx: _RunContext) -> int:
        if ctx.job_id is None:
            return 0
        try:
            counts = await asyncio.to_thread(self.ledger.counts, ctx.job_id)
        except ExportPipelineError:
            return 0
        return counts[models.FileStatus.COMPLETED.value]

    async def _cancelled(self, ctx: _RunContext) -> PipelineResult:
        completed = await self._completed_count(ctx)
        await self._finish(ctx, PipelineStage.CANCELLED, files_processed=completed)
        logger.warning("pipeline_cancelled", extra={"run_id": ctx.run_id, "job_id": ctx.job_id})
        return self._result(ctx, STATUS_CANCELLED, completed, retryable=True)

    async def _fail(self, ctx: _RunContext, exc: ExportPipelineError) -> PipelineResult:
        failed_files = tuple(getattr(exc, "failed_files", ()) or ())
        failed_ids = [str(f["file_id"]) for f in failed_files]
        ctx.job_id = ctx.job_id or exc.context.get("job_id")
        files_processed = await self._completed_count(ctx)
        await self._finish(
            ctx,
            PipelineStage.FAILED,
            files_processed=files_processed,
            failed_file_ids=failed_ids,
            error_code=exc.code,
            error_message=exc.message,
        )
        logger.warning(
            "pipeline_failed",
            extra={"run_id": ctx.run_id, "job_id": ctx.job_id, "error": exc.to_dict()},
        )
        return self._result(
            ctx,
            STATUS_FAILED,
            files_processed,
            failed_file_ids=failed_ids,
            failed_files=failed_files,
            error_code=exc.code,
            error_message=exc.message,
            retryable=exc.retryable,
        )

    async def _fail_unexpected(self, ctx: _RunContext, exc: Exception) -> None:
        await self._finish(
            ctx,
            PipelineStage.FAILED,
            error_code="unexpected_error",
            error_message=f"{type(exc).__name__}: {exc}",
        )
        logger.exception("pipeline_unexpected_error", extra={"run_id": ctx.run_id, "job_id": ctx.job_id})

    # -- stages ----------------------------------------------------------

    @staticmethod
    def _is_cancelled(cancel_event: asyncio.Event | None) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    async def _await_export(
        self, ctx: _RunContext, job: ExportJobSnapshot, cancel_event: asyncio.Event | None
    ) -> ExportJobSnapshot | None:
        """Poll to terminal; None when cancelled first. A FAILED export raises ExportFailed."""
        if not job.is_terminal:
            job = await self.driver.await_terminal(
                job.job_id,
                poll_interval=self.poll_interval,
                timeout=self.export_timeout,
                cancel_event=cancel_event,
            )
            if not job.is_terminal:
                return None

        if job.status == ExportStatus.FAILED.value:
            raise ExportFailed(
                job.failure_message or "Source export failed",
                job_id=job.job_id,
                table_id=job.table_id,
                window_start=job.window_start.isoformat(),
                window_end=job.window_end.isoformat(),
            )
        return job

    async def _enumerate_and_dispatch(
        self, ctx: _RunContext, job: ExportJobSnapshot, cancel_event: asyncio.Event | None
    ) -> PipelineResult:
        await self._advance(ctx, PipelineStage.ENUMERATING)
        existing = await asyncio.to_thread(self.ledger.record_count, job.job_id)
        if existing == 0:
            seeded = await self.enumerator.seed(job, self.ledger)
            logger.info("pipeline_seeded", extra={"job_id": job.job_id, "seeded": seeded})
        else:
            logger.info("pipeline_already_seeded", extra={"job_id": job.job_id, "records": existing})

        if self._is_cancelled(cancel_event):
            return await self._cancelled(ctx)

        await self._advance(ctx, PipelineStage.DISPATCHING)
        outcome = await self.dispatcher.dispatch(job, cancel_event=cancel_event)

        if outcome.state == STATE_CANCELLED:
            return await self._cancelled(ctx)
        if outcome.state == STATE_BLOCKED:
            raise RetryLimitExceeded(
                f"{len(outcome.failed_files)} file(s) exhausted their retries",
                failed_files=list(outcome.failed_files),
                job_id=job.job_id,
                table_id=job.table_id,
                window_start=job.window_start.isoformat(),
                window_end=job.window_end.isoformat(),
                completed=outcome.completed,
            )
        return await self._done(ctx, outcome.completed)

    # -- public operations -----------------------------------------------

    async def run_export(
        self,
        table_id: str,
        window_start: datetime,
        window_end: datetime,
        *,
        cancel_event: asyncio.Event | None = None,
        trigger: str = "run_export",
    ) -> PipelineResult:
        """Export, enumerate and process one window, reusing prior work for the same window."""
        start, end = export_job_service.normalize_window(window_start, window_end)
        ctx = await self._start_run(trigger, table_id, start, end)
        try:
            job = await asyncio.to_thread(self._find_window_job, table_id, start, end)

            if job is not None and job.status == ExportStatus.SUCCEEDED.value:
                ctx.job_id = job.job_id
                if await asyncio.to_thread(self.ledger.is_job_complete, job.job_id):
                    logger.info("pipeline_already_complete", extra={"job_id": job.job_id})
                    return await self._done(ctx, await self._completed_count(ctx))
                return await self._enumerate_and_dispatch(ctx, job, cancel_event)

            if self._is_cancelled(cancel_event):
                return await self._cancelled(ctx)

            if job is not None and not job.is_terminal:
                ctx.job_id = job.job_id
                logger.info("pipeline_resume_polling", extra={"job_id": job.job_id})
                await self._advance(ctx, PipelineStage.EXPORTING)
            else:
                await self._advance(ctx, PipelineStage.EXPORTING)
                job = await self.driver.start(table_id, start, end)
                ctx.job_id = job.job_id

            finished = await self._await_export(ctx, job, cancel_event)
            if finished is None:
                return await self._cancelled(ctx)
            return await self._enumerate_and_dispatch(ctx, finished, cancel_event)
        except ExportPipelineError as exc:
            return await self._fail(ctx, exc)
        except Exception as exc:
            await self._fail_unexpected(ctx, exc)
            raise

    async def resume(
        self, job_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> PipelineResult:
        """Operator retry for one job: finish polling, re-queue FAILED files, dispatch.

        COMPLETED records are never touched. Raises ExportJobNotFound for an
        unknown job_id.
        """
        job = await asyncio.to_thread(self.driver.get, job_id)
        ctx = await self._start_run("resume", job.table_id, job.window_start, job.window_end, job.job_id)
        try:
            if not job.is_terminal:
                await self._advance(ctx, PipelineStage.EXPORTING)
            finished = await self._await_export(ctx, job, cancel_event)
            if finished is None:
                return await self._cancelled(ctx)

            requeued = await asyncio.to_thread(
                self.ledger.retry_failed, job_id, reset_retry_count=True
            )
            logger.info("pipeline_resume_requeued", extra={"job_id": job_id, "requeued": requeued})
            return await self._enumerate_and_dispatch(ctx, finished, cancel_event)
        except ExportPipelineError as exc:
            return await self._fail(ctx, exc)
        except Exception as exc:
            await self._fail_unexpected(ctx, exc)
            raise

    def plan_next_window(
        self,
        table_id: str,
        *,
        window: timedelta | None = None,
        now: datetime | None = None,
        initial_start: datetime | None = None,
        resubmit_failed: bool = False,
    ) -> WindowPlan | None:
        """Next window for ``table_id`` from persisted job history.

        An unfinished latest window is handed back for resumption. A FAILED latest
        export is reported as blocked unless ``resubmit_failed`` is set. Otherwise
        the next window starts exactly at the previous end. Returns None when that
        window would end after ``now``.
        """
        size = window or self.window_size
        if size <= timedelta(0):
            raise InvalidWindow("window size must be positive", table_id=table_id)
        now = as_utc(now) if now is not None else utcnow()

        with storage_session(self._session_factory, "plan_next_window") as db:
            last_row = export_job_service.latest_job_for_table(db, table_id)
            last = ExportJobSnapshot.from_row(last_row) if last_row is not None else None

        if last is None:
            start = as_utc(initial_start) or self.initial_start
            if start is None:
                raise InvalidWindow(
                    "No export history for table and no initial start configured",
                    table_id=table_id,
                )
            end = start + size
            if end > now:
                return None
            return WindowPlan(table_id, start, end, PLAN_RUN, "initial")

        if last.status == ExportStatus.FAILED.value:
            action = PLAN_RUN if resubmit_failed else PLAN_BLOCKED
            return WindowPlan(
                table_id, last.window_start, last.window_end, action, "previous_failed", last.job_id
            )

        if not last.is_terminal:
            return WindowPlan(
                table_id, last.window_start, last.window_end, PLAN_RESUME, "export_unfinished", last.job_id
            )

        if not self.ledger.is_job_complete(last.job_id):
            return WindowPlan(
                table_id, last.window_start, last.window_end, PLAN_RESUME, "processing_unfinished", last.job_id
            )

        start = last.window_end
        end = start + size
        if end > now:
            return None
        return WindowPlan(table_id, start, end, PLAN_RUN, "next")

    async def run_incremental(
        self,
        table_id: str,
        *,
        window: timedelta | None = None,
        now: datetime | None = None,
        initial_start: datetime | None = None,
        resubmit_failed: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult | None:
        """Plan and run the next gap-free window; None when there is nothing due yet."""
        plan = await asyncio.to_thread(
            self.plan_next_window,
            table_id,
            window=window,
            now=now,
            initial_start=initial_start,
            resubmit_failed=resubmit_failed,
        )
        if plan is None:
            logger.info("incremental_nothing_due", extra={"table_id": table_id})
            return None

        logger.info(
            "incremental_window_planned",
            extra={
                "table_id": table_id,
                "action": plan.action,
                "reason": plan.reason,
                "job_id": plan.job_id,
                "window_start": plan.window_start.isoformat(),
                "window_end": plan.window_end.isoformat(),
            },
        )

        if plan.action == PLAN_BLOCKED:
            ctx = await self._start_run(
                "incremental", table_id, plan.window_start, plan.window_end, plan.job_id
            )
            return await self._fail(
                ctx,
                ExportFailed(
                    "Latest export for this table failed; resubmit it explicitly to continue",
                    job_id=plan.job_id,
                    table_id=table_id,
                    window_start=plan.window_start.isoformat(),
                    window_end=plan.window_end.isoformat(),
                ),
            )

        return await self.run_export(
            table_id,
            plan.window_start,
            plan.window_end,
            cancel_event=cancel_event,
            trigger="incremental",
        )
