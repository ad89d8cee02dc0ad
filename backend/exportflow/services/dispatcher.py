"""Fan-out of ledger work to concurrent transform workers.

Per job the dispatcher moves DISPATCHING -> DRAINING -> DISPATCHING ... until
the ledger reports completion (DONE), only retry-exhausted failures remain
(BLOCKED), or the cancel event is set (CANCELLED). All FileRecord state goes
through the ledger; the dispatcher keeps nothing durable of its own.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from exportflow import models
from exportflow.core.errors import IncompleteExport, InvalidTransition, LedgerUnavailable
from exportflow.services.blob_store import BlobStore
from exportflow.services.export_job_service import ExportJobSnapshot
from exportflow.services.ledger import FileRecordSnapshot, TrackingLedger
from exportflow.services.transforms import Transform, run_transform

logger = logging.getLogger("exportflow.dispatcher")

FileStatus = models.FileStatus

STATE_DISPATCHING = "DISPATCHING"
STATE_DRAINING = "DRAINING"
STATE_DONE = "DONE"
STATE_BLOCKED = "BLOCKED"
STATE_CANCELLED = "CANCELLED"

_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _slug(value: str) -> str:
    return _SLUG_RE.sub("_", value).strip("_") or "_"


@dataclass(frozen=True)
class DispatchOutcome:
    state: str
    job_id: str
    completed: int
    processed: int
    counts: dict[str, int] = field(default_factory=dict)
    failed_files: tuple[dict[str, Any], ...] = ()

    @property
    def cancelled(self) -> bool:
        return self.state == STATE_CANCELLED

    @property
    def failed_file_ids(self) -> list[str]:
        return [f["file_id"] for f in self.failed_files]


class WorkerDispatcher:
    def __init__(
        self,
        ledger: TrackingLedger,
        source_store: BlobStore,
        destination_store: BlobStore,
        transform: Transform,
        *,
        max_concurrency: int = 4,
        max_retries: int = 3,
        worker_timeout: float = 600.0,
        idle_poll: float = 5.0,
        ledger_retry_attempts: int = 3,
        ledger_retry_delay: float = 1.0,
        destination_prefix: str = "analytics",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if int(max_concurrency) < 1:
            raise ValueError("max_concurrency must be >= 1")
        if int(max_retries) < 1:
            raise ValueError("max_retries must be >= 1")
        self.ledger = ledger
        self.source_store = source_store
        self.destination_store = destination_store
        self.transform = transform
        self.max_concurrency = int(max_concurrency)
        self.max_retries = int(max_retries)
        self.worker_timeout = float(worker_timeout)
        self.idle_poll = float(idle_poll)
        self.ledger_retry_attempts = max(1, int(ledger_retry_attempts))
        self.ledger_retry_delay = float(ledger_retry_delay)
        self.destination_prefix = (destination_prefix or "").strip("/")
        self._sleep = sleep

    def output_key(self, job: ExportJobSnapshot, record: FileRecordSnapshot) -> str:
        parts = [_slug(job.table_id), _slug(job.job_id), f"{record.file_id}.jsonl"]
        if self.destination_prefix:
            parts.insert(0, self.destination_prefix)
        return "/".join(parts)

    async def _ledger_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        for attempt in range(1, self.ledger_retry_attempts + 1):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except LedgerUnavailable:
                if attempt >= self.ledger_retry_attempts:
                    raise
                logger.warning(
                    "dispatch_ledger_retry",
                    extra={"operation": getattr(fn, "__name__", "?"), "attempt": attempt},
                )
                await self._sleep(self.ledger_retry_delay)

    async def _idle(self, cancel_event: asyncio.Event | None) -> None:
        """Sleep one idle poll, returning early once ``cancel_event`` is set."""
        if cancel_event is None:
            await self._sleep(self.idle_poll)
            return
        sleeper = asyncio.ensure_future(self._sleep(self.idle_poll))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            cancelled.cancel()

    async def _process(self, job: ExportJobSnapshot, record: FileRecordSnapshot) -> str:
        raw = await self.source_store.read_bytes(record.location)
        output = await run_transform(self.transform, raw)
        return await self.destination_store.write_bytes(self.output_key(job, record), output)

    async def _run_one(
        self,
        job: ExportJobSnapshot,
        record: FileRecordSnapshot,
        semaphore: asyncio.Semaphore,
    ) -> bool:
        async with semaphore:
            try:
                written = await asyncio.wait_for(
                    self._process(job, record), timeout=self.worker_timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if isinstance(exc, asyncio.TimeoutError):
                    error = f"worker timed out after {self.worker_timeout:g}s"
                else:
                    error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "worker_file_failed",
                    extra={
                        "job_id": job.job_id,
                        "file_id": record.file_id,
                        "location": record.location,
                        "attempt": record.retry_count + 1,
                        "error": error,
                    },
                )
                try:
                    await self._ledger_call(
                        self.ledger.mark_failed,
                        record.file_id,
                        error,
                        lease_token=record.lease_token,
                    )
                except (InvalidTransition, LedgerUnavailable) as ledger_exc:
                    # Lease expiry hands the record back to the claim path.
                    logger.error(
                        "worker_failure_not_recorded",
                        extra={"file_id": record.file_id, "error": str(ledger_exc)},
                    )
                return False

            try:
                await self._ledger_call(
                    self.ledger.mark_completed,
                    record.file_id,
                    lease_token=record.lease_token,
                )
            except (InvalidTransition, LedgerUnavailable) as ledger_exc:
                logger.error(
                    "worker_completion_not_recorded",
                    extra={"file_id": record.file_id, "output": written, "error": str(ledger_exc)},
                )
                return False

            logger.info(
                "worker_file_completed",
                extra={"job_id": job.job_id, "file_id": record.file_id, "output": written},
            )
            return True

    async def _outcome(self, state: str, job: ExportJobSnapshot, processed: int) -> DispatchOutcome:
        counts = await self._ledger_call(self.ledger.counts, job.job_id)
        failed: tuple[dict[str, Any], ...] = ()
        if state == STATE_BLOCKED:
            exhausted = await self._ledger_call(
                self.ledger.exhausted_failures, job.job_id, self.max_retries
            )
            failed = tuple(r.to_dict() for r in exhausted)

        outcome = DispatchOutcome(
            state=state,
            job_id=job.job_id,
            completed=int(counts.get(FileStatus.COMPLETED.value, 0)),
            processed=processed,
            counts=counts,
            failed_files=failed,
        )
        log = logger.warning if state != STATE_DONE else logger.info
        log(
            "dispatch_finished",
            extra={
                "job_id": job.job_id,
                "state": state,
                "processed": processed,
                "counts": counts,
                "failed_file_ids": outcome.failed_file_ids,
            },
        )
        return outcome

    async def dispatch(
        self,
        job: ExportJobSnapshot,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> DispatchOutcome:
        """Drive every ledger record of ``job`` to COMPLETED, or stop at BLOCKED / CANCELLED."""
        semaphore = asyncio.Semaphore(self.max_concurrency)
        processed = 0
        waves = 0

        logger.info(
            "dispatch_started",
            extra={"job_id": job.job_id, "max_concurrency": self.max_concurrency},
        )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return await self._outcome(STATE_CANCELLED, job, processed)

            await self._ledger_call(
                self.ledger.retry_failed, job.job_id, below_retry_limit=self.max_retries
            )
            batch = await self._ledger_call(
                self.ledger.claim_next_batch, job.job_id, self.max_concurrency
            )

            if batch:
                waves += 1
                logger.info(
                    "dispatch_wave",
                    extra={
                        "job_id": job.job_id,
                        "state": STATE_DRAINING,
                        "wave": waves,
                        "files": len(batch),
                    },
                )
                results = await asyncio.gather(
                    *(self._run_one(job, record, semaphore) for record in batch)
                )
                processed += sum(1 for ok in results if ok)
                if await self._ledger_call(self.ledger.is_job_complete, job.job_id):
                    return await self._outcome(STATE_DONE, job, processed)
                continue

            if await self._ledger_call(self.ledger.is_job_complete, job.job_id):
                return await self._outcome(STATE_DONE, job, processed)

            counts = await self._ledger_call(self.ledger.counts, job.job_id)
            # A job whose records were all excluded is complete, so an empty tally
            # here means the ledger was never seeded.
            if sum(counts.values()) == 0:
                raise IncompleteExport("Ledger has no file records for this job", job_id=job.job_id)

            if counts[FileStatus.IN_PROGRESS.value] == 0 and counts[FileStatus.PENDING.value] == 0:
                return await self._outcome(STATE_BLOCKED, job, processed)

            # Live leases held elsewhere; wait for them to finish or expire.
            logger.info(
                "dispatch_waiting_on_leases",
                extra={"job_id": job.job_id, "in_progress": counts[FileStatus.IN_PROGRESS.value]},
            )
            await self._idle(cancel_event)
