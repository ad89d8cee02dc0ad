from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy.orm import Session

from exportflow import models
from exportflow.core.clock import utcnow
from exportflow.core.errors import InvalidTransition

PipelineTrigger = Literal["run_export", "resume", "incremental"]

PipelineStage = models.PipelineStage

_STAGE_ORDER = {
    PipelineStage.CHECK_IDEMPOTENCY.value: 0,
    PipelineStage.EXPORTING.value: 1,
    PipelineStage.ENUMERATING.value: 2,
    PipelineStage.DISPATCHING.value: 3,
    PipelineStage.DONE.value: 4,
    PipelineStage.FAILED.value: 4,
    PipelineStage.CANCELLED.value: 4,
}

TERMINAL_STAGES = frozenset(
    {PipelineStage.DONE.value, PipelineStage.FAILED.value, PipelineStage.CANCELLED.value}
)


def start_pipeline_run(
    db: Session,
    *,
    trigger: PipelineTrigger,
    table_id: str,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    job_id: str | None = None,
) -> models.PipelineRun:
    now = utcnow()
    run = models.PipelineRun(
        trigger=str(trigger),
        table_id=str(table_id),
        window_start=window_start,
        window_end=window_end,
        job_id=job_id,
        stage=PipelineStage.CHECK_IDEMPOTENCY.value,
        files_processed=0,
        started_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(run)
    db.flush()
    return run


def get_pipeline_run(db: Session, run_id: int) -> models.PipelineRun | None:
    return db.get(models.PipelineRun, int(run_id))


def transition_pipeline_run_stage(
    db: Session,
    *,
    run: models.PipelineRun,
    new_stage: str,
    job_id: str | None = None,
    files_processed: int | None = None,
    failed_file_ids: list[str] | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> models.PipelineRun:
    if new_stage not in _STAGE_ORDER:
        raise InvalidTransition(f"Invalid pipeline stage: {new_stage}", run_id=run.id)

    old = str(run.stage or PipelineStage.CHECK_IDEMPOTENCY.value)
    if old not in _STAGE_ORDER:
        old = PipelineStage.CHECK_IDEMPOTENCY.value

    if old in TERMINAL_STAGES and new_stage != old:
        raise InvalidTransition(
            f"Run is terminal; cannot transition: {old} -> {new_stage}", run_id=run.id
        )
    # Stages may be skipped (e.g. a finished export goes straight to ENUMERATING), never revisited.
    if _STAGE_ORDER[new_stage] < _STAGE_ORDER[old]:
        raise InvalidTransition(f"Invalid transition: {old} -> {new_stage}", run_id=run.id)

    now = utcnow()
    run.stage = new_stage
    run.updated_at = now

    if job_id is not None:
        run.job_id = job_id
    if files_processed is not None:
        run.files_processed = int(files_processed)

    if new_stage in TERMINAL_STAGES:
        if run.completed_at is None:
            run.completed_at = now
        if failed_file_ids is not None:
            run.failed_file_ids = list(failed_file_ids)
        if new_stage != PipelineStage.DONE.value:
            run.error_code = error_code
            run.error_message = error_message

    db.flush()
    return run
