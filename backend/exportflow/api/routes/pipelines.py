from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from exportflow import models
from exportflow.api.deps import get_ledger, get_orchestrator
from exportflow.database import get_db
from exportflow.schemas.pipelines import (
    ExportJobRead,
    FileRecordPage,
    FileRecordRead,
    NextWindowResponse,
    PipelineResultRead,
    PipelineRunCreate,
    PipelineRunRead,
    WindowPlanRead,
)
from exportflow.services import export_job_service, pipeline_run_service
from exportflow.services.export_job_service import ExportJobSnapshot
from exportflow.services.ledger import TrackingLedger
from exportflow.services.orchestrator import PipelineOrchestrator

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

_FILE_STATUSES = {s.value for s in models.FileStatus}


def _job_read(job: models.ExportJob, ledger: TrackingLedger) -> ExportJobRead:
    snap = ExportJobSnapshot.from_row(job)
    return ExportJobRead(
        job_id=snap.job_id,
        table_id=snap.table_id,
        window_start=snap.window_start,
        window_end=snap.window_end,
        status=snap.status,
        output_location=snap.output_location,
        expected_file_count=snap.expected_file_count,
        failure_message=snap.failure_message,
        completed_at=snap.completed_at,
        archived_at=job.archived_at,
        file_counts=ledger.counts(snap.job_id),
        is_complete=ledger.is_job_complete(snap.job_id),
    )


def _require_job(db: Session, job_id: str) -> models.ExportJob:
    job = export_job_service.get_export_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Export job not found")
    return job


@router.post("/runs", response_model=PipelineResultRead)
async def trigger_pipeline_run(
    payload: PipelineRunCreate,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),  # noqa: B008
):
    result = await orchestrator.run_export(
        payload.table_id, payload.window_start, payload.window_end
    )
    return result.to_dict()


@router.get("/runs/{run_id}", response_model=PipelineRunRead)
def get_pipeline_run(
    run_id: int,
    db: Session = Depends(get_db),  # noqa: B008
):
    run = pipeline_run_service.get_pipeline_run(db, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return run


@router.get("/next-window", response_model=NextWindowResponse)
def plan_next_window(
    table_id: str = Query(..., min_length=1, max_length=255),  # noqa: B008
    window_minutes: Optional[int] = Query(None, ge=1),  # noqa: B008
    resubmit_failed: bool = Query(False),  # noqa: B008
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),  # noqa: B008
):
    plan = orchestrator.plan_next_window(
        table_id,
        window=timedelta(minutes=window_minutes) if window_minutes else None,
        resubmit_failed=resubmit_failed,
    )
    if plan is None:
        return NextWindowResponse(detail="No window is due yet")
    return NextWindowResponse(plan=WindowPlanRead.model_validate(plan))


@router.get("/jobs", response_model=list[ExportJobRead])
def list_jobs(
    table_id: Optional[str] = Query(None, min_length=1, max_length=255),  # noqa: B008
    status: Optional[str] = Query(None),  # noqa: B008
    limit: int = Query(50, ge=1, le=500),  # noqa: B008
    db: Session = Depends(get_db),  # noqa: B008
    ledger: TrackingLedger = Depends(get_ledger),  # noqa: B008
):
    jobs = export_job_service.list_export_jobs(db, table_id=table_id, status=status, limit=limit)
    return [_job_read(j, ledger) for j in jobs]


@router.get("/jobs/{job_id:path}/files", response_model=FileRecordPage)
def list_job_files(
    job_id: str,
    status: Optional[str] = Query(None),  # noqa: B008
    after_id: int = Query(0, ge=0),  # noqa: B008
    limit: int = Query(100, ge=1, le=1000),  # noqa: B008
    db: Session = Depends(get_db),  # noqa: B008
    ledger: TrackingLedger = Depends(get_ledger),  # noqa: B008
):
    _require_job(db, job_id)
    if status is not None and status not in _FILE_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown file status: {status}")

    items, next_cursor = ledger.list_page(job_id, status, after_id=after_id, limit=limit)
    return FileRecordPage(
        items=[FileRecordRead.model_validate(r) for r in items],
        next_cursor=next_cursor,
    )


@router.post("/jobs/{job_id:path}/files/{file_id}/exclude", response_model=FileRecordRead)
def exclude_job_file(
    job_id: str,
    file_id: str,
    db: Session = Depends(get_db),  # noqa: B008
    ledger: TrackingLedger = Depends(get_ledger),  # noqa: B008
):
    _require_job(db, job_id)
    record = ledger.get(file_id)
    if record.job_id != job_id:
        raise HTTPException(status_code=404, detail="File record not found for this job")
    return FileRecordRead.model_validate(ledger.exclude(file_id))


@router.post("/jobs/{job_id:path}/resume", response_model=PipelineResultRead)
async def resume_job(
    job_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),  # noqa: B008
):
    result = await orchestrator.resume(job_id)
    return result.to_dict()


@router.post("/jobs/{job_id:path}/archive", response_model=ExportJobRead)
def archive_job(
    job_id: str,
    db: Session = Depends(get_db),  # noqa: B008
    ledger: TrackingLedger = Depends(get_ledger),  # noqa: B008
):
    job = _require_job(db, job_id)
    if not job.status or job.status not in models.TERMINAL_EXPORT_STATUSES:
        raise HTTPException(status_code=409, detail="Only finished export jobs can be archived")
    export_job_service.archive_export_job(db, job=job)
    db.commit()
    return _job_read(job, ledger)


@router.get("/jobs/{job_id:path}", response_model=ExportJobRead)
def get_job(
    job_id: str,
    db: Session = Depends(get_db),  # noqa: B008
    ledger: TrackingLedger = Depends(get_ledger),  # noqa: B008
):
    return _job_read(_require_job(db, job_id), ledger)
