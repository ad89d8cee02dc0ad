from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from exportflow.config import Settings
from exportflow.services.blob_store import BlobStore, LocalBlobStore, S3BlobStore
from exportflow.services.dispatcher import WorkerDispatcher
from exportflow.services.export_driver import ExportDriver
from exportflow.services.export_source import DynamoDBExportSource, ExportSource
from exportflow.services.file_enumerator import FileEnumerator
from exportflow.services.ledger import TrackingLedger
from exportflow.services.orchestrator import PipelineOrchestrator
from exportflow.services.transforms import DynamoJsonTransform, Transform


def destination_root(settings: Settings) -> Path:
    root = Path(settings.destination_dir)
    if root.is_absolute():
        return root

    # backend/exportflow/services/... -> backend/
    backend_root = Path(__file__).resolve().parents[2]
    return (backend_root / root).resolve()


def build_destination_store(settings: Settings) -> BlobStore:
    if settings.destination_backend == "s3":
        return S3BlobStore(settings.destination_bucket, region_name=settings.aws_region)
    return LocalBlobStore(destination_root(settings))


def build_orchestrator(
    settings: Settings,
    session_factory: sessionmaker,
    *,
    source: ExportSource | None = None,
    source_store: BlobStore | None = None,
    destination_store: BlobStore | None = None,
    transform: Transform | None = None,
) -> PipelineOrchestrator:
    """Wire the pipeline from settings; any collaborator can be passed in instead."""
    if source is None:
        source = DynamoDBExportSource(
            bucket=settings.export_bucket,
            prefix=settings.export_prefix,
            region_name=settings.aws_region,
        )
    if source_store is None:
        source_store = S3BlobStore(settings.export_bucket, region_name=settings.aws_region)
    if destination_store is None:
        destination_store = build_destination_store(settings)

    ledger = TrackingLedger(session_factory, lease_seconds=settings.lease_seconds)
    driver = ExportDriver(source, session_factory)
    enumerator = FileEnumerator(
        source_store, ledger, require_manifest=settings.export_require_manifest
    )
    dispatcher = WorkerDispatcher(
        ledger,
        source_store,
        destination_store,
        transform or DynamoJsonTransform(),
        max_concurrency=settings.dispatch_max_concurrency,
        max_retries=settings.dispatch_max_retries,
        worker_timeout=settings.worker_timeout_seconds,
        idle_poll=settings.dispatch_idle_poll_seconds,
        ledger_retry_attempts=settings.ledger_retry_attempts,
        ledger_retry_delay=settings.ledger_retry_delay_seconds,
        destination_prefix=settings.destination_prefix,
    )
    return PipelineOrchestrator(
        session_factory=session_factory,
        ledger=ledger,
        driver=driver,
        enumerator=enumerator,
        dispatcher=dispatcher,
        poll_interval=settings.export_poll_interval_seconds,
        export_timeout=settings.export_timeout_seconds,
        window_size=timedelta(minutes=settings.incremental_window_minutes),
        initial_start=settings.incremental_start,
    )
