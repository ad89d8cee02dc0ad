import os
import tempfile

# CRITICAL: Set environment variables BEFORE any exportflow imports
# These must be set before exportflow.config.settings is loaded
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "test_exportflow.db")
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"  # Ensure /api prefix is used in tests
os.environ["EXPORT_BUCKET"] = "test-export-bucket"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"

import asyncio
import gzip
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from exportflow import models
from exportflow.database import Base, set_sqlite_pragmas
from exportflow.services.export_source import ExportStatusReport

WINDOW_START = datetime(2024, 3, 15, 0, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 3, 15, 1, 0, tzinfo=timezone.utc)


def make_session_factory(url: str) -> sessionmaker:
    # File-backed with a real pool: ledger calls run in worker threads, each on
    # its own connection.
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    event.listen(engine, "connect", set_sqlite_pragmas)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        future=True,
        expire_on_commit=False,
    )


@pytest.fixture
def session_factory(tmp_path):
    return make_session_factory(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")


def hold_write_lock(db_path: Path, seconds: float) -> threading.Timer:
    """Take the SQLite write lock from another connection and drop it after ``seconds``."""
    blocker = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
    blocker.execute("BEGIN IMMEDIATE")

    def _release() -> None:
        blocker.execute("COMMIT")
        blocker.close()

    timer = threading.Timer(seconds, _release)
    timer.start()
    return timer


async def run_with_heartbeat(awaitable, interval: float = 0.02):
    """Await ``awaitable``; also return the longest gap seen between event loop ticks."""
    loop = asyncio.get_running_loop()
    gaps: list[float] = []
    finished = asyncio.Event()

    async def _tick() -> None:
        last = loop.time()
        while not finished.is_set():
            await asyncio.sleep(interval)
            now = loop.time()
            gaps.append(now - last)
            last = now

    ticker = asyncio.create_task(_tick())
    try:
        result = await awaitable
    finally:
        finished.set()
        await ticker
    return result, max(gaps, default=0.0)


def insert_export_job(
    session_factory: sessionmaker,
    job_id: str = "job-1",
    *,
    table_id: str = "orders",
    status: str = models.ExportStatus.SUCCEEDED.value,
    window_start: datetime = WINDOW_START,
    window_end: datetime = WINDOW_END,
    output_location: str | None = "s3://bucket/exports/job-1",
    expected_file_count: int | None = None,
) -> models.ExportJob:
    with session_factory() as db:
        job = models.ExportJob(
            job_id=job_id,
            table_id=table_id,
            window_start=window_start,
            window_end=window_end,
            status=status,
            output_location=output_location if status == "SUCCEEDED" else None,
            expected_file_count=expected_file_count,
        )
        db.add(job)
        db.commit()
        return job


def incremental_line(pk: str, *, amount: str = "10", deleted: bool = False) -> str:
    """One line of a DynamoDB incremental export in DYNAMODB_JSON format."""
    entry = {
        "Metadata": {"WriteTimeMicros": 1710460800000000},
        "Keys": {"pk": {"S": pk}},
    }
    if not deleted:
        entry["NewImage"] = {"pk": {"S": pk}, "amount": {"N": amount}, "tags": {"SS": ["b", "a"]}}
    return json.dumps(entry)


class ExportWriter:
    """Lays out a finished export on disk the way the source writes it to S3."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.count = 0

    def __call__(
        self,
        files: dict[str, list[str]],
        *,
        manifest: bool = True,
        extra_unlisted: tuple[str, ...] = (),
    ) -> str:
        self.count += 1
        export_id = f"0171{self.count:04d}-abcd"
        out_dir = self.root / "exports" / "AWSDynamoDB" / export_id
        data_dir = out_dir / "data"
        data_dir.mkdir(parents=True, exist_ok=True)

        (out_dir / "manifest-summary.json").write_text(json.dumps({"itemCount": 0}))
        (out_dir / "_started").write_text("")
        manifest_lines = []
        for name, lines in files.items():
            payload = ("\n".join(lines) + "\n").encode("utf-8")
            (data_dir / name).write_bytes(gzip.compress(payload))
            (data_dir / (name + ".md5")).write_text("0" * 32)
            manifest_lines.append(
                json.dumps({"dataFileS3Key": f"exports/AWSDynamoDB/{export_id}/data/{name}"})
            )
        for name in extra_unlisted:
            (data_dir / name).write_bytes(gzip.compress(b"\n"))
        if manifest:
            (out_dir / "manifest-files.json").write_text("\n".join(manifest_lines) + "\n")
        return out_dir.as_uri()


@pytest.fixture
def export_writer(tmp_path):
    return ExportWriter(tmp_path / "source")


class FakeExportSource:
    """Scripted export source: each started export replays ``next_reports`` on polls."""

    def __init__(self) -> None:
        self.started: list[tuple[str, datetime, datetime, int]] = []
        self.next_reports: list[ExportStatusReport] = [ExportStatusReport(status="RUNNING")]
        self.reports: dict[str, list[ExportStatusReport]] = {}
        self.reject: Exception | None = None
        self.polls = 0

    def succeed_with(self, output_location: str) -> None:
        self.next_reports = [
            ExportStatusReport(status="RUNNING"),
            ExportStatusReport(status="SUCCEEDED", output_location=output_location),
        ]

    async def start_export(self, table_id, window_start, window_end, *, attempt=0):
        if self.reject is not None:
            raise self.reject
        self.started.append((table_id, window_start, window_end, attempt))
        job_id = (
            f"arn:aws:dynamodb:us-east-1:123456789012:table/{table_id}"
            f"/export/{len(self.started):04d}"
        )
        self.reports[job_id] = list(self.next_reports)
        return job_id

    async def get_export_status(self, job_id):
        self.polls += 1
        script = self.reports.get(job_id) or [ExportStatusReport(status="RUNNING")]
        if len(script) > 1:
            return script.pop(0)
        return script[0]


@pytest.fixture
def fake_source():
    return FakeExportSource()
