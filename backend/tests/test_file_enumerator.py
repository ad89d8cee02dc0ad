import asyncio

import pytest

from conftest import WINDOW_END, WINDOW_START, incremental_line, insert_export_job
from exportflow.core.errors import IncompleteExport
from exportflow.services.blob_store import LocalBlobStore
from exportflow.services.export_job_service import ExportJobSnapshot
from exportflow.services.file_enumerator import (
    FileEnumerator,
    is_control_object,
    parse_manifest_keys,
)
from exportflow.services.ledger import TrackingLedger


def _job(output_location, *, status="SUCCEEDED", expected_file_count=None, job_id="job-1"):
    return ExportJobSnapshot(
        job_id=job_id,
        table_id="orders",
        window_start=WINDOW_START,
        window_end=WINDOW_END,
        status=status,
        output_location=output_location,
        expected_file_count=expected_file_count,
        failure_message=None,
        completed_at=None,
    )


def test_control_objects_are_recognised():
    assert is_control_object("s3://b/exports/AWSDynamoDB/1/manifest-summary.json")
    assert is_control_object("s3://b/exports/AWSDynamoDB/1/manifest-files.json")
    assert is_control_object("s3://b/exports/AWSDynamoDB/1/_started")
    assert is_control_object("s3://b/exports/AWSDynamoDB/1/data/a.json.gz.md5")
    assert not is_control_object("s3://b/exports/AWSDynamoDB/1/data/a.json.gz")


def test_parse_manifest_keys_rejects_unreadable_lines():
    raw = b'{"dataFileS3Key": "a/data/1.json.gz"}\n\n{"dataFileS3Key": "a/data/2.json.gz"}\n'
    assert parse_manifest_keys(raw) == ["a/data/1.json.gz", "a/data/2.json.gz"]

    with pytest.raises(IncompleteExport) as exc_info:
        parse_manifest_keys(b'{"dataFileS3Key": "a"}\n{"other": 1}\n')
    assert exc_info.value.context["line"] == 2


def test_enumerate_returns_sorted_data_files(tmp_path, export_writer):
    location = export_writer(
        {"b.json.gz": [incremental_line("2")], "a.json.gz": [incremental_line("1")]}
    )
    enumerator = FileEnumerator(LocalBlobStore(tmp_path))

    files = asyncio.run(enumerator.enumerate(_job(location, expected_file_count=2)))

    assert [f.rsplit("/", 1)[-1] for f in files] == ["a.json.gz", "b.json.gz"]
    assert all(f.startswith("file://") and "/data/" in f for f in files)


def test_enumerate_requires_a_succeeded_export(tmp_path):
    enumerator = FileEnumerator(LocalBlobStore(tmp_path))

    with pytest.raises(IncompleteExport) as exc_info:
        asyncio.run(enumerator.enumerate(_job(None, status="RUNNING")))
    assert exc_info.value.context["status"] == "RUNNING"
    assert exc_info.value.context["job_id"] == "job-1"


def test_empty_listing_is_incomplete(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    enumerator = FileEnumerator(LocalBlobStore(tmp_path))

    with pytest.raises(IncompleteExport) as exc_info:
        asyncio.run(enumerator.enumerate(_job(empty.as_uri())))
    assert "empty" in exc_info.value.message
    assert exc_info.value.context["window_start"] == WINDOW_START.isoformat()


def test_listing_must_match_manifest(tmp_path, export_writer):
    location = export_writer({"a.json.gz": [incremental_line("1")]}, extra_unlisted=("stray.json.gz",))
    enumerator = FileEnumerator(LocalBlobStore(tmp_path))

    with pytest.raises(IncompleteExport) as exc_info:
        asyncio.run(enumerator.enumerate(_job(location)))
    assert exc_info.value.context["unexpected"][0].endswith("/data/stray.json.gz")
    assert exc_info.value.context["manifest_count"] == 1


def test_missing_manifest_is_incomplete_unless_allowed(tmp_path, export_writer):
    location = export_writer({"a.json.gz": [incremental_line("1")]}, manifest=False)

    with pytest.raises(IncompleteExport):
        asyncio.run(FileEnumerator(LocalBlobStore(tmp_path)).enumerate(_job(location)))

    lenient = FileEnumerator(LocalBlobStore(tmp_path), require_manifest=False)
    assert len(asyncio.run(lenient.enumerate(_job(location)))) == 1


def test_expected_file_count_must_match(tmp_path, export_writer):
    location = export_writer({"a.json.gz": [incremental_line("1")]})
    enumerator = FileEnumerator(LocalBlobStore(tmp_path))

    with pytest.raises(IncompleteExport) as exc_info:
        asyncio.run(enumerator.enumerate(_job(location, expected_file_count=3)))
    assert exc_info.value.context["listed_count"] == 1


def test_seed_is_idempotent(session_factory, tmp_path, export_writer):
    location = export_writer(
        {"a.json.gz": [incremental_line("1")], "b.json.gz": [incremental_line("2")]}
    )
    insert_export_job(session_factory, output_location=location)
    ledger = TrackingLedger(session_factory)
    enumerator = FileEnumerator(LocalBlobStore(tmp_path), ledger)

    assert asyncio.run(enumerator.seed(_job(location))) == 2
    assert asyncio.run(enumerator.seed(_job(location))) == 0
    assert ledger.counts("job-1")["PENDING"] == 2
