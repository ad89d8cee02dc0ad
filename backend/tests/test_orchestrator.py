import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import WINDOW_END, WINDOW_START, incremental_line, insert_export_job
from exportflow.config import Settings
from exportflow.core.errors import ExportJobNotFound, InvalidWindow
from exportflow.services import pipeline_run_service
from exportflow.services.blob_store import LocalBlobStore
from exportflow.services.export_source import ExportStatusReport
from exportflow.services.factory import build_orchestrator
from exportflow.services.transforms import DynamoJsonTransform

LATER = datetime(2024, 3, 16, tzinfo=timezone.utc)


class CountingTransform:
    def __init__(self, failures=None):
        self.inner = DynamoJsonTransform()
        self.failures = dict(failures or {})
        self.seen: list[str] = []

    def transform(self, raw: bytes) -> bytes:
        out = self.inner.transform(raw)
        pk = out.split(b'"pk":"', 1)[1].split(b'"', 1)[0].decode()
        self.seen.append(pk)
        if self.failures.get(pk, 0) > 0:
            self.failures[pk] -= 1
            raise ValueError(f"bad record {pk}")
        return out


def _orchestrator(session_factory, fake_source, tmp_path, transform=None, **overrides):
    values = {
        "export_poll_interval_seconds": 0.001,
        "dispatch_idle_poll_seconds": 0.001,
        "ledger_retry_delay_seconds": 0,
        "destination_dir": str(tmp_path / "out"),
    }
    values.update(overrides)
    return build_orchestrator(
        Settings(**values),
        session_factory,
        source=fake_source,
        source_store=LocalBlobStore(tmp_path),
        transform=transform or CountingTransform(),
    )


def _four_files(export_writer):
    return export_writer({f"{pk}.json.gz": [incremental_line(pk)] for pk in "1234"})


def _run(session_factory, run_id):
    with session_factory() as db:
        return pipeline_run_service.get_pipeline_run(db, run_id)


def test_run_export_processes_every_file(session_factory, fake_source, export_writer, tmp_path):
    fake_source.succeed_with(_four_files(export_writer))
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    result = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert result.status == "DONE"
    assert result.files_processed == 4
    assert result.failed_file_ids == []
    assert result.job_id.endswith("/export/0001")
    assert result.window_start == WINDOW_START
    assert orchestrator.ledger.is_job_complete(result.job_id)
    assert len(list((tmp_path / "out").rglob("*.jsonl"))) == 4

    run = _run(session_factory, result.run_id)
    assert run.stage == "DONE"
    assert run.files_processed == 4
    assert run.job_id == result.job_id
    assert run.completed_at is not None


def test_rerunning_a_finished_window_does_no_work(
    session_factory, fake_source, export_writer, tmp_path
):
    fake_source.succeed_with(_four_files(export_writer))
    transform = CountingTransform()
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path, transform)

    first = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))
    second = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert second.status == "DONE"
    assert second.job_id == first.job_id
    assert second.files_processed == 4
    assert second.run_id != first.run_id
    assert len(fake_source.started) == 1
    assert len(transform.seen) == 4


def test_blocked_job_resumes_without_reprocessing_completed_files(
    session_factory, fake_source, export_writer, tmp_path
):
    fake_source.succeed_with(_four_files(export_writer))
    transform = CountingTransform(failures={"3": 3})
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path, transform)

    blocked = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert blocked.status == "FAILED"
    assert blocked.error_code == "retry_limit_exceeded"
    assert blocked.retryable is False
    assert blocked.files_processed == 3
    assert len(blocked.failed_file_ids) == 1
    assert blocked.failed_files[0]["location"].endswith("/data/3.json.gz")
    assert _run(session_factory, blocked.run_id).failed_file_ids == blocked.failed_file_ids
    assert sorted(transform.seen) == ["1", "2", "3", "3", "3", "4"]

    resumed = asyncio.run(orchestrator.resume(blocked.job_id))

    assert resumed.status == "DONE"
    assert resumed.files_processed == 4
    assert resumed.job_id == blocked.job_id
    assert transform.seen[6:] == ["3"]
    assert len(fake_source.started) == 1
    assert _run(session_factory, resumed.run_id).trigger == "resume"


def test_failed_export_is_reported_and_can_be_resubmitted(
    session_factory, fake_source, export_writer, tmp_path
):
    fake_source.next_reports = [
        ExportStatusReport(status="FAILED", failure_message="PITR is not enabled")
    ]
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    failed = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert failed.status == "FAILED"
    assert failed.error_code == "export_failed"
    assert failed.error_message == "PITR is not enabled"
    assert failed.job_id is not None
    assert failed.files_processed == 0

    fake_source.succeed_with(_four_files(export_writer))
    retried = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert retried.status == "DONE"
    assert retried.job_id != failed.job_id
    assert [s[3] for s in fake_source.started] == [0, 1]


def test_empty_export_output_is_incomplete(session_factory, fake_source, tmp_path):
    empty = tmp_path / "source" / "empty-export"
    empty.mkdir(parents=True)
    (empty / "manifest-summary.json").write_text("{}")
    fake_source.succeed_with(empty.as_uri())
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    result = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert result.status == "FAILED"
    assert result.error_code == "incomplete_export"
    run = _run(session_factory, result.run_id)
    assert run.stage == "FAILED"
    assert run.error_code == "incomplete_export"


def test_timed_out_export_is_polled_again_on_the_next_run(
    session_factory, fake_source, export_writer, tmp_path
):
    fake_source.next_reports = [ExportStatusReport(status="RUNNING")]
    orchestrator = _orchestrator(
        session_factory, fake_source, tmp_path, export_timeout_seconds=0.02
    )

    timed_out = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert timed_out.status == "FAILED"
    assert timed_out.error_code == "export_timed_out"
    assert timed_out.retryable is True
    assert orchestrator.driver.get(timed_out.job_id).status == "RUNNING"

    fake_source.reports[timed_out.job_id] = [
        ExportStatusReport(status="SUCCEEDED", output_location=_four_files(export_writer))
    ]
    done = asyncio.run(orchestrator.run_export("orders", WINDOW_START, WINDOW_END))

    assert done.status == "DONE"
    assert done.job_id == timed_out.job_id
    assert len(fake_source.started) == 1


def test_cancelled_run_starts_nothing(session_factory, fake_source, tmp_path):
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    async def _go():
        cancel = asyncio.Event()
        cancel.set()
        return await orchestrator.run_export(
            "orders", WINDOW_START, WINDOW_END, cancel_event=cancel
        )

    result = asyncio.run(_go())

    assert result.status == "CANCELLED"
    assert result.retryable is True
    assert fake_source.started == []
    assert _run(session_factory, result.run_id).stage == "CANCELLED"


def test_invalid_window_and_unknown_job_are_rejected(session_factory, fake_source, tmp_path):
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    with pytest.raises(InvalidWindow):
        asyncio.run(orchestrator.run_export("orders", WINDOW_END, WINDOW_START))
    with pytest.raises(ExportJobNotFound):
        asyncio.run(orchestrator.resume("no-such-job"))


def test_incremental_windows_are_gap_free(session_factory, fake_source, export_writer, tmp_path):
    fake_source.succeed_with(_four_files(export_writer))
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    with pytest.raises(InvalidWindow):
        orchestrator.plan_next_window("orders", now=LATER)

    first = asyncio.run(
        orchestrator.run_incremental("orders", now=LATER, initial_start=WINDOW_START)
    )
    second = asyncio.run(orchestrator.run_incremental("orders", now=LATER))

    assert (first.window_start, first.window_end) == (WINDOW_START, WINDOW_END)
    assert second.window_start == first.window_end
    assert second.window_end == first.window_end + timedelta(hours=1)
    assert _run(session_factory, second.run_id).trigger == "incremental"

    # The following window has not closed yet.
    assert asyncio.run(orchestrator.run_incremental("orders", now=second.window_end)) is None


def test_planning_resumes_an_interrupted_window(session_factory, fake_source, export_writer, tmp_path):
    insert_export_job(session_factory, "crashed-job", status="RUNNING")
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    plan = orchestrator.plan_next_window("orders", now=LATER)
    assert (plan.action, plan.reason, plan.job_id) == ("resume", "export_unfinished", "crashed-job")
    assert (plan.window_start, plan.window_end) == (WINDOW_START, WINDOW_END)

    fake_source.reports["crashed-job"] = [
        ExportStatusReport(status="SUCCEEDED", output_location=_four_files(export_writer))
    ]
    result = asyncio.run(orchestrator.run_incremental("orders", now=LATER))

    assert result.status == "DONE"
    assert result.job_id == "crashed-job"
    assert fake_source.started == []


def test_planning_hands_back_unprocessed_succeeded_windows(session_factory, fake_source, tmp_path):
    insert_export_job(session_factory, "exported-job")
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    plan = orchestrator.plan_next_window("orders", now=LATER)

    assert (plan.action, plan.reason, plan.job_id) == ("resume", "processing_unfinished", "exported-job")


def test_failed_latest_window_blocks_incremental_runs(session_factory, fake_source, tmp_path):
    insert_export_job(session_factory, "failed-job", status="FAILED")
    orchestrator = _orchestrator(session_factory, fake_source, tmp_path)

    assert orchestrator.plan_next_window("orders", now=LATER).action == "blocked"
    assert orchestrator.plan_next_window("orders", now=LATER, resubmit_failed=True).action == "run"

    result = asyncio.run(orchestrator.run_incremental("orders", now=LATER))

    assert result.status == "FAILED"
    assert result.error_code == "export_failed"
    assert result.job_id == "failed-job"
    assert fake_source.started == []
    assert _run(session_factory, result.run_id).trigger == "incremental"
