import asyncio
from datetime import timedelta

import pytest

from conftest import WINDOW_END, WINDOW_START
from exportflow.scripts import run_export
from exportflow.services.orchestrator import PipelineResult


class RecordingOrchestrator:
    def __init__(self):
        self.calls = []

    async def run_export(self, table_id, start, end, *, cancel_event=None):
        self.calls.append(("run_export", table_id, start, end))
        return PipelineResult(status="DONE", files_processed=1)

    async def run_incremental(self, table_id, **kwargs):
        self.calls.append(("run_incremental", table_id, kwargs["window"], kwargs["resubmit_failed"]))
        return None

    async def resume(self, job_id, *, cancel_event=None):
        self.calls.append(("resume", job_id))
        return PipelineResult(status="CANCELLED", files_processed=0)


def _args(argv):
    parser = run_export.build_parser()
    args = parser.parse_args(argv)
    run_export._validate_args(parser, args)
    return args


def test_exit_codes():
    assert run_export.exit_code_for(None) == 2
    assert run_export.exit_code_for(PipelineResult(status="DONE", files_processed=0)) == 0
    assert run_export.exit_code_for(PipelineResult(status="FAILED", files_processed=0)) == 1
    assert run_export.exit_code_for(PipelineResult(status="CANCELLED", files_processed=0)) == 3


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["--table", "orders"],
        ["--table", "orders", "--start", "2024-03-15T00:00:00Z"],
        ["--table", "orders", "--incremental", "--start", "2024-03-15T00:00:00Z"],
        ["--table", "orders", "--start", "not-a-date", "--end", "2024-03-15T01:00:00Z"],
    ],
)
def test_invalid_arguments_exit(argv):
    with pytest.raises(SystemExit) as exc_info:
        _args(argv)
    assert exc_info.value.code == 2


def test_explicit_window_is_parsed_as_utc():
    orchestrator = RecordingOrchestrator()
    args = _args(["--table", "orders", "--start", "2024-03-15T00:00:00Z", "--end", "2024-03-15T01:00:00"])

    result = asyncio.run(run_export.run(args, orchestrator, asyncio.Event()))

    assert result.status == "DONE"
    assert orchestrator.calls == [("run_export", "orders", WINDOW_START, WINDOW_END)]


def test_incremental_and_resume_modes():
    orchestrator = RecordingOrchestrator()

    incremental = _args(["--table", "orders", "--incremental", "--window-minutes", "15", "--resubmit-failed"])
    assert asyncio.run(run_export.run(incremental, orchestrator, asyncio.Event())) is None

    resume = _args(["--resume", "arn:aws:dynamodb:us-east-1:1:table/orders/export/01"])
    resumed = asyncio.run(run_export.run(resume, orchestrator, asyncio.Event()))

    assert resumed.status == "CANCELLED"
    assert orchestrator.calls == [
        ("run_incremental", "orders", timedelta(minutes=15), True),
        ("resume", "arn:aws:dynamodb:us-east-1:1:table/orders/export/01"),
    ]
