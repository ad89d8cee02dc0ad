import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import insert_export_job
from exportflow.core.errors import FileRecordNotFound, InvalidTransition, LedgerUnavailable
from exportflow.services.ledger import TrackingLedger, compute_file_id


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 15, 2, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _ledger(session_factory, clock=None, lease_seconds=60):
    return TrackingLedger(session_factory, lease_seconds=lease_seconds, clock=clock or FakeClock())


def test_initialize_is_idempotent_per_location(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)

    assert ledger.initialize("job-1", ["s3://b/a.json.gz", "s3://b/b.json.gz", "s3://b/a.json.gz"]) == 2
    assert ledger.initialize("job-1", ["s3://b/a.json.gz", "s3://b/b.json.gz", "s3://b/c.json.gz"]) == 1

    counts = ledger.counts("job-1")
    assert counts["PENDING"] == 3
    assert sum(counts.values()) == 3


def test_file_ids_are_deterministic_and_scoped_to_the_job(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])

    expected = compute_file_id("job-1", "s3://b/a.json.gz")
    assert ledger.get(expected).location == "s3://b/a.json.gz"
    assert compute_file_id("job-2", "s3://b/a.json.gz") != expected


def test_claims_from_separate_ledgers_are_disjoint(session_factory):
    insert_export_job(session_factory)
    clock = FakeClock()
    first = _ledger(session_factory, clock)
    second = _ledger(session_factory, clock)
    first.initialize("job-1", [f"s3://b/{i}.json.gz" for i in range(5)])

    a = first.claim_next_batch("job-1", 2)
    b = second.claim_next_batch("job-1", 2)
    c = first.claim_next_batch("job-1", 2)

    ids = [r.file_id for r in a + b + c]
    assert len(a) == 2 and len(b) == 2 and len(c) == 1
    assert len(set(ids)) == 5
    assert second.claim_next_batch("job-1", 2) == []


def test_concurrent_claimers_split_the_pending_set_exactly(session_factory):
    insert_export_job(session_factory)
    locations = [f"s3://b/{i}.json.gz" for i in range(200)]
    TrackingLedger(session_factory).initialize("job-1", locations)

    workers = 8
    barrier = threading.Barrier(workers)
    guard = threading.Lock()
    claimed: list[str] = []
    errors: list[Exception] = []

    def _claimer() -> None:
        ledger = TrackingLedger(session_factory)
        barrier.wait()
        try:
            while True:
                batch = ledger.claim_next_batch("job-1", 3)
                if not batch:
                    return
                with guard:
                    claimed.extend(r.file_id for r in batch)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_claimer) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert errors == []
    assert len(claimed) == len(set(claimed)) == 200
    assert set(claimed) == {compute_file_id("job-1", loc) for loc in locations}
    assert TrackingLedger(session_factory).counts("job-1")["IN_PROGRESS"] == 200


def test_claim_sets_lease_and_token(session_factory):
    insert_export_job(session_factory)
    clock = FakeClock()
    ledger = _ledger(session_factory, clock, lease_seconds=90)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])

    (record,) = ledger.claim_next_batch("job-1", 4)

    assert record.status == "IN_PROGRESS"
    assert record.lease_token
    assert record.lease_expires_at == clock.now + timedelta(seconds=90)
    assert record.start_time == clock.now
    assert record.retry_count == 0


def test_expired_lease_is_reclaimed_with_one_retry_counted(session_factory):
    insert_export_job(session_factory)
    clock = FakeClock()
    ledger = _ledger(session_factory, clock, lease_seconds=60)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])

    (original,) = ledger.claim_next_batch("job-1", 1)

    clock.advance(seconds=30)
    assert ledger.claim_next_batch("job-1", 1) == []

    clock.advance(seconds=31)
    (reclaimed,) = ledger.claim_next_batch("job-1", 1)
    assert reclaimed.file_id == original.file_id
    assert reclaimed.retry_count == 1
    assert reclaimed.lease_token != original.lease_token

    # The worker that lost its lease can no longer record an outcome.
    with pytest.raises(InvalidTransition):
        ledger.mark_completed(original.file_id, lease_token=original.lease_token)

    done = ledger.mark_completed(reclaimed.file_id, lease_token=reclaimed.lease_token)
    assert done.status == "COMPLETED"


def test_completed_records_never_regress(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])
    (record,) = ledger.claim_next_batch("job-1", 1)

    ledger.mark_completed(record.file_id, lease_token=record.lease_token)
    # A duplicate completion is a no-op.
    again = ledger.mark_completed(record.file_id, lease_token=record.lease_token)
    assert again.status == "COMPLETED"

    with pytest.raises(InvalidTransition):
        ledger.mark_failed(record.file_id, "late failure")

    assert ledger.retry_failed("job-1") == 0
    assert ledger.claim_next_batch("job-1", 5) == []
    assert ledger.get(record.file_id).status == "COMPLETED"


def test_outcome_requires_an_in_progress_record(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])
    file_id = compute_file_id("job-1", "s3://b/a.json.gz")

    with pytest.raises(InvalidTransition):
        ledger.mark_completed(file_id)
    with pytest.raises(InvalidTransition):
        ledger.mark_failed(file_id, "boom")
    with pytest.raises(FileRecordNotFound):
        ledger.mark_completed("fil_missing")


def test_failures_are_counted_until_the_retry_limit(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])

    for attempt in range(1, 4):
        (record,) = ledger.claim_next_batch("job-1", 1)
        failed = ledger.mark_failed(record.file_id, f"boom {attempt}", lease_token=record.lease_token)
        assert failed.status == "FAILED"
        assert failed.retry_count == attempt
        assert failed.error_message == f"boom {attempt}"
        assert failed.lease_token is None
        requeued = ledger.retry_failed("job-1", below_retry_limit=3)
        assert requeued == (1 if attempt < 3 else 0)

    exhausted = ledger.exhausted_failures("job-1", 3)
    assert [r.retry_count for r in exhausted] == [3]
    assert not ledger.has_claimable("job-1")

    assert ledger.retry_failed("job-1", reset_retry_count=True) == 1
    record = ledger.get(exhausted[0].file_id)
    assert record.status == "PENDING"
    assert record.retry_count == 0
    assert ledger.has_claimable("job-1")


def test_error_message_is_truncated(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", ["s3://b/a.json.gz"])
    (record,) = ledger.claim_next_batch("job-1", 1)

    failed = ledger.mark_failed(record.file_id, "x" * 10000)
    assert len(failed.error_message) == 4000


def test_job_completion_ignores_excluded_records(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    assert ledger.is_job_complete("job-1") is False

    ledger.initialize("job-1", ["s3://b/a.json.gz", "s3://b/b.json.gz"])
    first, second = ledger.claim_next_batch("job-1", 2)

    with pytest.raises(InvalidTransition):
        ledger.exclude(second.file_id)

    ledger.mark_completed(first.file_id)
    ledger.mark_failed(second.file_id, "poison file")
    assert ledger.is_job_complete("job-1") is False

    excluded = ledger.exclude(second.file_id)
    assert excluded.archived_at is not None
    assert ledger.exclude(second.file_id).archived_at == excluded.archived_at
    assert ledger.is_job_complete("job-1") is True
    assert ledger.counts("job-1")["FAILED"] == 0


def test_job_with_every_record_excluded_is_complete(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", ["s3://b/a.json.gz", "s3://b/b.json.gz"])

    for record in list(ledger.list_by_status("job-1", "PENDING")):
        ledger.exclude(record.file_id)

    assert sum(ledger.counts("job-1").values()) == 0
    assert ledger.record_count("job-1") == 2
    assert ledger.is_job_complete("job-1") is True
    assert ledger.record_count("job-2") == 0
    assert ledger.is_job_complete("job-2") is False


def test_list_page_and_list_by_status_walk_every_record(session_factory):
    insert_export_job(session_factory)
    ledger = _ledger(session_factory)
    ledger.initialize("job-1", [f"s3://b/{i}.json.gz" for i in range(5)])
    (claimed,) = ledger.claim_next_batch("job-1", 1)

    page, cursor = ledger.list_page("job-1", limit=2)
    assert len(page) == 2 and cursor == page[-1].id
    page2, cursor2 = ledger.list_page("job-1", after_id=cursor, limit=2)
    page3, cursor3 = ledger.list_page("job-1", after_id=cursor2, limit=2)
    assert len(page2) == 2 and len(page3) == 1
    assert cursor3 is None

    pending = list(ledger.list_by_status("job-1", "PENDING", page_size=2))
    assert len(pending) == 4
    assert claimed.file_id not in {r.file_id for r in pending}

    resumed = list(ledger.list_by_status("job-1", None, page_size=2, after_id=page[-1].id))
    assert [r.id for r in resumed] == [r.id for r in page2 + page3]


def test_storage_outage_surfaces_as_ledger_unavailable(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'ledger.db'}", future=True)
    ledger = TrackingLedger(sessionmaker(bind=engine, future=True))

    with pytest.raises(LedgerUnavailable) as exc_info:
        ledger.counts("job-1")
    assert exc_info.value.retryable is True
    assert exc_info.value.context["operation"] == "counts"
